"""S3 backup engine orchestrating backup, retention and restore of the local store."""

import asyncio
import gzip
import hashlib
import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ..config.settings import S3Config
from ..destinations.s3_storage import S3Storage
from ..exceptions import (
    BackupIntegrityError,
    ConfigurationError,
    EncryptionKeyUnavailable,
    GenericOperationError,
    OkrSyncError,
)
from ..store.base import EntityKind, LocalStore
from ..utils.encryption import KDF_NAME, BackupCipher
from ..utils.file_utils import FileHelper
from ..utils.logging import TimedOperation
from ..utils.scheduler import RecurringJob
from .snapshot import APP_VERSION, SCHEMA_VERSION, SyncData, build_snapshot, utc_timestamp

logger = logging.getLogger(__name__)

SQLITE_HEADER = b"SQLite format 3\x00"


class BackupType(str, Enum):
    """Kinds of backup artifact."""
    DATABASE = "database"
    JSON = "json"


class RestoreMode(str, Enum):
    """How a backup is applied to the local store."""
    DATABASE = "database"  # replace the store file
    JSON = "json"  # overwrite every record from the snapshot
    MERGE = "merge"  # add snapshot records whose id is absent


def generate_backup_key(backup_type: BackupType, path_prefix: str = "", compressed: bool = False,
                        timestamp: Optional[str] = None) -> str:
    """Object key ``{prefix}backup-{type}-{timestamp}.{db|json}[.gz]``.

    ':' and '.' in the ISO timestamp are replaced by '-'.
    """
    backup_type = BackupType(backup_type)
    stamp = (timestamp or utc_timestamp()).replace(':', '-').replace('.', '-')
    ext = "db" if backup_type is BackupType.DATABASE else "json"
    key = f"{path_prefix}backup-{backup_type.value}-{stamp}.{ext}"
    return f"{key}.gz" if compressed else key


def backup_type_of(key: str) -> BackupType:
    return BackupType.DATABASE if "-database-" in key else BackupType.JSON


def _flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() == "true"


class S3BackupEngine:
    """Builds, uploads, lists, prunes and restores backups in an S3 bucket."""

    def __init__(self, store: LocalStore, store_lock: Optional[asyncio.Lock] = None, client: Any = None):
        """Initialize engine.

        Args:
            store: Local store to back up and restore into
            store_lock: Lock shared with other engines touching the store
            client: Pre-built S3 client (one is built from the config if omitted)
        """
        self.store = store
        self.store_lock = store_lock or asyncio.Lock()
        self.config: Optional[S3Config] = None
        self.storage: Optional[S3Storage] = None
        self._client = client
        self._lock = asyncio.Lock()
        self._auto_backup = RecurringJob("s3-auto-backup", self._scheduled_backup, 1440)

    def is_enabled(self) -> bool:
        return self.config is not None and self.config.enabled

    def _require_initialized(self) -> Tuple[S3Config, S3Storage]:
        if self.config is None or self.storage is None:
            raise ConfigurationError("S3 backup is not initialized")
        return self.config, self.storage

    async def initialize(self, config: S3Config) -> None:
        """Build the client for ``config`` and verify it can reach the bucket."""
        if config.encryption and config.passphrase is None:
            raise EncryptionKeyUnavailable(
                "Encryption is enabled but no backup passphrase is configured", setting="encryption_passphrase"
            )

        async with self._lock:
            self.config = config
            self.storage = S3Storage(config, client=self._client)
            endpoint = config.endpoint or "AWS"
            logger.info(f"S3 backup initialized: bucket={config.bucket} region={config.region} endpoint={endpoint}")
            await self._check_access()
        self._apply_schedule()

    async def test_connection(self) -> bool:
        """List at most one object; raises StorageConnectionError with a classified kind."""
        async with self._lock:
            return await self._check_access()

    async def _check_access(self) -> bool:
        _, storage = self._require_initialized()
        await asyncio.to_thread(storage.check_access)
        logger.info("S3 connection test succeeded")
        return True

    async def perform_backup(self) -> Dict[str, Any]:
        """Back up every enabled type, then prune old backups.

        Returns:
            ``{'backups': [{key, type, size, checksum}...], 'pruned': [keys]}``
        """
        async with self._lock:
            config, _ = self._require_initialized()
            with TimedOperation(logger, "S3 backup"):
                results = []
                try:
                    if config.backup_types.database:
                        results.append(await self._backup(BackupType.DATABASE))
                    if config.backup_types.json_export:
                        results.append(await self._backup(BackupType.JSON))
                except OkrSyncError:
                    raise
                except Exception as e:
                    raise GenericOperationError(f"Backup failed: {e}", operation="backup") from e
                if not results:
                    logger.warning("No backup types enabled, nothing to back up")

                try:
                    pruned = await self._prune()
                except OkrSyncError as e:
                    logger.error(f"Failed to prune old backups: {e}")
                    pruned = []

        logger.info(f"S3 backup completed, {len(results)} file(s) uploaded")
        return {'backups': results, 'pruned': pruned}

    async def _backup(self, backup_type: BackupType) -> Dict[str, Any]:
        config, storage = self._require_initialized()

        async with self.store_lock:
            if backup_type is BackupType.DATABASE:
                data = await asyncio.to_thread(self._read_database_file)
            else:
                snapshot = await asyncio.to_thread(build_snapshot, self.store)
                data = snapshot.to_json().encode('utf-8')

        body, metadata = await asyncio.to_thread(self._build_artifact, data, backup_type)
        key = generate_backup_key(backup_type, config.path_prefix, config.compression)
        content_type = "application/octet-stream" if backup_type is BackupType.DATABASE else "application/json"

        await asyncio.to_thread(storage.put, key, body, metadata, content_type)
        logger.info(f"Uploaded {key} ({FileHelper.format_file_size(len(body))})")
        return {'key': key, 'type': backup_type.value, 'size': len(body), 'checksum': metadata['checksum']}

    def _read_database_file(self) -> bytes:
        path = self.store.path
        if path is None or not Path(path).exists():
            raise ConfigurationError("Local store has no database file to back up", setting="store_path")
        return Path(path).read_bytes()

    def _build_artifact(self, data: bytes, backup_type: BackupType) -> Tuple[bytes, Dict[str, str]]:
        """Compress, encrypt and checksum raw backup bytes.

        Returns:
            Final bytes and the object metadata (all values strings)
        """
        config, _ = self._require_initialized()

        if config.compression:
            data = gzip.compress(data)

        metadata = {
            'app-version': APP_VERSION,
            'schema-version': SCHEMA_VERSION,
            'backup-time': utc_timestamp(),
            'backup-type': backup_type.value,
            'compressed': str(config.compression).lower(),
            'encrypted': str(config.encryption).lower(),
        }

        if config.encryption:
            cipher = BackupCipher(config.passphrase)
            data = cipher.encrypt(data)
            metadata['kdf'] = KDF_NAME
            metadata['kdf-iterations'] = str(cipher.iterations)

        metadata['size'] = str(len(data))
        metadata['checksum'] = hashlib.sha256(data).hexdigest()
        return data, metadata

    async def cleanup_old_backups(self) -> List[str]:
        """Delete the oldest backups until at most ``max_backups`` remain.

        Returns:
            Keys deleted, oldest first
        """
        async with self._lock:
            return await self._prune()

    async def _prune(self) -> List[str]:
        config, storage = self._require_initialized()
        objects = await asyncio.to_thread(storage.list)
        if len(objects) <= config.max_backups:
            return []

        excess = sorted(objects, key=lambda obj: obj.last_modified)[:len(objects) - config.max_backups]
        deleted = []
        for obj in excess:
            await asyncio.to_thread(storage.delete, obj.key)
            logger.info(f"Deleted old backup: {obj.key}")
            deleted.append(obj.key)
        return deleted

    async def get_backup_list(self) -> List[Dict[str, Any]]:
        """All backups under the prefix, newest first."""
        _, storage = self._require_initialized()
        objects = await asyncio.to_thread(storage.list)
        if not objects:
            logger.info(f"No backups found in bucket {storage.bucket} under '{storage.listing_prefix}'")

        backups = [
            {
                'key': obj.key,
                'size': obj.size,
                'last_modified': obj.last_modified.isoformat() if obj.last_modified else '',
                'type': backup_type_of(obj.key).value,
            }
            for obj in objects
        ]
        return sorted(backups, key=lambda b: b['last_modified'], reverse=True)

    async def get_status(self) -> Dict[str, Any]:
        """Aggregate backup count, size and latest time; errors are reported, not raised."""
        status: Dict[str, Any] = {
            'configured': self.storage is not None,
            'backup_count': 0,
            'total_size': 0,
            'last_backup': None,
            'backup_in_progress': self._lock.locked(),
            'auto_backup': self._auto_backup.running,
        }
        if self.storage is None:
            return status

        try:
            backups = await self.get_backup_list()
        except OkrSyncError as e:
            status['error'] = e.message
            return status

        status['backup_count'] = len(backups)
        status['total_size'] = sum(b['size'] for b in backups)
        if backups:
            status['last_backup'] = max(b['last_modified'] for b in backups)
        return status

    async def get_backup_details(self, key: str) -> Dict[str, Any]:
        _, storage = self._require_initialized()
        details = await asyncio.to_thread(storage.head, key)
        return {
            'key': details.key,
            'size': details.size,
            'last_modified': details.last_modified.isoformat() if details.last_modified else '',
            'metadata': details.metadata,
            'content_type': details.content_type,
        }

    async def perform_restore(self, key: str, mode: Union[RestoreMode, str]) -> Dict[str, Any]:
        """Download a backup and apply it to the local store.

        Args:
            key: Object key of the backup
            mode: ``database`` replaces the store file, ``json`` overwrites every
                record, ``merge`` only adds records whose id is not present

        Returns:
            Summary of what was restored

        Raises:
            BackupIntegrityError: Downloaded bytes do not match the recorded checksum
            EncryptionKeyUnavailable: Encrypted backup without a matching passphrase
        """
        try:
            mode = RestoreMode(mode)
        except ValueError as e:
            raise GenericOperationError(f"Unknown restore mode: {mode}", operation="restore", key=key) from e

        async with self._lock:
            try:
                return await self._restore(key, mode)
            except OkrSyncError:
                raise
            except Exception as e:
                raise GenericOperationError(
                    f"Restore of {key} failed: {e}", operation="restore", key=key, mode=mode.value
                ) from e

    async def _restore(self, key: str, mode: RestoreMode) -> Dict[str, Any]:
        config, storage = self._require_initialized()
        with TimedOperation(logger, f"S3 restore ({mode.value}) of {key}"):
            details = await asyncio.to_thread(storage.head, key)
            raw = await asyncio.to_thread(storage.get, key)
            data = await asyncio.to_thread(self._decode_artifact, key, raw, details.metadata, config)

            backup_type = BackupType(details.metadata.get('backup-type') or backup_type_of(key).value)
            expected = BackupType.DATABASE if mode is RestoreMode.DATABASE else BackupType.JSON
            if backup_type is not expected:
                raise GenericOperationError(
                    f"A {backup_type.value} backup cannot be restored in {mode.value} mode",
                    operation="restore",
                    key=key,
                )

            async with self.store_lock:
                if mode is RestoreMode.DATABASE:
                    return await asyncio.to_thread(self._restore_database, data)
                snapshot = SyncData.from_json(data)
                if mode is RestoreMode.JSON:
                    return await asyncio.to_thread(self._restore_overwrite, snapshot)
                return await asyncio.to_thread(self._restore_merge, snapshot)

    def _decode_artifact(self, key: str, raw: bytes, metadata: Dict[str, str], config: S3Config) -> bytes:
        checksum = metadata.get('checksum')
        if checksum and hashlib.sha256(raw).hexdigest() != checksum:
            raise BackupIntegrityError(key=key)

        data = raw
        if _flag(metadata.get('encrypted'), config.encryption):
            data = BackupCipher(config.passphrase).decrypt(data)
        if _flag(metadata.get('compressed'), key.endswith('.gz')):
            data = gzip.decompress(data)
        return data

    def _restore_database(self, data: bytes) -> Dict[str, Any]:
        if not data.startswith(SQLITE_HEADER):
            raise BackupIntegrityError("Backup is not a SQLite database file")
        path = self.store.path
        if path is None:
            raise ConfigurationError("Local store has no database file to restore into", setting="store_path")

        path = Path(path)
        saved = FileHelper.copy_aside(path) if path.exists() else None
        if saved:
            logger.info(f"Current database saved as {saved}")
        FileHelper.atomic_write_bytes(path, data)
        logger.info(f"Database restored ({FileHelper.format_file_size(len(data))})")
        return {'mode': RestoreMode.DATABASE.value, 'size': len(data), 'previous_copy': str(saved) if saved else None}

    def _restore_overwrite(self, snapshot: SyncData) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        with self.store.suspended_rollups():
            for kind in EntityKind:
                collection = self.store.collection(kind)
                for record in collection.get_all():
                    collection.delete(record['id'])
                for record in snapshot.records(kind):
                    collection.create(record)
                counts[kind.value] = len(snapshot.records(kind))
        logger.info(f"Overwrite restore completed: {counts}")
        return {'mode': RestoreMode.JSON.value, 'restored': counts}

    def _restore_merge(self, snapshot: SyncData) -> Dict[str, Any]:
        added: Dict[str, int] = {}
        with self.store.suspended_rollups():
            for kind in EntityKind:
                collection = self.store.collection(kind)
                existing_ids = {record['id'] for record in collection.get_all()}
                count = 0
                for record in snapshot.records(kind):
                    if record.get('id') in existing_ids:
                        continue
                    collection.create(record)
                    count += 1
                added[kind.value] = count
        logger.info(f"Merge restore completed, added: {added}")
        return {'mode': RestoreMode.MERGE.value, 'added': added}

    def start_auto_backup(self) -> bool:
        """Start the recurring backup. A no-op when it is already running."""
        config, _ = self._require_initialized()
        self._auto_backup.interval_minutes = config.backup_interval
        return self._auto_backup.start()

    def stop_auto_backup(self) -> bool:
        return self._auto_backup.stop()

    def _apply_schedule(self) -> None:
        config = self.config
        if config is not None and config.enabled and config.auto_backup:
            if self._auto_backup.running and self._auto_backup.interval_minutes != config.backup_interval:
                self._auto_backup.reschedule(config.backup_interval)
            else:
                self.start_auto_backup()
        else:
            self.stop_auto_backup()

    async def _scheduled_backup(self) -> None:
        if self._lock.locked():
            logger.info("Backup already in progress, skipping scheduled run")
            return
        await self.perform_backup()

    async def update_config(self, config: S3Config) -> None:
        """Re-bind the engine to a new configuration."""
        if not config.enabled:
            self.stop_auto_backup()
            async with self._lock:
                self.config = config
                self.storage = None
            logger.info("S3 backup disabled")
            return
        await self.initialize(config)
