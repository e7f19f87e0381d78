"""Tests for the S3 backup engine against an in-memory S3 client."""

import asyncio
import gzip
import hashlib
import json

import pytest

from okr_sync.config.settings import S3Config
from okr_sync.destinations.s3_storage import S3Storage
from okr_sync.exceptions import (
    BackupIntegrityError,
    ConfigurationError,
    EncryptionKeyUnavailable,
    GenericOperationError,
    StorageConnectionError,
    StorageFailureKind,
)
from okr_sync.store.base import EntityKind
from okr_sync.sync.backup_manager import BackupType, RestoreMode, S3BackupEngine, generate_backup_key
from okr_sync.sync.snapshot import SyncData

from conftest import client_error


def configured(config: S3Config, **updates) -> S3Config:
    return S3Config.model_validate({**config.model_dump(), **updates})


def json_only(config: S3Config, **updates) -> S3Config:
    return configured(config, backup_types={"database": False, "json": True}, **updates)


def ids_by_kind(store):
    return {kind: {record["id"] for record in records} for kind, records in store.read_all().items()}


@pytest.fixture
def engine(seeded_store, fake_s3):
    return S3BackupEngine(seeded_store, client=fake_s3)


class TestKeys:

    def test_key_format(self):
        stamp = "2024-01-02T03:04:05.678Z"
        assert generate_backup_key(BackupType.JSON, "backups/", True, stamp) == \
            "backups/backup-json-2024-01-02T03-04-05-678Z.json.gz"
        assert generate_backup_key(BackupType.DATABASE, "", False, stamp) == \
            "backup-database-2024-01-02T03-04-05-678Z.db"

    def test_qiniu_listing_prefix(self):
        config = S3Config(bucket="b", endpoint="https://s3-cn-east-1.qiniucs.com", path_prefix="p/")
        assert S3Storage(config, client=object()).listing_prefix == "b/p/"
        assert S3Storage(S3Config(bucket="b", path_prefix="p/"), client=object()).listing_prefix == "p/"

    def test_custom_endpoint_uses_path_style(self, monkeypatch):
        captured = {}

        def fake_client(service, **kwargs):
            captured.update(kwargs, service=service)
            return object()

        monkeypatch.setattr("okr_sync.destinations.s3_storage.boto3.client", fake_client)
        config = S3Config(bucket="b", endpoint="https://minio.local:9000", access_key_id="k", secret_access_key="s")
        S3Storage(config).client

        assert captured["service"] == "s3"
        assert captured["endpoint_url"] == "https://minio.local:9000"
        assert captured["config"].s3 == {"addressing_style": "path"}
        assert captured["aws_access_key_id"] == "k"


class TestConnection:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("code,kind", [
        ("AccessDenied", StorageFailureKind.ACCESS_DENIED),
        ("InvalidAccessKeyId", StorageFailureKind.INVALID_CREDENTIALS),
        ("SignatureDoesNotMatch", StorageFailureKind.SIGNATURE_MISMATCH),
        ("SlowDown", StorageFailureKind.GENERIC),
    ])
    async def test_failures_are_classified(self, engine, fake_s3, s3_config, code, kind):
        fake_s3.list_error = client_error(code, "ListObjectsV2")
        with pytest.raises(StorageConnectionError) as exc_info:
            await engine.initialize(s3_config)
        assert exc_info.value.kind is kind

    @pytest.mark.asyncio
    async def test_missing_bucket(self, engine, s3_config):
        with pytest.raises(StorageConnectionError) as exc_info:
            await engine.initialize(configured(s3_config, bucket="nope"))
        assert exc_info.value.kind is StorageFailureKind.BUCKET_MISSING

    @pytest.mark.asyncio
    async def test_encryption_without_passphrase_fails_up_front(self, engine, s3_config):
        with pytest.raises(EncryptionKeyUnavailable):
            await engine.initialize(configured(s3_config, encryption=True))


class TestBackup:

    @pytest.mark.asyncio
    async def test_backs_up_both_types_with_metadata(self, engine, fake_s3, s3_config):
        await engine.initialize(s3_config)
        result = await engine.perform_backup()

        types = sorted(backup["type"] for backup in result["backups"])
        assert types == ["database", "json"]
        for backup in result["backups"]:
            stored = fake_s3.objects[backup["key"]]
            assert backup["key"].startswith("backups/backup-")
            metadata = stored["Metadata"]
            assert metadata["checksum"] == hashlib.sha256(stored["Body"]).hexdigest()
            assert metadata["size"] == str(len(stored["Body"]))
            assert metadata["compressed"] == "false"
            assert metadata["encrypted"] == "false"
            assert metadata["app-version"] == "1.0.0"
            assert metadata["backup-type"] == backup["type"]

    @pytest.mark.asyncio
    async def test_uncompressed_round_trip_checksum(self, engine, fake_s3, s3_config, seeded_store):
        await engine.initialize(json_only(s3_config))
        result = await engine.perform_backup()
        key = result["backups"][0]["key"]

        downloaded = fake_s3.get_object(Bucket="okr-backups", Key=key)["Body"].read()
        assert hashlib.sha256(downloaded).hexdigest() == result["backups"][0]["checksum"]
        assert SyncData.from_json(downloaded).counts() == {
            "todos": 1, "okrs": 1, "keyResults": 2, "tasks": 1, "notes": 1
        }

    @pytest.mark.asyncio
    async def test_compressed_backup(self, engine, fake_s3, s3_config):
        await engine.initialize(json_only(s3_config, compression=True))
        result = await engine.perform_backup()
        key = result["backups"][0]["key"]

        assert key.endswith(".json.gz")
        assert json.loads(gzip.decompress(fake_s3.objects[key]["Body"]))["version"] == "1.0.0"

    @pytest.mark.asyncio
    async def test_encrypted_backup_is_not_plaintext(self, engine, fake_s3, s3_config):
        await engine.initialize(json_only(s3_config, encryption=True, encryption_passphrase="pw"))
        result = await engine.perform_backup()
        stored = fake_s3.objects[result["backups"][0]["key"]]

        assert b"Write report" not in stored["Body"]
        assert stored["Metadata"]["encrypted"] == "true"
        assert stored["Metadata"]["kdf"] == "pbkdf2-sha256"


class TestRetention:

    @pytest.mark.asyncio
    async def test_cleanup_deletes_oldest_excess(self, engine, fake_s3, s3_config):
        for index in range(8):
            fake_s3.seed(f"backups/backup-json-old-{index}.json")
        await engine.initialize(configured(s3_config, max_backups=5))

        deleted = await engine.cleanup_old_backups()

        assert deleted == [f"backups/backup-json-old-{index}.json" for index in range(3)]
        assert len(fake_s3.objects) == 5

    @pytest.mark.asyncio
    async def test_backup_cycle_keeps_newest(self, engine, fake_s3, s3_config):
        for index in range(7):
            fake_s3.seed(f"backups/backup-json-old-{index}.json")
        await engine.initialize(json_only(s3_config, max_backups=5))

        result = await engine.perform_backup()

        assert len(result["pruned"]) == 3
        assert len(fake_s3.objects) == 5
        assert result["backups"][0]["key"] in fake_s3.objects
        assert "backups/backup-json-old-3.json" in fake_s3.objects

    @pytest.mark.asyncio
    async def test_nothing_pruned_under_limit(self, engine, fake_s3, s3_config):
        fake_s3.seed("backups/backup-json-old.json")
        await engine.initialize(s3_config)

        assert await engine.cleanup_old_backups() == []


class TestListing:

    @pytest.mark.asyncio
    async def test_list_and_status(self, engine, fake_s3, s3_config):
        for index in range(4):
            fake_s3.seed(f"backups/backup-database-{index}.db", body=b"x" * 10)
        fake_s3.seed("backups/backup-json-4.json", body=b"y" * 5)
        fake_s3.seed("elsewhere/backup-json-5.json")
        await engine.initialize(s3_config)

        backups = await engine.get_backup_list()
        status = await engine.get_status()

        assert len(backups) == 5  # spans two pages of three
        assert backups[0]["key"] == "backups/backup-json-4.json"
        assert backups[0]["type"] == "json"
        assert backups[-1]["type"] == "database"
        assert status["backup_count"] == 5
        assert status["total_size"] == 45
        assert status["last_backup"] == backups[0]["last_modified"]
        assert status["configured"] is True

    @pytest.mark.asyncio
    async def test_status_before_initialize(self, engine):
        status = await engine.get_status()
        assert status["configured"] is False
        assert status["backup_count"] == 0

    @pytest.mark.asyncio
    async def test_details(self, engine, fake_s3, s3_config):
        await engine.initialize(json_only(s3_config))
        key = (await engine.perform_backup())["backups"][0]["key"]

        details = await engine.get_backup_details(key)

        assert details["content_type"] == "application/json"
        assert details["metadata"]["backup-type"] == "json"
        assert details["size"] == len(fake_s3.objects[key]["Body"])


class TestRestore:

    @pytest.mark.asyncio
    async def test_merge_only_adds_missing_ids(self, engine, s3_config, seeded_store):
        await engine.initialize(json_only(s3_config))
        key = (await engine.perform_backup())["backups"][0]["key"]
        snapshot_ids = ids_by_kind(seeded_store)

        todos = seeded_store.collection(EntityKind.TODOS)
        todos.delete(todos.get_all()[0]["id"])
        seeded_store.collection(EntityKind.NOTES).create({"title": "Local only"})
        okr = seeded_store.collection(EntityKind.OKRS).get_all()[0]
        seeded_store.collection(EntityKind.OKRS).update(okr["id"], {"title": "Renamed locally"})
        before = seeded_store.read_all()

        result = await engine.perform_restore(key, RestoreMode.MERGE)

        after = seeded_store.read_all()
        for kind in EntityKind:
            existing = {record["id"] for record in before[kind]}
            assert {record["id"] for record in after[kind]} == existing | snapshot_ids[kind]
            after_by_id = {record["id"]: record for record in after[kind]}
            for record in before[kind]:
                assert after_by_id[record["id"]] == record
        assert result["added"]["todos"] == 1
        assert result["added"]["notes"] == 0

    @pytest.mark.asyncio
    async def test_overwrite_replaces_everything(self, engine, s3_config, seeded_store):
        await engine.initialize(json_only(s3_config))
        key = (await engine.perform_backup())["backups"][0]["key"]
        snapshot = seeded_store.read_all()

        seeded_store.collection(EntityKind.NOTES).create({"title": "Local only"})
        seeded_store.collection(EntityKind.TODOS).update(snapshot[EntityKind.TODOS][0]["id"], {"title": "Changed"})

        await engine.perform_restore(key, RestoreMode.JSON)

        after = seeded_store.read_all()
        for kind in EntityKind:
            assert len(after[kind]) == len(snapshot[kind])
            assert [r["id"] for r in after[kind]] == [r["id"] for r in snapshot[kind]]
        assert after[EntityKind.TODOS][0]["title"] == "Write report"

    @pytest.mark.asyncio
    async def test_database_restore_copies_current_file_aside(self, engine, s3_config, seeded_store):
        config = configured(s3_config, backup_types={"database": True, "json": False}, compression=True)
        await engine.initialize(config)
        key = (await engine.perform_backup())["backups"][0]["key"]
        assert key.endswith(".db.gz")

        seeded_store.collection(EntityKind.NOTES).create({"title": "After backup"})

        result = await engine.perform_restore(key, RestoreMode.DATABASE)

        assert len(seeded_store.collection(EntityKind.NOTES).get_all()) == 1
        copies = list(seeded_store.path.parent.glob("data.db.backup.*"))
        assert len(copies) == 1
        assert result["previous_copy"] == str(copies[0])

    @pytest.mark.asyncio
    async def test_encrypted_round_trip(self, engine, s3_config, seeded_store):
        await engine.initialize(json_only(s3_config, encryption=True, encryption_passphrase="pw"))
        key = (await engine.perform_backup())["backups"][0]["key"]
        seeded_store.collection(EntityKind.TODOS).delete(1)

        await engine.perform_restore(key, RestoreMode.MERGE)

        assert seeded_store.collection(EntityKind.TODOS).get(1)["title"] == "Write report"

    @pytest.mark.asyncio
    async def test_encrypted_restore_without_passphrase_fails(self, engine, fake_s3, s3_config, seeded_store):
        await engine.initialize(json_only(s3_config, encryption=True, encryption_passphrase="pw"))
        key = (await engine.perform_backup())["backups"][0]["key"]

        other = S3BackupEngine(seeded_store, client=fake_s3)
        await other.initialize(json_only(s3_config))

        with pytest.raises(EncryptionKeyUnavailable):
            await other.perform_restore(key, RestoreMode.MERGE)

    @pytest.mark.asyncio
    async def test_checksum_mismatch(self, engine, fake_s3, s3_config):
        await engine.initialize(json_only(s3_config))
        key = (await engine.perform_backup())["backups"][0]["key"]
        fake_s3.objects[key]["Body"] += b" "

        with pytest.raises(BackupIntegrityError):
            await engine.perform_restore(key, RestoreMode.MERGE)

    @pytest.mark.asyncio
    async def test_mode_must_match_backup_type(self, engine, s3_config):
        await engine.initialize(configured(s3_config, backup_types={"database": True, "json": False}))
        key = (await engine.perform_backup())["backups"][0]["key"]

        with pytest.raises(GenericOperationError):
            await engine.perform_restore(key, RestoreMode.MERGE)

    @pytest.mark.asyncio
    async def test_malformed_snapshot_is_wrapped(self, engine, fake_s3, s3_config, seeded_store):
        await engine.initialize(json_only(s3_config))
        body = b'{"todos": "not a list"}'
        key = "backups/backup-json-2024-01-01T00-00-00-000Z.json"
        fake_s3.seed(key, body, metadata={"backup-type": "json", "checksum": hashlib.sha256(body).hexdigest()})
        before = seeded_store.read_all()

        with pytest.raises(GenericOperationError) as info:
            await engine.perform_restore(key, RestoreMode.MERGE)

        assert info.value.__cause__ is not None
        assert info.value.context["operation"] == "restore"
        assert info.value.context["key"] == key
        assert seeded_store.read_all() == before

    @pytest.mark.asyncio
    async def test_corrupt_gzip_is_wrapped(self, engine, fake_s3, s3_config):
        await engine.initialize(json_only(s3_config))
        key = "backups/backup-json-2024-01-01T00-00-00-000Z.json.gz"
        fake_s3.seed(key, b"plain text, not gzip", metadata={"backup-type": "json", "compressed": "true"})

        with pytest.raises(GenericOperationError) as info:
            await engine.perform_restore(key, RestoreMode.JSON)

        assert isinstance(info.value.__cause__, OSError)

    @pytest.mark.asyncio
    async def test_store_failure_during_backup_is_wrapped(self, engine, s3_config, monkeypatch):
        await engine.initialize(json_only(s3_config))

        def broken_read_all():
            raise RuntimeError("disk I/O error")

        monkeypatch.setattr(engine.store, "read_all", broken_read_all)

        with pytest.raises(GenericOperationError) as info:
            await engine.perform_backup()

        assert isinstance(info.value.__cause__, RuntimeError)
        assert info.value.context["operation"] == "backup"


class TestAutoBackup:

    @pytest.mark.asyncio
    async def test_auto_backup_follows_config(self, engine, s3_config):
        await engine.initialize(configured(s3_config, auto_backup=True))
        try:
            assert engine._auto_backup.running
            assert engine.start_auto_backup() is False
        finally:
            engine.stop_auto_backup()

        await engine.update_config(configured(s3_config, enabled=False))
        assert not engine.is_enabled()

    @pytest.mark.asyncio
    async def test_disabled_engine_refuses_backup(self, engine, fake_s3, s3_config):
        await engine.initialize(s3_config)

        await engine.update_config(configured(s3_config, enabled=False))

        with pytest.raises(ConfigurationError):
            await engine.perform_backup()
        assert fake_s3.objects == {}
        assert (await engine.get_status())["configured"] is False


async def settle():
    for _ in range(10):
        await asyncio.sleep(0)


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_cleanup_waits_for_running_operation(self, engine, fake_s3, s3_config):
        await engine.initialize(configured(s3_config, max_backups=1))
        fake_s3.seed("backups/a.json")
        fake_s3.seed("backups/b.json")

        async with engine._lock:
            cleanup = asyncio.create_task(engine.cleanup_old_backups())
            await settle()
            assert not cleanup.done()
            assert fake_s3.deleted == []

        assert await cleanup == ["backups/a.json"]

    @pytest.mark.asyncio
    async def test_config_update_waits_for_running_operation(self, engine, s3_config):
        await engine.initialize(s3_config)
        storage = engine.storage

        async with engine._lock:
            update = asyncio.create_task(engine.update_config(configured(s3_config, region="eu-west-1")))
            disable = asyncio.create_task(engine.update_config(configured(s3_config, enabled=False)))
            await settle()
            assert not update.done() and not disable.done()
            assert engine.storage is storage

        await asyncio.gather(update, disable)
        assert engine.storage is None

    @pytest.mark.asyncio
    async def test_restore_waits_for_running_operation(self, engine, fake_s3, s3_config, seeded_store):
        await engine.initialize(json_only(s3_config))
        key = (await engine.perform_backup())["backups"][0]["key"]
        todos = seeded_store.collection(EntityKind.TODOS)
        todos.delete(todos.get_all()[0]["id"])

        async with engine._lock:
            restore = asyncio.create_task(engine.perform_restore(key, RestoreMode.MERGE))
            await settle()
            assert not restore.done()
            assert todos.get_all() == []

        assert (await restore)["added"]["todos"] == 1
