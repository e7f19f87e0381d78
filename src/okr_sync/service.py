"""UI-facing entry points: every call resolves to an OperationResult, never an exception."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .auth.proxy import ProxyProbe
from .config.settings import AppConfig, GitConfig, ProxyConfig, S3Config
from .exceptions import OkrSyncError
from .store.base import LocalStore
from .store.sqlite_store import SQLiteLocalStore
from .sync.backup_manager import S3BackupEngine
from .sync.git_engine import GitSyncEngine

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """Outcome of a user-triggered operation."""
    success: bool
    data: Any = None
    error: Optional[str] = None


class SyncService:
    """Owns the store, both engines and the proxy probe for one application instance."""

    def __init__(
        self,
        config: AppConfig,
        store: Optional[LocalStore] = None,
        git_engine: Optional[GitSyncEngine] = None,
        backup_engine: Optional[S3BackupEngine] = None,
        proxy_probe: Optional[ProxyProbe] = None
    ):
        self.config = config
        self.store = store or SQLiteLocalStore(config.store_path).ensure_schema()
        self.store_lock = asyncio.Lock()

        work_dir = config.git.local_path if config.git and config.git.local_path else config.git_work_dir
        self.git = git_engine or GitSyncEngine(self.store, work_dir, store_lock=self.store_lock)
        self.s3 = backup_engine or S3BackupEngine(self.store, store_lock=self.store_lock)
        self.proxy_probe = proxy_probe or ProxyProbe()

    async def _call(self, operation: str, action: Callable[[], Awaitable[Any]]) -> OperationResult:
        try:
            return OperationResult(success=True, data=await action())
        except OkrSyncError as e:
            logger.error(f"{operation} failed: {e}")
            return OperationResult(success=False, error=e.message)
        except Exception as e:
            logger.exception(f"{operation} failed unexpectedly")
            return OperationResult(success=False, error=f"{operation} failed: {e}")

    async def initialize(self) -> OperationResult:
        """Initialize whichever engines are configured and enabled."""
        async def run():
            ready = []
            if self.config.git and self.config.git.enabled:
                await self.git.initialize_repository(self.config.git)
                ready.append("git")
            if self.config.s3 and self.config.s3.enabled:
                await self.s3.initialize(self.config.s3)
                ready.append("s3")
            return ready
        return await self._call("initialize", run)

    # Git

    async def git_initialize(self, config: Optional[GitConfig] = None) -> OperationResult:
        config = config or self.config.git
        if config is None:
            return OperationResult(success=False, error="Git sync is not configured")
        return await self._call("git initialize", lambda: self.git.initialize_repository(config))

    async def git_sync(self) -> OperationResult:
        return await self._call("git sync", self.git.sync_data)

    async def git_test_connection(self) -> OperationResult:
        return await self._call("git connection test", self.git.test_connection)

    async def git_status(self) -> OperationResult:
        return await self._call("git status", self.git.get_status)

    async def git_update_config(self, config: GitConfig) -> OperationResult:
        self.config.git = config
        return await self._call("git config update", lambda: self.git.update_config(config))

    async def git_set_auto_sync(self, enabled: bool) -> OperationResult:
        async def run():
            return self.git.start_auto_sync() if enabled else self.git.stop_auto_sync()
        return await self._call("git auto sync", run)

    # S3

    async def s3_initialize(self, config: Optional[S3Config] = None) -> OperationResult:
        config = config or self.config.s3
        if config is None:
            return OperationResult(success=False, error="S3 backup is not configured")
        return await self._call("s3 initialize", lambda: self.s3.initialize(config))

    async def s3_test_connection(self) -> OperationResult:
        return await self._call("s3 connection test", self.s3.test_connection)

    async def s3_backup(self) -> OperationResult:
        return await self._call("s3 backup", self.s3.perform_backup)

    async def s3_list(self) -> OperationResult:
        return await self._call("s3 list", self.s3.get_backup_list)

    async def s3_status(self) -> OperationResult:
        return await self._call("s3 status", self.s3.get_status)

    async def s3_details(self, key: str) -> OperationResult:
        return await self._call("s3 details", lambda: self.s3.get_backup_details(key))

    async def s3_restore(self, key: str, mode: str) -> OperationResult:
        return await self._call("s3 restore", lambda: self.s3.perform_restore(key, mode))

    async def s3_cleanup(self) -> OperationResult:
        return await self._call("s3 cleanup", self.s3.cleanup_old_backups)

    async def s3_update_config(self, config: S3Config) -> OperationResult:
        self.config.s3 = config
        return await self._call("s3 config update", lambda: self.s3.update_config(config))

    async def s3_set_auto_backup(self, enabled: bool) -> OperationResult:
        async def run():
            return self.s3.start_auto_backup() if enabled else self.s3.stop_auto_backup()
        return await self._call("s3 auto backup", run)

    # Proxy

    async def test_proxy(self, proxy: Optional[ProxyConfig] = None) -> OperationResult:
        proxy = proxy or (self.config.git.proxy if self.config.git else None)
        if proxy is None:
            return OperationResult(success=False, error="No proxy configured")
        return await self._call("proxy test", lambda: asyncio.to_thread(self.proxy_probe.test, proxy))

    def shutdown(self) -> None:
        """Stop all recurring timers."""
        self.git.stop_auto_sync()
        self.s3.stop_auto_backup()
