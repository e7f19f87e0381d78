"""Git sync engine: snapshot files in a working copy, pushed to and pulled from a remote."""

import asyncio
import logging
import shlex
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from pydantic import SecretStr

from ..auth.provisioner import RepositoryProvisioner
from ..config.settings import AuthMethod, GitConfig, HttpsAuth, SshAuth, TokenAuth
from ..exceptions import (
    AuthenticationError,
    ConfigurationError,
    GenericOperationError,
    NetworkError,
    OkrSyncError,
    RepositoryNotFoundError,
)
from ..store.base import LocalStore
from ..utils.logging import TimedOperation, redact_url
from ..utils.scheduler import RecurringJob
from .git_transport import (
    DEFAULT_TIMEOUT,
    TOKEN_USERNAMES,
    GitCommandError,
    GitFailureKind,
    GitResult,
    GitRunner,
    basic_auth_header,
    detect_provider,
    normalize_remote_url,
    parse_owner_repo,
    to_https_url,
    to_ssh_url,
)
from .snapshot import SyncData, build_snapshot, utc_timestamp, write_snapshot_files

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS = 3
RETRY_DELAY = 2.0  # seconds, multiplied by the attempt number
FALLBACK_METHODS = (AuthMethod.TOKEN, AuthMethod.SSH)

COMMITTER_NAME = "OKR Manager"
COMMITTER_EMAIL = "okr-manager@local"

TRANSPORT_SETTINGS = (
    ("http.lowSpeedLimit", "1000"),
    ("http.lowSpeedTime", "60"),
    ("http.postBuffer", "524288000"),
)

NETWORK_REMEDIATION = (
    "Network connection failed after {attempts} attempts and a protocol switch. Possible fixes:\n"
    "1. Check that the network connection works\n"
    "2. Open the GitHub/GitLab website to confirm the service is available\n"
    "3. Check firewall and proxy settings\n"
    "4. Make sure the SSH key is configured (when using SSH)\n"
    "5. Retry later or from another network\n"
    "\n"
    "Details: {details}"
)

ProvisionerFactory = Callable[..., RepositoryProvisioner]


class GitSyncEngine:
    """Binds a local working copy to a remote repository and syncs the local store through it."""

    def __init__(
        self,
        store: LocalStore,
        work_dir: Path,
        store_lock: Optional[asyncio.Lock] = None,
        runner: Optional[GitRunner] = None,
        provisioner_factory: ProvisionerFactory = RepositoryProvisioner,
        retry_delay: float = RETRY_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """Initialize engine.

        Args:
            store: Local store to export from
            work_dir: Git working directory (snapshot files go to ``data/`` inside it)
            store_lock: Lock shared with other engines touching the store
            runner: git command runner
            provisioner_factory: Builds the REST provisioner (provider, token, proxy)
            retry_delay: Base backoff between push/pull attempts
            timeout: Seconds allowed for each network git command
        """
        self.store = store
        self.work_dir = Path(work_dir)
        self.data_dir = self.work_dir / "data"
        self.store_lock = store_lock or asyncio.Lock()
        self.runner = runner or GitRunner(self.work_dir)
        self.provisioner_factory = provisioner_factory
        self.retry_delay = retry_delay
        self.timeout = timeout

        self.config: Optional[GitConfig] = None
        self.remote_url: str = ""
        self.last_sync: Optional[str] = None
        self._auth = None
        self._initialized = False
        self._lock = asyncio.Lock()
        self._auto_sync = RecurringJob("git-auto-sync", self._scheduled_sync, 30)

    @property
    def active_auth_method(self) -> Optional[AuthMethod]:
        return AuthMethod(self._auth.method) if self._auth is not None else None

    def is_enabled(self) -> bool:
        return self.config is not None and self.config.enabled

    def _require_initialized(self) -> GitConfig:
        if not self._initialized or self.config is None:
            raise ConfigurationError("Git sync is not initialized")
        return self.config

    async def initialize_repository(self, config: GitConfig) -> None:
        """Bind the working directory to the configured remote.

        Provisions the remote first when ``auto_create_repo`` is set and no URL is
        configured. Creates the working directory, initializes the repository when
        needed and configures authentication.
        """
        async with self._lock:
            await self._initialize(config)
        self._apply_schedule()

    async def _initialize(self, config: GitConfig) -> None:
        try:
            with TimedOperation(logger, "git repository initialization"):
                if config.auto_create_repo and not config.remote_url:
                    config = await self._provision_remote(config)
                if not config.remote_url:
                    raise ConfigurationError("remote_url is not configured", setting="remote_url")
                if isinstance(config.auth, TokenAuth) and not config.auth.token.get_secret_value():
                    raise ConfigurationError("token authentication needs a token", setting="auth.token")

                self.work_dir.mkdir(parents=True, exist_ok=True)
                self.data_dir.mkdir(parents=True, exist_ok=True)

                if not (self.work_dir / ".git").exists():
                    await self.runner.run("init", f"--initial-branch={config.branch}")
                    logger.info(f"Initialized git repository in {self.work_dir}")

                settings = TRANSPORT_SETTINGS + (("user.name", COMMITTER_NAME), ("user.email", COMMITTER_EMAIL))
                for key, value in settings:
                    await self.runner.run("config", key, value)

                self.config = config
                self._auth = config.auth
                await self._bind_origin()
                self._initialized = True
        except OkrSyncError:
            raise
        except Exception as e:
            raise GenericOperationError(f"Git repository initialization failed: {e}", operation="initialize") from e

    async def _provision_remote(self, config: GitConfig) -> GitConfig:
        token = config.token
        if not token:
            raise ConfigurationError("Automatic repository creation needs an API token", setting="api_token")

        provisioner = self.provisioner_factory(config.git_provider, token, config.proxy if config.proxy_enabled else None)
        logger.info(f"Looking up or creating remote repository {config.repo_name}")
        remote_url = await asyncio.to_thread(
            provisioner.ensure_repository,
            config.repo_name,
            config.repo_description,
            config.repo_visibility,
        )
        logger.info(f"Using remote repository {redact_url(remote_url)}")
        return config.model_copy(update={"remote_url": remote_url})

    async def setup_authentication(self) -> str:
        """Rewrite the remote URL for the active auth method and rebind ``origin``.

        Returns:
            The URL bound to ``origin`` (never carries credentials)
        """
        async with self._lock:
            return await self._bind_origin()

    async def _bind_origin(self) -> str:
        config = self.config
        if config is None or self._auth is None:
            raise ConfigurationError("Git sync is not initialized")

        url = normalize_remote_url(config.remote_url)
        if isinstance(self._auth, SshAuth):
            url = to_ssh_url(url)
        else:
            url = to_https_url(url)

        await self.runner.run("remote", "remove", "origin", check=False)
        await self.runner.run("remote", "add", "origin", url)
        self.remote_url = url
        logger.debug(f"origin set to {redact_url(url)} ({self._auth.method})")
        return url

    def _connection_options(self) -> Tuple[List[Tuple[str, str]], Dict[str, str]]:
        """Per-invocation git settings and environment for talking to the remote."""
        config = self._require_initialized()
        settings: List[Tuple[str, str]] = []
        env: Dict[str, str] = {}

        if isinstance(self._auth, TokenAuth):
            provider = detect_provider(self.remote_url) or config.git_provider
            username = TOKEN_USERNAMES.get(provider, "x-access-token")
            settings.append(("http.extraHeader", basic_auth_header(username, self._auth.token.get_secret_value())))
        elif isinstance(self._auth, HttpsAuth):
            settings.append(("http.extraHeader",
                             basic_auth_header(self._auth.username, self._auth.password.get_secret_value())))
        elif isinstance(self._auth, SshAuth):
            command = "ssh -o BatchMode=yes"
            if self._auth.key_path:
                command += f" -o IdentitiesOnly=yes -i {shlex.quote(str(self._auth.key_path.expanduser()))}"
            env["GIT_SSH_COMMAND"] = command

        if config.proxy_enabled:
            proxy_url = config.proxy.url
            settings.append(("http.proxy", proxy_url))
            for name in ("http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY"):
                env[name] = proxy_url

        return settings, env

    async def _git_remote(self, *args: str) -> GitResult:
        settings, env = self._connection_options()
        return await self.runner.run(*args, timeout=self.timeout, config=settings, env=env)

    def _auth_for(self, method: AuthMethod):
        config = self._require_initialized()
        if method is AuthMethod.TOKEN:
            if isinstance(config.auth, TokenAuth):
                return config.auth
            token = config.token
            if not token:
                raise ConfigurationError("No token available for token authentication", setting="api_token")
            return TokenAuth(token=SecretStr(token))
        if method is AuthMethod.SSH:
            return config.auth if isinstance(config.auth, SshAuth) else SshAuth()
        if isinstance(config.auth, HttpsAuth):
            return config.auth
        raise ConfigurationError("No username/password configured for HTTPS authentication", setting="auth")

    async def export_data(self) -> SyncData:
        """Write the current store content to the snapshot files under ``data/``."""
        async with self._lock:
            return await self._export()

    async def _export(self) -> SyncData:
        async with self.store_lock:
            snapshot = await asyncio.to_thread(build_snapshot, self.store)
            await asyncio.to_thread(write_snapshot_files, self.data_dir, snapshot)
        logger.info(f"Exported snapshot: {snapshot.counts()}")
        return snapshot

    async def commit_changes(self, message: Optional[str] = None) -> bool:
        """Stage and commit everything in the working copy.

        Returns:
            False when the working tree was clean and nothing was committed
        """
        async with self._lock:
            return await self._commit(message)

    async def _commit(self, message: Optional[str] = None) -> bool:
        self._require_initialized()
        status = await self.runner.run("status", "--porcelain")
        changed = [line for line in status.stdout.splitlines() if line.strip()]
        if not changed:
            logger.info("No changes to commit")
            return False

        await self.runner.run("add", "-A")
        await self.runner.run("commit", "-m", message or f"sync - {utc_timestamp()}")
        logger.info(f"Committed {len(changed)} changed file(s)")
        return True

    async def push_changes(self) -> None:
        """Push the branch to ``origin`` with retry and protocol fallback."""
        async with self._lock:
            await self._push()

    async def _push(self) -> None:
        config = self._require_initialized()
        await self._with_retry("push", lambda: self._git_remote("push", "-u", "origin", config.branch))
        logger.info("Pushed to remote repository")

    async def pull_changes(self) -> bool:
        """Pull the branch from ``origin`` with retry and protocol fallback.

        Returns:
            False when the remote branch does not exist yet
        """
        async with self._lock:
            return await self._pull()

    async def _pull(self) -> bool:
        config = self._require_initialized()

        async def pull_once() -> bool:
            try:
                await self._git_remote(
                    "pull", "--no-rebase", "--allow-unrelated-histories", "-X", "ours", "origin", config.branch
                )
            except GitCommandError as e:
                if e.kind is GitFailureKind.NO_REMOTE_REF:
                    logger.info(f"Remote branch {config.branch} does not exist yet, nothing to pull")
                    return False
                raise
            return True

        pulled = await self._with_retry("pull", pull_once)
        if pulled:
            logger.info("Pulled from remote repository")
        return pulled

    async def _with_retry(self, operation: str, git_call: Callable[[], Awaitable[T]]) -> T:
        """Run a remote git operation with bounded retry.

        Up to ``MAX_ATTEMPTS`` attempts, each rebinding ``origin`` first. A connection
        reset triggers one switch across the fallback auth methods per call. Only
        network failures are retried, with a backoff of ``attempt * retry_delay``.
        """
        last_error: Optional[GitCommandError] = None
        protocol_switched = False

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                logger.info(f"{operation} attempt {attempt}/{MAX_ATTEMPTS}")
                await self._bind_origin()
                return await git_call()
            except GitCommandError as e:
                last_error = e
                logger.warning(f"{operation} attempt {attempt} failed: {e.message}")

                if e.kind is GitFailureKind.RESET and not protocol_switched and attempt < MAX_ATTEMPTS:
                    protocol_switched = True
                    logger.info("Connection reset, trying a different protocol")
                    try:
                        return await self._try_other_protocols(git_call)
                    except OkrSyncError as switch_error:
                        logger.warning(f"Protocol switch failed: {switch_error.message}")

                if e.kind.network_kind is None or attempt == MAX_ATTEMPTS:
                    break

                delay = attempt * self.retry_delay
                logger.info(f"Retrying {operation} in {delay:g}s")
                await asyncio.sleep(delay)

        raise self._final_error(operation, last_error) from last_error

    async def _try_other_protocols(self, git_call: Callable[[], Awaitable[T]]) -> T:
        original = self._auth
        candidates = [m for m in FALLBACK_METHODS if m.value != original.method]
        last_error: Optional[OkrSyncError] = None

        for method in candidates:
            try:
                self._auth = self._auth_for(method)
                await self._bind_origin()
                result = await git_call()
                logger.info(f"{method.value} protocol succeeded, keeping it for this session")
                return result
            except OkrSyncError as e:
                logger.info(f"{method.value} protocol failed: {e.message}")
                last_error = e

        self._auth = original
        await self._bind_origin()
        raise last_error or GenericOperationError("No alternative protocol available", operation="protocol switch")

    def _final_error(self, operation: str, error: Optional[GitCommandError]) -> OkrSyncError:
        if error is None:
            return GenericOperationError(f"{operation} failed", operation=operation)
        if error.kind is GitFailureKind.AUTHENTICATION:
            return AuthenticationError(operation=operation)
        if error.kind is GitFailureKind.NOT_FOUND:
            return RepositoryNotFoundError(operation=operation)
        if error.kind.network_kind is not None:
            message = NETWORK_REMEDIATION.format(attempts=MAX_ATTEMPTS, details=error.stderr)
            return NetworkError(message, kind=error.kind.network_kind, operation=operation)
        return GenericOperationError(f"{operation} failed: {error.stderr}", operation=operation)

    async def sync_data(self) -> SyncData:
        """Full cycle: pull, export, commit, push, then return a fresh snapshot.

        Exported files overwrite whatever the pull brought in (last writer wins).
        """
        async with self._lock:
            self._require_initialized()
            with TimedOperation(logger, "git sync"):
                await self._pull()
                await self._export()
                await self._commit()
                await self._push()

                async with self.store_lock:
                    snapshot = await asyncio.to_thread(build_snapshot, self.store)
                self.last_sync = snapshot.last_sync
                return snapshot

    async def test_connection(self) -> Dict[str, Any]:
        """Check that the remote is reachable with the configured credentials.

        Uses a single REST lookup when the host is GitHub/GitLab and a token is
        available, otherwise a dry-run fetch under the push/pull retry discipline.
        """
        async with self._lock:
            return await self._check_remote()

    async def _check_remote(self) -> Dict[str, Any]:
        config = self._require_initialized()
        provider = detect_provider(self.remote_url)
        owner_repo = parse_owner_repo(self.remote_url)
        token = config.token

        if provider is not None and token and owner_repo:
            owner, repo = owner_repo
            provisioner = self.provisioner_factory(provider, token, config.proxy if config.proxy_enabled else None)
            details = await asyncio.to_thread(provisioner.get_repository, owner, repo)
            logger.info(f"Repository {owner}/{repo} reachable through the {provider.value} API")
            return {
                'method': 'api',
                'provider': provider.value,
                'repository': f"{owner}/{repo}",
                'private': details.get('private', details.get('visibility') == 'private'),
            }

        await self._with_retry("test connection", lambda: self._git_remote("fetch", "--dry-run", "origin"))
        logger.info("Remote reachable through git fetch")
        return {'method': 'git', 'remote': redact_url(self.remote_url)}

    async def get_status(self) -> Dict[str, Any]:
        """Working copy state; failures are reported in ``error`` rather than raised."""
        status: Dict[str, Any] = {
            'initialized': self._initialized,
            'has_changes': False,
            'sync_in_progress': self._lock.locked(),
            'last_sync': self.last_sync,
            'auth_method': self.active_auth_method.value if self.active_auth_method else None,
            'auto_sync': self._auto_sync.running,
        }
        if not self._initialized:
            return status
        try:
            result = await self.runner.run("status", "--porcelain")
            status['has_changes'] = bool(result.stdout.strip())
            status['remote'] = redact_url(self.remote_url)
        except OkrSyncError as e:
            status['error'] = e.message
        return status

    def start_auto_sync(self) -> bool:
        """Start the recurring sync. A no-op when it is already running."""
        config = self._require_initialized()
        self._auto_sync.interval_minutes = config.sync_interval
        return self._auto_sync.start()

    def stop_auto_sync(self) -> bool:
        return self._auto_sync.stop()

    def _apply_schedule(self) -> None:
        config = self.config
        if config is not None and config.enabled and config.auto_sync:
            if self._auto_sync.running and self._auto_sync.interval_minutes != config.sync_interval:
                self._auto_sync.reschedule(config.sync_interval)
            else:
                self.start_auto_sync()
        else:
            self.stop_auto_sync()

    async def _scheduled_sync(self) -> None:
        if self._lock.locked():
            logger.info("Sync already in progress, skipping scheduled run")
            return
        await self.sync_data()

    async def update_config(self, config: GitConfig) -> None:
        """Re-bind the engine to a new configuration."""
        if not config.enabled:
            self.stop_auto_sync()
            async with self._lock:
                self.config = config
                self._initialized = False
            logger.info("Git sync disabled")
            return
        await self.initialize_repository(config)
