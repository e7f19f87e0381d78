"""Git command execution, failure classification and remote URL helpers."""

import asyncio
import base64
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional, Sequence, Tuple

from ..config.settings import GitProvider
from ..exceptions import ConfigurationError, NetworkFailureKind, OkrSyncError
from ..utils.logging import redact_url

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60  # seconds

PROVIDER_HOSTS: Dict[GitProvider, str] = {
    GitProvider.GITHUB: "github.com",
    GitProvider.GITLAB: "gitlab.com",
}

# Username git sends alongside a token in the Basic header
TOKEN_USERNAMES: Dict[GitProvider, str] = {
    GitProvider.GITHUB: "x-access-token",
    GitProvider.GITLAB: "oauth2",
}

_SCP_URL = re.compile(r'^(?P<user>[\w.-]+)@(?P<host>[\w.-]+):(?P<path>[^/].*)$')
_SSH_URL = re.compile(r'^ssh://(?:[\w.-]+@)?(?P<host>[\w.-]+)(?::\d+)?/(?P<path>.+)$')
_HTTP_URL = re.compile(r'^https?://(?:[^/@]+@)?(?P<host>[^/]+)/(?P<path>.+)$')


class GitFailureKind(str, Enum):
    """What a failed git invocation means for the caller."""
    RESET = "reset"
    TIMEOUT = "timeout"
    DNS = "dns"
    UNREACHABLE = "unreachable"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    NO_REMOTE_REF = "no_remote_ref"
    OTHER = "other"

    @property
    def network_kind(self) -> Optional[NetworkFailureKind]:
        """The matching transient network kind, or None for non-network failures."""
        return {
            GitFailureKind.RESET: NetworkFailureKind.RESET,
            GitFailureKind.TIMEOUT: NetworkFailureKind.TIMEOUT,
            GitFailureKind.DNS: NetworkFailureKind.DNS,
            GitFailureKind.UNREACHABLE: NetworkFailureKind.UNREACHABLE,
        }.get(self)


# Checked in order, first match wins. Git reports failures only via exit status and stderr.
_SIGNATURES: Tuple[Tuple[GitFailureKind, Tuple[str, ...]], ...] = (
    (GitFailureKind.NO_REMOTE_REF, ("couldn't find remote ref", "no such ref was fetched")),
    (GitFailureKind.RESET, ("connection reset by peer", "recv failure", "econnreset")),
    (GitFailureKind.TIMEOUT, ("timed out", "timeout", "operation too slow")),
    (GitFailureKind.DNS, ("could not resolve host", "could not resolve hostname", "enotfound",
                          "name or service not known", "temporary failure in name resolution")),
    (GitFailureKind.AUTHENTICATION, ("authentication failed", "permission denied", "could not read username",
                                     "invalid username or password", "returned error: 401",
                                     "returned error: 403", "host key verification failed")),
    (GitFailureKind.NOT_FOUND, ("repository not found", "could not be found", "does not appear to be a git repository",
                                "returned error: 404")),
    (GitFailureKind.UNREACHABLE, ("unable to access", "could not connect", "failed to connect",
                                  "network is unreachable", "connection refused", "network")),
)


def classify_stderr(stderr: str) -> GitFailureKind:
    """Classify git's stderr into a failure kind."""
    text = stderr.lower()
    for kind, needles in _SIGNATURES:
        if any(needle in text for needle in needles):
            return kind
    return GitFailureKind.OTHER


class GitCommandError(OkrSyncError):
    """A git invocation exited non-zero or timed out."""

    def __init__(self, args: Sequence[str], returncode: Optional[int], stderr: str, kind: GitFailureKind):
        self.git_args = list(args)
        self.returncode = returncode
        self.stderr = redact_url(stderr.strip())
        self.kind = kind
        super().__init__(
            f"git {self.git_args[0] if self.git_args else ''} failed: {self.stderr or 'no output'}",
            retryable=kind.network_kind is not None,
            kind=kind.value,
            returncode=returncode,
        )


@dataclass
class GitResult:
    """Output of a successful git invocation."""
    returncode: int
    stdout: str
    stderr: str


class GitRunner:
    """Runs git in one working directory as an asyncio subprocess."""

    def __init__(self, work_dir: Path, git_binary: str = "git"):
        """Initialize runner.

        Args:
            work_dir: Repository working directory
            git_binary: git executable
        """
        self.work_dir = Path(work_dir)
        self.git_binary = git_binary

    async def run(
        self,
        *args: str,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        config: Sequence[Tuple[str, str]] = (),
        env: Optional[Mapping[str, str]] = None,
        check: bool = True,
    ) -> GitResult:
        """Run ``git <args>``.

        Args:
            *args: git arguments
            timeout: Seconds before the process is killed (None waits forever)
            config: ``(key, value)`` settings injected through ``GIT_CONFIG_*`` env entries
            env: Extra environment variables for this invocation
            check: Raise on a non-zero exit status

        Returns:
            GitResult

        Raises:
            GitCommandError: Non-zero exit (when ``check``) or timeout
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.git_binary, *args,
                cwd=str(self.work_dir),
                env=build_git_env(config, env),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ConfigurationError("git executable not found", setting="git_binary") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            logger.warning(f"git {args[0]} killed after {timeout}s")
            raise GitCommandError(args, None, f"operation timed out after {timeout} seconds", GitFailureKind.TIMEOUT)

        result = GitResult(
            returncode=process.returncode,
            stdout=stdout.decode('utf-8', errors='replace'),
            stderr=stderr.decode('utf-8', errors='replace'),
        )
        if check and result.returncode != 0:
            raise GitCommandError(args, result.returncode, result.stderr, classify_stderr(result.stderr))
        return result


def build_git_env(config: Sequence[Tuple[str, str]] = (), extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Environment for one git process.

    Settings in ``config`` are passed as ``GIT_CONFIG_COUNT``/``GIT_CONFIG_KEY_n``/
    ``GIT_CONFIG_VALUE_n`` so they reach git without touching ``.git/config`` or argv.
    """
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    if extra:
        env.update(extra)
    if config:
        env["GIT_CONFIG_COUNT"] = str(len(config))
        for index, (key, value) in enumerate(config):
            env[f"GIT_CONFIG_KEY_{index}"] = key
            env[f"GIT_CONFIG_VALUE_{index}"] = value
    return env


def basic_auth_header(username: str, password: str) -> str:
    """``http.extraHeader`` value carrying Basic credentials."""
    encoded = base64.b64encode(f"{username}:{password}".encode('utf-8')).decode('ascii')
    return f"Authorization: Basic {encoded}"


def is_ssh_url(url: str) -> bool:
    return bool(_SCP_URL.match(url) or _SSH_URL.match(url))


def detect_provider(url: str) -> Optional[GitProvider]:
    """The hosting provider a remote URL points at, if it is a recognized one."""
    parsed = parse_remote(url)
    if parsed is None:
        return None
    host = parsed[0].lower()
    for provider, provider_host in PROVIDER_HOSTS.items():
        if host == provider_host or host.endswith(f".{provider_host}"):
            return provider
    return None


def normalize_remote_url(url: str) -> str:
    """Tidy a user-entered remote URL.

    Strips whitespace and trailing slashes, forces ``https://`` on HTTP(S) URLs
    and adds the ``.git`` suffix for recognized hosts. SSH URLs keep their form.
    """
    url = url.strip().rstrip('/')
    if not url:
        return url
    if not is_ssh_url(url):
        if url.startswith('http://'):
            url = 'https://' + url[len('http://'):]
        elif not url.startswith('https://'):
            url = 'https://' + url
    if detect_provider(url) is not None and not url.endswith('.git'):
        url += '.git'
    return url


def parse_remote(url: str) -> Optional[Tuple[str, str]]:
    """Split a remote URL into ``(host, path)`` with the path free of slashes at the ends."""
    for pattern in (_SCP_URL, _SSH_URL, _HTTP_URL):
        match = pattern.match(url.strip())
        if match:
            return match.group('host'), match.group('path').strip('/')
    return None


def to_https_url(url: str) -> str:
    """HTTPS form of a remote URL, without any embedded credentials."""
    parsed = parse_remote(url)
    if parsed is None:
        return url
    host, path = parsed
    return f"https://{host}/{path}"


def to_ssh_url(url: str) -> str:
    """``git@host:owner/repo.git`` form of a remote URL."""
    if _SCP_URL.match(url):
        return url
    parsed = parse_remote(url)
    if parsed is None:
        return url
    host, path = parsed
    if not path.endswith('.git'):
        path += '.git'
    return f"git@{host}:{path}"


def parse_owner_repo(url: str) -> Optional[Tuple[str, str]]:
    """Extract ``(owner, repo)`` from an HTTPS, SSH or credentialed remote URL.

    For nested GitLab groups the owner is the full namespace path.
    """
    parsed = parse_remote(url)
    if parsed is None:
        return None
    path = parsed[1]
    if path.endswith('.git'):
        path = path[:-4]
    owner, _, repo = path.rpartition('/')
    if not owner or not repo:
        return None
    return owner, repo
