"""Upstream proxy connectivity check."""

import errno
import logging
import socket
import time
from typing import Dict, Iterator, Optional

import requests
from urllib3.exceptions import NameResolutionError

from ..config.settings import ProxyConfig
from ..exceptions import ProxyConnectError, ProxyFailureKind

logger = logging.getLogger(__name__)

PROBE_URL = "https://api.github.com/zen"
PROBE_TIMEOUT = 30  # seconds

_MESSAGES: Dict[ProxyFailureKind, str] = {
    ProxyFailureKind.REFUSED: "Proxy refused the connection, check the host and port and that the proxy is running",
    ProxyFailureKind.UNRESOLVED: "Proxy host could not be resolved, check the proxy address",
    ProxyFailureKind.TIMEOUT: "Proxy connection timed out, check the proxy settings and network",
    ProxyFailureKind.AUTHENTICATION: "Proxy authentication failed, check the proxy username and password",
    ProxyFailureKind.GENERIC: "Proxy connection failed",
}


class ProxyProbe:
    """Issues one small HTTPS request through a proxy and classifies the outcome."""

    def __init__(self, session: Optional[requests.Session] = None, url: str = PROBE_URL, timeout: float = PROBE_TIMEOUT):
        self.session = session or requests.Session()
        self.url = url
        self.timeout = timeout

    def test(self, proxy: ProxyConfig) -> Dict[str, object]:
        """Probe the proxy.

        Args:
            proxy: Proxy settings (tested even when ``enabled`` is false)

        Returns:
            ``{'proxy': <redacted url>, 'status': <http status>, 'elapsed_ms': <int>}``

        Raises:
            ProxyConnectError: The request did not get through the proxy
        """
        logger.info(f"Testing proxy {proxy.redacted_url}")
        started = time.monotonic()
        try:
            response = self.session.get(
                self.url,
                proxies={'http': proxy.url, 'https': proxy.url},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            kind = classify_proxy_failure(e)
            logger.warning(f"Proxy test failed ({kind.value}): {type(e).__name__}")
            raise ProxyConnectError(_MESSAGES[kind], kind=kind, proxy=proxy.redacted_url) from e

        if response.status_code == 407:
            kind = ProxyFailureKind.AUTHENTICATION
            raise ProxyConnectError(_MESSAGES[kind], kind=kind, proxy=proxy.redacted_url)
        if response.status_code >= 400:
            kind = ProxyFailureKind.GENERIC
            raise ProxyConnectError(f"{_MESSAGES[kind]}: status {response.status_code}",
                                    kind=kind, proxy=proxy.redacted_url)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Proxy test succeeded in {elapsed_ms} ms")
        return {'proxy': proxy.redacted_url, 'status': response.status_code, 'elapsed_ms': elapsed_ms}


def classify_proxy_failure(error: BaseException) -> ProxyFailureKind:
    """Classify a failed proxied request by walking its exception chain."""
    if isinstance(error, requests.exceptions.Timeout):
        return ProxyFailureKind.TIMEOUT

    for cause in _iter_causes(error):
        if isinstance(cause, (socket.gaierror, NameResolutionError)):
            return ProxyFailureKind.UNRESOLVED
        if isinstance(cause, ConnectionRefusedError) or getattr(cause, 'errno', None) == errno.ECONNREFUSED:
            return ProxyFailureKind.REFUSED
        if isinstance(cause, (socket.timeout, TimeoutError)) or getattr(cause, 'errno', None) == errno.ETIMEDOUT:
            return ProxyFailureKind.TIMEOUT
        if _tunnel_status(cause) == 407:
            return ProxyFailureKind.AUTHENTICATION

    return ProxyFailureKind.GENERIC


def _iter_causes(error: BaseException) -> Iterator[BaseException]:
    """Yield the error and everything it wraps (cause, context, urllib3 ``reason``, args)."""
    seen = set()
    pending = [error]
    while pending:
        current = pending.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for linked in (current.__cause__, current.__context__, getattr(current, 'reason', None)):
            if isinstance(linked, BaseException):
                pending.append(linked)
        pending.extend(arg for arg in current.args if isinstance(arg, BaseException))


def _tunnel_status(error: BaseException) -> Optional[int]:
    # http.client reports a failed CONNECT only as "Tunnel connection failed: <code> <reason>"
    if not isinstance(error, OSError) or not error.args or not isinstance(error.args[0], str):
        return None
    prefix = "Tunnel connection failed: "
    message = error.args[0]
    if not message.startswith(prefix):
        return None
    code = message[len(prefix):].split(' ', 1)[0]
    return int(code) if code.isdigit() else None
