"""
Remote document retrieval with timeout, fixed-delay retry and failure
classification.

A fetch either returns the raw response body or raises ``FetchError`` whose
``kind`` tells operators why the source could not be retrieved. Network-level
failures and 5xx responses are retried a fixed number of times with a fixed
delay; client errors (4xx) and certificate problems are not.
"""

from __future__ import annotations

import logging
import socket
import ssl
import time
from enum import Enum
from typing import Callable, Iterator, Optional

import requests

from .telemetry import TelemetrySink

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_RETRIES = 3
DEFAULT_RETRY_DELAY = 5.0
MAX_REDIRECTS = 5
CHUNK_SIZE = 64 * 1024

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "failed to resolve",
    "temporary failure in name resolution",
    "no address associated with hostname",
)


class FetchErrorKind(str, Enum):
    TIMEOUT = "timeout"
    DNS = "dns"
    CONNECTION_REFUSED = "connection_refused"
    TLS = "tls"
    HTTP_STATUS = "http_status"
    NETWORK = "network"


class FetchError(Exception):
    """A source could not be retrieved."""

    def __init__(
        self,
        kind: FetchErrorKind,
        url: str,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.url = url
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.kind == FetchErrorKind.HTTP_STATUS:
            return self.status_code is not None and self.status_code >= 500
        return self.kind != FetchErrorKind.TLS


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Walk an exception, its causes, and the errors urllib3 wraps."""
    seen = set()
    pending = [exc]
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current

        for linked in (current.__cause__, current.__context__, getattr(current, "reason", None)):
            if isinstance(linked, BaseException):
                pending.append(linked)
        pending.extend(arg for arg in current.args if isinstance(arg, BaseException))


def classify_request_exception(exc: requests.RequestException, url: str, timeout: float) -> FetchError:
    """
    Map a requests exception onto the fetch failure taxonomy.

    Args:
        exc: The exception raised by the HTTP session
        url: The source URL being fetched
        timeout: The timeout that was applied, for the error message

    Returns:
        A FetchError describing the failure
    """
    if isinstance(exc, requests.exceptions.Timeout):
        return FetchError(
            FetchErrorKind.TIMEOUT, url, f"Timeout after {timeout:g}s. The server is not responding."
        )

    chain = list(_exception_chain(exc))

    if isinstance(exc, requests.exceptions.SSLError) or any(
        isinstance(item, ssl.SSLError) for item in chain
    ):
        return FetchError(
            FetchErrorKind.TLS,
            url,
            f"SSL/TLS certificate error ({exc}). Set TLS_VERIFY=false to bypass "
            "(not recommended for production).",
        )

    if any(isinstance(item, socket.gaierror) for item in chain) or any(
        marker in str(item).lower() for item in chain for marker in _DNS_MARKERS
    ):
        return FetchError(
            FetchErrorKind.DNS,
            url,
            "DNS resolution failed. Unable to resolve the hostname. Check if the URL is correct.",
        )

    if any(isinstance(item, ConnectionRefusedError) for item in chain) or any(
        "connection refused" in str(item).lower() for item in chain
    ):
        return FetchError(
            FetchErrorKind.CONNECTION_REFUSED,
            url,
            "Connection refused. The server is not accepting connections on this port.",
        )

    return FetchError(FetchErrorKind.NETWORK, url, f"Network error: {exc}")


class Fetcher:
    """
    Retrieves remote sources into memory.

    The fetcher is shared by every group and by the synchronous merge; the
    surrounding pool decides how many fetches run at once.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        verify_tls: bool = True,
        session: Optional[requests.Session] = None,
        telemetry: Optional[TelemetrySink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self.verify_tls = verify_tls
        self.session = session or self._build_session()
        self._telemetry = telemetry
        self._sleep = sleep

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        session.max_redirects = MAX_REDIRECTS
        return session

    def fetch(self, url: str) -> bytes:
        """
        Download a source, retrying transient failures.

        Args:
            url: The source URL

        Returns:
            The response body

        Raises:
            FetchError: When the source is unreachable after all attempts or
                the failure is not transient
        """
        attempt = 0
        while True:
            try:
                return self._fetch_once(url)
            except FetchError as exc:
                if not exc.retryable or attempt >= self.retries:
                    logger.error(f"Error downloading {url}: {exc.message}")
                    raise
                attempt += 1
                logger.info(f"Retry attempt {attempt} for {url}: {exc.message}")
                self._sleep(self.retry_delay)

    def _fetch_once(self, url: str) -> bytes:
        started = time.monotonic()
        try:
            response = self.session.get(
                url,
                timeout=self.timeout,
                verify=self.verify_tls,
                allow_redirects=True,
                stream=True,
            )
        except requests.RequestException as exc:
            error = classify_request_exception(exc, url, self.timeout)
            self._record(url, 0, started, error.message)
            raise error from exc

        try:
            if response.status_code >= 400:
                message = f"HTTP {response.status_code} {response.reason or ''}".strip()
                self._record(url, response.status_code, started, message)
                raise FetchError(FetchErrorKind.HTTP_STATUS, url, message, status_code=response.status_code)

            body = self._read_body(response, url, started)
        finally:
            response.close()

        self._record(url, response.status_code, started, None)
        return body

    def _read_body(self, response: requests.Response, url: str, started: float) -> bytes:
        """
        Read a streamed body, enforcing the timeout on the whole download.

        The session timeout only bounds each connect and read, so a server
        trickling bytes could otherwise hold a fetch open indefinitely.
        """
        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if time.monotonic() - started > self.timeout:
                    raise FetchError(
                        FetchErrorKind.TIMEOUT,
                        url,
                        f"Timeout after {self.timeout:g}s. The download did not complete in time.",
                    )
                chunks.append(chunk)
        except FetchError as exc:
            self._record(url, 0, started, exc.message)
            raise
        except requests.RequestException as exc:
            error = classify_request_exception(exc, url, self.timeout)
            self._record(url, 0, started, error.message)
            raise error from exc
        return b"".join(chunks)

    def _record(self, url: str, status_code: int, started: float, error: Optional[str]) -> None:
        if self._telemetry is None:
            return
        elapsed_ms = int((time.monotonic() - started) * 1000)
        self._telemetry.record_download(url, status_code, elapsed_ms, error)
