# gguf_parser/io/remote_reader.py
"""
Ranged-HTTP byte source with a bounded read-ahead buffer.

A background fetch thread streams ``Range: bytes=<offset>-`` responses into a
bounded queue while the decoder consumes from it:

- the fetcher blocks when the queue is full (backpressure), the decoder
  blocks while the next chunk has not arrived yet;
- sequential and short forward reads are served from the stream, backward
  or far-forward reads restart the fetcher at the new offset;
- transient failures are retried with exponential backoff, resuming at the
  last delivered offset; terminal statuses fail at once;
- a cancellation event or a deadline stops both sides and surfaces as
  :class:`ReadCancelledError`.

HTTP sessions are pooled per host for a bounded time so repeated range
requests reuse resolved, kept-alive connections.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple, Union
from urllib.parse import urlsplit

import requests
from loguru import logger
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from gguf_parser.errors import NetworkError, ReadCancelledError, TruncatedReadError
from gguf_parser.io.file_reader import ByteSource

DEFAULT_BUFFER_SIZE = 4 * 1024 * 1024
MIN_BUFFER_SIZE = 32 * 1024
CHUNK_SIZE = 32 * 1024
SESSION_TTL = 300.0
TRANSIENT_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})

_POLL_INTERVAL = 0.05
_JOIN_TIMEOUT = 1.0
_EOF = object()

_sessions: Dict[Tuple, Tuple[requests.Session, float]] = {}
_sessions_lock = threading.Lock()


def _new_session(
    *, retries: int, backoff_factor: float, verify: bool, proxy: Optional[str]
) -> requests.Session:
    retry = Retry(
        total=retries,
        connect=retries,
        read=retries,
        status=retries,
        backoff_factor=backoff_factor,
        status_forcelist=sorted(TRANSIENT_STATUSES),
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=4, pool_maxsize=4)
    session = requests.Session()
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.verify = verify
    if proxy:
        session.proxies = {"http": proxy, "https": proxy}
    return session


def get_session(
    url: str,
    *,
    retries: int = 3,
    backoff_factor: float = 0.5,
    verify: bool = True,
    proxy: Optional[str] = None,
    pooled: bool = True,
) -> requests.Session:
    """Return an HTTP session for ``url``.

    Sessions are shared process-wide per (scheme, host, settings) and replaced
    after :data:`SESSION_TTL` seconds, so host resolution is refreshed
    periodically.

    Args:
        url: Target URL; only scheme and host:port are used as the pool key.
        retries: Bounded retry count for idempotent requests.
        backoff_factor: Exponential backoff base in seconds.
        verify: Verify TLS certificates.
        proxy: Optional proxy URL for both http and https.
        pooled: When False a private session is created.
    """
    if not pooled:
        return _new_session(
            retries=retries, backoff_factor=backoff_factor, verify=verify, proxy=proxy
        )
    parts = urlsplit(url)
    key = (parts.scheme, parts.netloc, retries, backoff_factor, verify, proxy)
    now = time.monotonic()
    with _sessions_lock:
        hit = _sessions.get(key)
        if hit is not None and now - hit[1] < SESSION_TTL:
            return hit[0]
        session = _new_session(
            retries=retries, backoff_factor=backoff_factor, verify=verify, proxy=proxy
        )
        _sessions[key] = (session, now)
        logger.debug("New HTTP session for {host}", host=parts.netloc)
        return session


@dataclass
class RemoteFileSource:
    """Remote file reachable through ranged HTTP GET requests.

    Attributes:
        url: Direct URL of the file.
        buffer_size: Read-ahead bound in bytes (minimum 32 KiB).
        timeout: Per-request connect/read timeout in seconds.
        retries: Bounded retries for transient failures.
        backoff_factor: Exponential backoff base in seconds.
        headers: Extra request headers, e.g. ``Authorization``.
        cancel: Event that aborts outstanding reads once set.
        deadline: ``time.monotonic()`` value after which reads abort.
        skip_range_detection: Size the file with a plain GET instead of HEAD
            and do not require ``Accept-Ranges: bytes``.
        skip_tls_verification: Do not verify TLS certificates.
        proxy: Optional proxy URL.
        skip_dns_cache: Use a private session instead of the shared pool.
        session: Pre-built session (tests, custom transports).
    """

    url: str
    buffer_size: int = DEFAULT_BUFFER_SIZE
    timeout: Optional[float] = 30.0
    retries: int = 3
    backoff_factor: float = 0.5
    headers: Mapping[str, str] = field(default_factory=dict)
    cancel: Optional[threading.Event] = None
    deadline: Optional[float] = None
    skip_range_detection: bool = False
    skip_tls_verification: bool = False
    proxy: Optional[str] = None
    skip_dns_cache: bool = False
    session: Optional[requests.Session] = None

    def open(self) -> "RemoteFile":
        """Return an (unentered) remote reader."""
        session = self.session or get_session(
            self.url,
            retries=self.retries,
            backoff_factor=self.backoff_factor,
            verify=not self.skip_tls_verification,
            proxy=self.proxy,
            pooled=not self.skip_dns_cache,
        )
        return RemoteFile(
            self.url,
            session=session,
            buffer_size=self.buffer_size,
            timeout=self.timeout,
            retries=self.retries,
            backoff_factor=self.backoff_factor,
            headers=self.headers,
            cancel=self.cancel,
            deadline=self.deadline,
            skip_range_detection=self.skip_range_detection,
        )


class _RangeFetcher(threading.Thread):
    """Producer side: streams one open-ended range into a bounded queue."""

    def __init__(self, owner: "RemoteFile", start: int):
        super().__init__(name=f"gguf-range-fetch@{start}", daemon=True)
        self.owner = owner
        self.queue: "queue.Queue[Union[bytes, BaseException, object]]" = queue.Queue(
            maxsize=max(1, owner.buffer_size // CHUNK_SIZE)
        )
        self._halt = threading.Event()
        self._pos = start

    def halt(self) -> None:
        """Stop producing and release a producer blocked on a full queue."""
        self._halt.set()
        while True:
            try:
                self.queue.get_nowait()
            except queue.Empty:
                break

    def _halted(self) -> bool:
        if self.owner.cancelled():
            self._halt.set()
        return self._halt.is_set()

    def _put(self, item: Union[bytes, BaseException, object]) -> bool:
        while not self._halted():
            try:
                self.queue.put(item, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _stream_from(self, start: int) -> None:
        owner = self.owner
        headers = dict(owner.headers)
        headers["Range"] = f"bytes={start}-{owner.size - 1}"
        logger.debug("GET {url} Range={rng}", url=owner.url, rng=headers["Range"])
        resp = owner.session.get(owner.url, headers=headers, stream=True, timeout=owner.timeout)
        try:
            status = resp.status_code
            if status in TRANSIENT_STATUSES:
                raise requests.HTTPError(f"GET {owner.url}: status {status}")
            if status == 200 and start != 0:
                raise NetworkError(
                    f"GET {owner.url}: server ignored the range request", status=status
                )
            if status not in (200, 206):
                raise NetworkError(f"GET {owner.url}: status {status}", status=status)
            for chunk in resp.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                if not self._put(bytes(chunk)):
                    return
                self._pos += len(chunk)
                if self._pos >= owner.size:
                    return
        finally:
            resp.close()

    def run(self) -> None:
        owner = self.owner
        failures = 0
        while self._pos < owner.size and not self._halted():
            start = self._pos
            reason = "stream ended early"
            try:
                self._stream_from(start)
            except NetworkError as exc:
                self._put(exc)
                return
            except requests.RequestException as exc:
                reason = str(exc)
            if self._pos >= owner.size or self._halted():
                break
            failures = 0 if self._pos > start else failures + 1
            if failures > owner.retries:
                self._put(
                    NetworkError(
                        f"GET {owner.url} failed after {owner.retries} retries: {reason}",
                        retryable=True,
                    )
                )
                return
            if failures:
                delay = owner.backoff_factor * (2 ** (failures - 1))
                logger.warning(
                    "Range read at {offset} failed ({reason}); retry {n}/{total} in {delay:.2f}s",
                    offset=self._pos,
                    reason=reason,
                    n=failures,
                    total=owner.retries,
                    delay=delay,
                )
                if self._halt.wait(delay):
                    return
            else:
                logger.debug("Resuming range read at {offset}", offset=self._pos)
        if not self._halted():
            self._put(_EOF)


class RemoteFile(ByteSource):
    """Consumer side: serves ``read_at`` from the fetcher's stream."""

    def __init__(
        self,
        url: str,
        *,
        session: requests.Session,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        timeout: Optional[float] = 30.0,
        retries: int = 3,
        backoff_factor: float = 0.5,
        headers: Optional[Mapping[str, str]] = None,
        cancel: Optional[threading.Event] = None,
        deadline: Optional[float] = None,
        skip_range_detection: bool = False,
    ):
        self.url = url
        self.session = session
        self.buffer_size = max(buffer_size, MIN_BUFFER_SIZE)
        self.timeout = timeout
        self.retries = retries
        self.backoff_factor = backoff_factor
        self.headers: Dict[str, str] = dict(headers or {})
        self.cancel = cancel
        self.deadline = deadline
        self.skip_range_detection = skip_range_detection
        self.size = 0
        self.requests = 0
        self._fetcher: Optional[_RangeFetcher] = None
        self._pending = memoryview(b"")
        self._position = 0

    def __enter__(self) -> "RemoteFile":
        self._check_cancelled()
        self.size = self._stat()
        logger.debug("Remote {url} has {size} bytes", url=self.url, size=self.size)
        return self

    def close(self) -> None:
        self._stop_fetcher()
        self._pending = memoryview(b"")

    def cancelled(self) -> bool:
        """True once the cancel event is set or the deadline has passed."""
        if self.cancel is not None and self.cancel.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def _check_cancelled(self) -> None:
        if self.cancelled():
            self.close()
            raise ReadCancelledError(f"read of {self.url} cancelled")

    def _stat(self) -> int:
        try:
            if self.skip_range_detection:
                resp = self.session.get(
                    self.url, headers=self.headers, stream=True, timeout=self.timeout
                )
            else:
                resp = self.session.head(
                    self.url, headers=self.headers, allow_redirects=True, timeout=self.timeout
                )
        except requests.RequestException as exc:
            raise NetworkError(f"stat {self.url}: {exc}", retryable=True) from exc
        try:
            if resp.status_code != 200:
                raise NetworkError(
                    f"stat {self.url}: status {resp.status_code}",
                    retryable=resp.status_code in TRANSIENT_STATUSES,
                    status=resp.status_code,
                )
            if not self.skip_range_detection:
                if resp.headers.get("Accept-Ranges", "").lower() != "bytes":
                    raise NetworkError(f"stat {self.url}: server does not support range requests")
            length = resp.headers.get("Content-Length", "")
        finally:
            resp.close()
        if not length.isdigit():
            raise NetworkError(f"stat {self.url}: missing Content-Length")
        return int(length)

    def _stop_fetcher(self) -> None:
        fetcher, self._fetcher = self._fetcher, None
        if fetcher is None:
            return
        fetcher.halt()
        fetcher.join(_JOIN_TIMEOUT)
        if fetcher.is_alive():
            logger.debug("Range fetcher {name} still draining a response", name=fetcher.name)

    def _restart(self, offset: int) -> None:
        self._stop_fetcher()
        self._fetcher = _RangeFetcher(self, offset)
        self._fetcher.start()
        self.requests += 1
        self._pending = memoryview(b"")
        self._position = offset

    def _next_chunk(self) -> memoryview:
        fetcher = self._fetcher
        if fetcher is None:
            raise RuntimeError(f"no active range stream for {self.url}")
        while True:
            self._check_cancelled()
            try:
                item = fetcher.queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is _EOF:
                raise TruncatedReadError(
                    f"remote stream of {self.url} ended at offset {self._position}",
                    offset=self._position,
                    size=self.size,
                )
            if isinstance(item, BaseException):
                self.close()
                raise item
            return memoryview(item)

    def _consume(self, n: int) -> memoryview:
        if not self._pending:
            self._pending = self._next_chunk()
        taken = self._pending[:n]
        self._pending = self._pending[len(taken) :]
        self._position += len(taken)
        return taken

    def _seek(self, offset: int) -> None:
        if self._fetcher is not None and self._position <= offset <= self._position + self.buffer_size:
            while self._position < offset:
                self._consume(offset - self._position)
            return
        self._restart(offset)

    def read_at(self, offset: int, length: int) -> bytes:
        self._check_bounds(offset, length)
        if length == 0:
            return b""
        self._check_cancelled()
        self._seek(offset)
        out = bytearray()
        while len(out) < length:
            out += self._consume(length - len(out))
        return bytes(out)
