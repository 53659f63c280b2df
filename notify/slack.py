"""Slack release notifications delivered through an incoming webhook."""

from __future__ import annotations

import json
import socket
import threading
from datetime import datetime, timezone
from typing import List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection, HTTPSConnection
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool

from models import AttachmentField, Release, Repository, SlackAttachment, SlackPayload

DEFAULT_TIMEOUT = 5
PRERELEASE_COLOR = "#FFC600"
RELEASE_COLOR = "#15e415"
FOOTER_TEXT = " "
FOOTER_ICON = "https://assets-cdn.github.com/images/modules/logos_page/GitHub-Mark.png"
MARKDOWN_FIELDS = ("pretext",)
BODY_CHUNK_SIZE = 1024

_active = threading.local()


class SlackWebhookError(requests.HTTPError):
    """Raised when the webhook answers with anything other than 200 OK."""

    def __init__(self, response: requests.Response, body: str) -> None:
        self.status_code = response.status_code
        self.reason = response.reason or ""
        self.body = body
        status = f"{self.status_code} {self.reason}".strip()
        super().__init__(f"request didn't respond with 200 OK: {status}, {body}", response=response)


class _Watchdog:
    """
    Shut down the request's socket once ``seconds`` have passed.

    requests only bounds each individual socket wait, so a server trickling
    bytes could otherwise hold the call open indefinitely. Shutting the socket
    down wakes any blocked read in the calling thread.
    """

    def __init__(self, seconds: float) -> None:
        self.expired = False
        self._sock: Optional[socket.socket] = None
        self._lock = threading.Lock()
        self._timer = threading.Timer(seconds, self._expire)
        self._timer.daemon = True

    def start(self) -> None:
        self._timer.start()

    def cancel(self) -> None:
        self._timer.cancel()

    def watch(self, sock: Optional[socket.socket]) -> None:
        if sock is None:
            return
        with self._lock:
            self._sock = sock
            expired = self.expired
        if expired:
            _shutdown(sock)

    def _expire(self) -> None:
        with self._lock:
            self.expired = True
            sock = self._sock
        if sock is not None:
            _shutdown(sock)


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        # The peer already closed the connection.
        pass


def _watch(sock: Optional[socket.socket]) -> None:
    watchdog = getattr(_active, "watchdog", None)
    if watchdog is not None:
        watchdog.watch(sock)


class _WatchedHTTPConnection(HTTPConnection):
    def connect(self) -> None:
        super().connect()
        _watch(self.sock)

    def request(self, *args, **kwargs):
        # Reused keep-alive connections never pass through connect().
        _watch(self.sock)
        return super().request(*args, **kwargs)


class _WatchedHTTPSConnection(HTTPSConnection):
    def connect(self) -> None:
        super().connect()
        _watch(self.sock)

    def request(self, *args, **kwargs):
        _watch(self.sock)
        return super().request(*args, **kwargs)


class _WatchedHTTPConnectionPool(HTTPConnectionPool):
    ConnectionCls = _WatchedHTTPConnection


class _WatchedHTTPSConnectionPool(HTTPSConnectionPool):
    ConnectionCls = _WatchedHTTPSConnection


class DeadlineAdapter(HTTPAdapter):
    """Transport adapter whose connections can be cut by a send deadline."""

    def init_poolmanager(self, *args, **kwargs) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _WatchedHTTPConnectionPool,
            "https": _WatchedHTTPSConnectionPool,
        }


def border_color(release: Release) -> str:
    return PRERELEASE_COLOR if release.is_prerelease else RELEASE_COLOR


def render_text(repository: Repository) -> str:
    """Return the link-style summary line used for both text and fallback."""
    release = repository.release
    return (
        f"<{repository.url}|{repository.full_name}>: "
        f"<{release.url}|{release.name}> released"
    )


def render_pretext(repository: Repository) -> str:
    return f"*{repository.full_name}* - _{repository.release.name}_"


def unix_timestamp(moment: datetime) -> int:
    """Return Unix seconds for ``moment``, truncated toward zero."""
    if moment.tzinfo is None:
        # Naive timestamps are assumed to already be in UTC.
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def build_payload(repository: Repository) -> SlackPayload:
    """Build the single-attachment payload announcing ``repository.release``."""
    release = repository.release
    text = render_text(repository)
    attachment = SlackAttachment(
        fallback=text,
        text=text,
        pretext=render_pretext(repository),
        color=border_color(release),
        title=release.name,
        title_link=release.url,
        fields=(AttachmentField(title="Description", value=release.description, short=False),),
        footer=FOOTER_TEXT,
        footer_icon=FOOTER_ICON,
        mrkdwn_in=MARKDOWN_FIELDS,
        ts=unix_timestamp(release.published_at),
    )
    return SlackPayload(attachments=(attachment,))


def serialize_payload(payload: SlackPayload) -> bytes:
    return json.dumps(payload.as_dict()).encode("utf-8")


def _read_body(response: requests.Response, watchdog: _Watchdog) -> str:
    """
    Read as much of the error body as the deadline allows.

    Read failures are ignored; whatever arrived before them is returned.
    """
    chunks: List[bytes] = []
    stream = response.iter_content(chunk_size=BODY_CHUNK_SIZE)
    try:
        while not watchdog.expired:
            chunk = next(stream, None)
            if chunk is None:
                break
            chunks.append(chunk)
    except requests.RequestException:
        pass
    return b"".join(chunks).decode(response.encoding or "utf-8", errors="replace")


class SlackSender:
    """
    Posts release notifications to a single Slack webhook.

    A DeadlineAdapter is mounted on ``session`` (or on a session the sender
    creates) so the whole request is bounded by ``timeout`` seconds.
    """

    def __init__(
        self,
        hook: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.hook = hook
        self.timeout = timeout
        self._owns_session = session is None
        self.session = requests.Session() if session is None else session
        adapter = DeadlineAdapter()
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> "SlackSender":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def send(self, repository: Repository) -> None:
        """
        Send a notification built from ``repository`` and its release.

        Transport errors from requests propagate unchanged. Running past the
        deadline raises requests.Timeout. A non-200 answer raises
        SlackWebhookError carrying the status line and response body.
        """
        body = serialize_payload(build_payload(repository))

        watchdog = _Watchdog(self.timeout)
        _active.watchdog = watchdog
        watchdog.start()
        try:
            # Slack infers the content type from the body, so no headers are set.
            with self.session.post(self.hook, data=body, timeout=self.timeout, stream=True) as response:
                if watchdog.expired:
                    raise requests.Timeout(
                        f"Slack webhook did not answer within {self.timeout}s", response=response
                    )
                if response.status_code == 200:
                    return
                text = _read_body(response, watchdog)
        except requests.RequestException as exc:
            if watchdog.expired and not isinstance(exc, requests.Timeout):
                raise requests.Timeout(f"Slack webhook did not answer within {self.timeout}s") from exc
            raise
        finally:
            watchdog.cancel()
            _active.watchdog = None
        raise SlackWebhookError(response, text)
