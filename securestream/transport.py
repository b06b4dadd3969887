"""
Message transport used by the channel supervisor.

`Transport.open()` returns a `TransportConnection`; delivery happens on
background threads and every failure after open goes to the error hook.
With ``wait_connected`` the first connect attempt is made before `open()`
returns and its failure is raised as `TransportError` instead. Without
``reconnect`` the connection closes itself once its first session ends.
`WebSocketTransport` is the concrete implementation.
"""

import queue
import threading
from typing import Callable, Optional, Sequence, Tuple, Union

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect

from securestream.config import CONFIG
from securestream.exceptions import TransportError
from securestream.logging_utils import get_logger

logger = get_logger("securestream")

Message = Union[bytes, str]
MessageHook = Callable[[Message], None]
ErrorHook = Callable[[Exception], None]
Headers = Sequence[Tuple[str, str]]

_CLOSE = object()


class TransportConnection:
    """One logical connection; send() never blocks on network I/O."""

    def send(self, data: Message) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    @property
    def is_closed(self) -> bool:
        raise NotImplementedError


class Transport:
    def open(
        self,
        url: str,
        headers: Headers,
        on_message: MessageHook,
        on_error: ErrorHook,
        wait_connected: bool = False,
        reconnect: bool = True,
    ) -> TransportConnection:
        raise NotImplementedError


class WebSocketConnection(TransportConnection):
    def __init__(
        self,
        url: str,
        headers: Headers,
        on_message: MessageHook,
        on_error: ErrorHook,
        reconnect_s: Optional[float] = None,
        open_timeout: Optional[float] = None,
        reconnect: bool = True,
        wait_connected: bool = False,
    ):
        self.url = url
        self.headers = list(headers)
        self._on_message = on_message
        self._on_error = on_error
        self._reconnect_s = CONFIG["TRANSPORT_RECONNECT_S"] if reconnect_s is None else reconnect_s
        self._open_timeout = CONFIG["TRANSPORT_OPEN_TIMEOUT_S"] if open_timeout is None else open_timeout
        self._reconnect = reconnect
        self._wait_connected = wait_connected
        self._outbox: "queue.Queue[object]" = queue.Queue()
        self._closed = threading.Event()
        self._connected = threading.Event()
        self._first_attempt = threading.Event()
        self._open_error: Optional[TransportError] = None
        self._ws_lock = threading.Lock()
        self._ws = None
        self._reader = threading.Thread(target=self._read_loop, name="ws-reader", daemon=True)
        self._sender = threading.Thread(target=self._send_loop, name="ws-sender", daemon=True)

    def start(self) -> "WebSocketConnection":
        self._reader.start()
        self._sender.start()
        return self

    def wait_open(self) -> "WebSocketConnection":
        """Block until the first connect attempt settles; raise if it failed."""
        # connect() bounds the attempt by open_timeout; allow for thread startup.
        if not self._first_attempt.wait(self._open_timeout + 1.0):
            self.close()
            raise TransportError(f"{self.url}: timed out after {self._open_timeout}s")
        if self._open_error is not None:
            self.close()
            raise self._open_error
        return self

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    def send(self, data: Message) -> None:
        if self._closed.is_set():
            raise TransportError("connection is closed")
        self._outbox.put(data)

    def _shutdown(self) -> None:
        self._closed.set()
        self._outbox.put(_CLOSE)

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._shutdown()
        with self._ws_lock:
            ws = self._ws
        if ws is not None:
            ws.close()
        for thread in (self._reader, self._sender):
            if thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=self._open_timeout)

    def _read_loop(self) -> None:
        while not self._closed.is_set():
            try:
                with connect(self.url, additional_headers=self.headers, open_timeout=self._open_timeout) as ws:
                    with self._ws_lock:
                        self._ws = ws
                    self._connected.set()
                    self._first_attempt.set()
                    logger.info("Transport connected", extra={"url": self.url})
                    if self._closed.is_set():
                        break
                    for message in ws:
                        self._on_message(message)
                if not self._reconnect and not self._closed.is_set():
                    self._on_error(TransportError(f"{self.url}: closed by peer"))
            except (OSError, WebSocketException) as exc:
                error = TransportError(f"{self.url}: {exc}")
                if self._wait_connected and not self._first_attempt.is_set():
                    # Raised from wait_open() instead of the error hook.
                    self._open_error = error
                elif not self._closed.is_set():
                    logger.debug("Transport connect/read failed", extra={"url": self.url, "error": str(exc)})
                    self._on_error(error)
            finally:
                self._connected.clear()
                with self._ws_lock:
                    self._ws = None
                self._first_attempt.set()
            if not self._reconnect or self._open_error is not None:
                self._shutdown()
                return
            # The helper may not be listening yet; pace reconnects.
            self._closed.wait(self._reconnect_s)

    def _send_loop(self) -> None:
        while True:
            item = self._outbox.get()
            if item is _CLOSE or self._closed.is_set():
                return
            if not self._connected.wait(self._open_timeout):
                self._on_error(TransportError(f"{self.url}: not connected, message dropped"))
                continue
            with self._ws_lock:
                ws = self._ws
            if ws is None:
                self._on_error(TransportError(f"{self.url}: not connected, message dropped"))
                continue
            try:
                ws.send(item)
            except (ConnectionClosed, OSError) as exc:
                self._on_error(TransportError(f"{self.url}: send failed: {exc}"))


class WebSocketTransport(Transport):
    def __init__(self, reconnect_s: Optional[float] = None, open_timeout: Optional[float] = None):
        self.reconnect_s = reconnect_s
        self.open_timeout = open_timeout

    def open(
        self,
        url: str,
        headers: Headers,
        on_message: MessageHook,
        on_error: ErrorHook,
        wait_connected: bool = False,
        reconnect: bool = True,
    ) -> WebSocketConnection:
        if not url.startswith(("ws://", "wss://")):
            raise TransportError(f"unsupported transport URL: {url}")
        connection = WebSocketConnection(
            url,
            headers,
            on_message,
            on_error,
            reconnect_s=self.reconnect_s,
            open_timeout=self.open_timeout,
            reconnect=reconnect,
            wait_connected=wait_connected,
        ).start()
        if wait_connected:
            connection.wait_open()
        return connection
