"""
Channel supervisor.

Drives one secure channel to a locally spawned helper: builds a fresh session,
opens the transport with the session's bearer credential, spawns the helper
with injected arguments and wires the inbound pipeline. Three triggers force
a reset: the decrypt failure threshold, a rejected rotated key and a liveness
timeout. A reset tears the whole cycle down and, with retry configured,
starts a new one.

Every cycle carries a generation number. Handles, callbacks and background
threads of an older generation are ignored once a newer one exists.
"""

import enum
import itertools
import os
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from securestream import codec
from securestream.arguments import build_arguments
from securestream.codec import AuthPredicate, TypeIdData
from securestream.config import ChannelConfig
from securestream.exceptions import (
    DecryptAndDecodeFailure,
    KeyRotationError,
    LivenessTimeout,
    StaleHandleError,
    TransportError,
)
from securestream.keyexchange import KeyExchangeStore, SessionFactory, curve25519_sha256_hkdf_aesgcm
from securestream.keyrotation import KeyRotationWatcher
from securestream.logging_utils import METRICS, get_logger, key_fingerprint
from securestream.process import HelperProcess, resolve_helper
from securestream.replay import ReplayGuard
from securestream.transport import Message, Transport, TransportConnection, WebSocketTransport
from securestream.watchdog import FailureCounter, LivenessWatchdog

logger = get_logger("securestream")


class ChannelState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    FAULTED = "faulted"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class ChannelHandle:
    generation: int
    handle_id: int


@dataclass
class ChannelCallbacks:
    """Caller hooks for a helper-backed channel.

    With ``on_payload`` set, every inbound message is also decrypted and
    decoded (optionally through ``payload_factory``); failures go to
    ``on_error`` and count toward the failure threshold.
    """

    on_message: Optional[Callable[[Message], None]] = None
    on_payload: Optional[Callable[[Any], None]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    on_exit: Optional[Callable[[Optional[Exception]], None]] = None
    on_timeout: Optional[Callable[[], None]] = None
    on_connected: Optional[Callable[[], None]] = None
    on_output: Optional[Callable[[str], None]] = None
    authenticate_timestamps: bool = False
    payload_factory: Optional[Callable[[Any], Any]] = None


Listener = Tuple[Optional[Callable[[Message], None]], Optional[Callable[[Exception], None]]]


@dataclass
class _Stream:
    handle: ChannelHandle
    listeners: List[Listener]
    connection: Optional[TransportConnection] = None


@dataclass
class _Cycle:
    generation: int
    config: ChannelConfig
    callbacks: ChannelCallbacks
    path: Optional[str]
    cancelled: threading.Event = field(default_factory=threading.Event)
    session: Optional[KeyExchangeStore] = None
    handle: Optional[ChannelHandle] = None
    helper: Optional[HelperProcess] = None
    watchdog: Optional[LivenessWatchdog] = None
    watcher: Optional[KeyRotationWatcher] = None
    connected: bool = False


def _call(hook: Optional[Callable[..., Any]], *args: Any) -> None:
    if hook is None:
        return
    try:
        hook(*args)
    except Exception:
        logger.exception("Channel callback raised")


class ChannelSupervisor:
    def __init__(
        self,
        config: ChannelConfig,
        session_factory: SessionFactory = curve25519_sha256_hkdf_aesgcm,
        transport: Optional[Transport] = None,
        process_factory: Callable[..., HelperProcess] = HelperProcess,
        clock: Callable[[], int] = codec.current_timestamp,
    ):
        self._config = config.validate()
        self._session_factory = session_factory
        self._transport = transport if transport is not None else WebSocketTransport()
        self._process_factory = process_factory
        self._lock = threading.RLock()
        self._state = ChannelState.IDLE
        self._generation = 0
        self._session: Optional[KeyExchangeStore] = None
        self._cycle: Optional[_Cycle] = None
        self._streams: Dict[int, _Stream] = {}
        self._handle_ids = itertools.count(1)
        self._retry_timer: Optional[threading.Timer] = None
        self._replay_guard = ReplayGuard(config.replay_jitter_ms, clock=clock)
        self._failures = FailureCounter(config.failure_threshold, on_trip=self._on_failure_threshold)

    # --- read-only state ---

    @property
    def state(self) -> ChannelState:
        with self._lock:
            return self._state

    @property
    def config(self) -> ChannelConfig:
        with self._lock:
            return self._config

    @property
    def session(self) -> Optional[KeyExchangeStore]:
        with self._lock:
            return self._session

    @property
    def handle(self) -> Optional[ChannelHandle]:
        with self._lock:
            return self._cycle.handle if self._cycle is not None else None

    @property
    def failure_count(self) -> int:
        return self._failures.count

    # --- configuration between attempts ---

    def _update_config(self, **changes: Any) -> None:
        with self._lock:
            self._config = self._config.with_changes(**changes).validate()

    def add_pid_as_argument(self, key: str) -> None:
        self._update_config(pid_argument_key=key)

    def add_url_as_argument(self, key: str) -> None:
        self._update_config(url_argument_key=key)

    def add_port_as_argument(self, key: str) -> None:
        self._update_config(port_argument_key=key)

    def add_bearer_token_as_argument(self, key: str) -> None:
        self._update_config(bearer_token_argument_key=key)

    # --- transport-only streams ---

    def _current_session(self) -> KeyExchangeStore:
        with self._lock:
            if self._session is None:
                self._session = self._session_factory()
            return self._session

    def connect(
        self,
        on_message: Optional[Callable[[Message], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        path: Optional[str] = None,
        request_headers: Union[Mapping[str, str], Sequence[Tuple[str, str]], None] = None,
    ) -> ChannelHandle:
        """Open the transport without a helper, authenticated as the current session.

        Raises TransportError when the endpoint cannot be reached. Dropped
        connections are only reopened when ``with_retry`` is configured.
        """
        session = self._current_session()
        with self._lock:
            config = self._config
            generation = self._generation
        return self._open_stream(
            config,
            session,
            generation,
            path,
            request_headers,
            [(on_message, on_error)],
            wait_connected=True,
            reconnect=config.with_retry,
        )

    def stream(
        self,
        path: Optional[str] = None,
        request_headers: Union[Mapping[str, str], Sequence[Tuple[str, str]], None] = None,
        on_message: Optional[Callable[[Message], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> ChannelHandle:
        return self.connect(on_message, on_error, path=path, request_headers=request_headers)

    def subscribe(
        self,
        handle: ChannelHandle,
        on_message: Optional[Callable[[Message], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        with self._lock:
            stream = self._live_stream(handle)
            stream.listeners = stream.listeners + [(on_message, on_error)]

    def _open_stream(
        self,
        config: ChannelConfig,
        session: KeyExchangeStore,
        generation: int,
        path: Optional[str],
        request_headers: Union[Mapping[str, str], Sequence[Tuple[str, str]], None],
        listeners: List[Listener],
        wait_connected: bool = False,
        reconnect: bool = True,
    ) -> ChannelHandle:
        url = config.stream_url(path)
        headers = list(config.request_headers)
        if request_headers:
            items = request_headers.items() if isinstance(request_headers, Mapping) else request_headers
            headers.extend((str(k), str(v)) for k, v in items)
        headers.append(("Authorization", f"Bearer {session.local_public_key()}"))

        stream = _Stream(ChannelHandle(generation, next(self._handle_ids)), listeners)
        connection = self._transport.open(
            url,
            headers,
            partial(self._dispatch, stream),
            partial(self._dispatch_error, stream),
            wait_connected=wait_connected,
            reconnect=reconnect,
        )
        with self._lock:
            if generation != self._generation:
                stale = True
            else:
                stale = False
                stream.connection = connection
                self._streams[stream.handle.handle_id] = stream
        if stale:
            connection.close()
            raise StaleHandleError("channel was reset while the transport was opening")
        logger.info(
            "Transport opened",
            extra={"url": url, "handle": stream.handle.handle_id, "generation": generation},
        )
        return stream.handle

    def _live_stream(self, handle: ChannelHandle) -> _Stream:
        stream = self._streams.get(handle.handle_id)
        if (
            stream is None
            or handle.generation != self._generation
            or stream.connection is None
            or stream.connection.is_closed
        ):
            logger.warning("Rejected stale channel handle", extra={"handle": handle.handle_id})
            raise StaleHandleError(f"handle {handle.handle_id} is no longer live")
        return stream

    def _dispatch(self, stream: _Stream, message: Message) -> None:
        if stream.handle.generation != self._generation:
            return
        for on_message, _ in stream.listeners:
            _call(on_message, message)

    def _dispatch_error(self, stream: _Stream, error: Exception) -> None:
        if stream.handle.generation != self._generation:
            return
        logger.warning("Transport error", extra={"handle": stream.handle.handle_id, "error": str(error)})
        for _, on_error in stream.listeners:
            _call(on_error, error)

    # --- publish / receive ---

    def publish(self, handle: ChannelHandle, value: Any, additional_data: Optional[bytes] = None) -> None:
        """Encrypt ``value`` with the current session and queue it on ``handle``.

        Raises StaleHandleError for a reset or cancelled handle and
        PublishError when the value cannot be encoded or encrypted. Send
        failures after this returns go to the handle's error hooks.
        """
        with self._lock:
            stream = self._live_stream(handle)
            session = self._session
            if session is None:
                raise StaleHandleError("no current session")
            data = codec.encode_and_encrypt(session, value, additional_data)
            try:
                stream.connection.send(data)
            except TransportError as exc:
                raise StaleHandleError(str(exc)) from exc

    def publish_message(
        self,
        handle: ChannelHandle,
        type: str,
        id: str,
        data: str,
        additional_data: Optional[bytes] = None,
    ) -> None:
        self.publish(handle, TypeIdData(type=type, id=id, data=data), additional_data)

    def auth_timestamp(self, additional_data: Union[bytes, str, None]) -> bool:
        return self._replay_guard.authenticate(additional_data)

    def decrypt_and_decode(
        self,
        message: Message,
        auth: Optional[AuthPredicate] = None,
        factory: Optional[Callable[[Any], Any]] = None,
    ) -> Any:
        """Open ``message`` with the current session.

        Failures count toward the failure threshold, which resets the channel
        once crossed; successes clear the count.
        """
        session = self.session
        try:
            if session is None:
                raise DecryptAndDecodeFailure("no current session")
            value = codec.decrypt_and_decode(session, message, auth, factory)
        except DecryptAndDecodeFailure as exc:
            METRICS.counter("decrypt_failures").inc()
            logger.debug("Decrypt/decode failed", extra={"error": str(exc)})
            self._failures.record_failure()
            raise
        self._failures.record_success()
        return value

    def pong(self) -> None:
        with self._lock:
            cycle = self._cycle
        if cycle is not None and cycle.watchdog is not None:
            cycle.watchdog.pong()

    # --- helper-backed cycle ---

    def connect_with_helper(
        self,
        callbacks: Optional[ChannelCallbacks] = None,
        path: Optional[str] = None,
        **hooks: Any,
    ) -> None:
        """Start a helper-backed cycle in the background and return immediately.

        Any running cycle is torn down first. Failures inside the cycle are
        reported through ``on_exit``.
        """
        if callbacks is None:
            callbacks = ChannelCallbacks(**hooks)
        elif hooks:
            raise TypeError("pass either callbacks or hook keywords, not both")
        with self._lock:
            config = self._config.validate(require_helper=True)
        self._start_cycle(config, callbacks, path)

    def _start_cycle(
        self,
        config: ChannelConfig,
        callbacks: ChannelCallbacks,
        path: Optional[str],
        token: Optional[int] = None,
    ) -> None:
        """Replace whatever runs now with a fresh cycle.

        ``token`` is the generation a scheduled restart was armed for; the
        restart is dropped if anything happened since.
        """
        with self._lock:
            if token is not None and (token != self._generation or self._cycle is not None):
                return
            previous = self._cycle
            if previous is not None:
                previous.cancelled.set()
                self._session = None
            if self._retry_timer is not None:
                self._retry_timer.cancel()
                self._retry_timer = None
            streams = self._detach_streams()
            self._generation += 1
            cycle = _Cycle(self._generation, config, callbacks, path)
            self._cycle = cycle
            self._state = ChannelState.CONNECTING
            self._failures.set_threshold(config.failure_threshold)
            self._replay_guard.set_jitter(config.replay_jitter_ms)
        if previous is not None or streams:
            logger.info("Channel stopped", extra={"reason": "restart", "streams": len(streams)})
        self._teardown(previous, streams)
        METRICS.gauge("channel_generation").set(cycle.generation)
        logger.info("Connect cycle starting", extra={"generation": cycle.generation})
        threading.Thread(
            target=self._run_cycle, args=(cycle,), name=f"channel-cycle-{cycle.generation}", daemon=True
        ).start()

    def _run_cycle(self, cycle: _Cycle) -> None:
        try:
            session = self._session_factory()
            with self._lock:
                if cycle.cancelled.is_set():
                    return
                self._session = session
                cycle.session = session

            cycle.handle = self._open_stream(
                cycle.config,
                session,
                cycle.generation,
                cycle.path,
                None,
                [(partial(self._on_cycle_message, cycle), partial(self._on_cycle_error, cycle))],
            )

            bearer_token = session.local_public_key()
            cmd = [resolve_helper(cycle.config.helper), *build_arguments(cycle.config, bearer_token, os.getpid())]

            # Wired before spawn so early output and traffic are not lost.
            cycle.watchdog = LivenessWatchdog(cycle.config.ping_time_limit, partial(self._on_liveness_timeout, cycle))
            if cycle.config.with_pem_watcher:
                cycle.watcher = KeyRotationWatcher(
                    lambda: cycle.session, partial(self._on_key_rotation_failure, cycle)
                )
            helper = self._process_factory(
                cmd,
                name=os.path.basename(cycle.config.helper),
                on_output=partial(self._on_helper_output, cycle),
                on_exit=partial(self._on_helper_exit, cycle),
                with_retry=cycle.config.with_retry,
                retry_delay=cycle.config.retry_delay,
            )
            with self._lock:
                if cycle.cancelled.is_set():
                    return
                cycle.helper = helper
            helper.start()
            if cycle.cancelled.is_set():
                # cancel() arrived while spawning
                helper.stop()
                return

            cycle.watchdog.start()
            with self._lock:
                if cycle.cancelled.is_set():
                    return
                self._state = ChannelState.ACTIVE
            logger.info(
                "Channel active",
                extra={
                    "generation": cycle.generation,
                    "helper_pid": helper.pid,
                    "key": key_fingerprint(bearer_token),
                },
            )
        except StaleHandleError:
            return
        except Exception as exc:
            if cycle.cancelled.is_set():
                return
            logger.error("Connect cycle failed", extra={"generation": cycle.generation, "error": str(exc)})
            self._reset(cycle, "connect-failed", exc)

    def _is_current(self, cycle: _Cycle) -> bool:
        return cycle is self._cycle and not cycle.cancelled.is_set()

    def _on_cycle_message(self, cycle: _Cycle, message: Message) -> None:
        if not self._is_current(cycle):
            return
        if cycle.watchdog is not None:
            cycle.watchdog.mark_alive()
        callbacks = cycle.callbacks
        with self._lock:
            first = not cycle.connected
            cycle.connected = True
        if first:
            _call(callbacks.on_connected)
        _call(callbacks.on_message, message)

        if callbacks.on_payload is None:
            return
        auth = self.auth_timestamp if callbacks.authenticate_timestamps else None
        try:
            value = self.decrypt_and_decode(message, auth, callbacks.payload_factory)
        except DecryptAndDecodeFailure as exc:
            _call(callbacks.on_error, exc)
            return
        _call(callbacks.on_payload, value)

    def _on_cycle_error(self, cycle: _Cycle, error: Exception) -> None:
        if self._is_current(cycle):
            _call(cycle.callbacks.on_error, error)

    def _on_helper_output(self, cycle: _Cycle, text: str) -> None:
        if not self._is_current(cycle):
            return
        _call(cycle.callbacks.on_output, text)
        if cycle.watcher is not None:
            cycle.watcher.feed(text)

    def _on_helper_exit(self, cycle: _Cycle, error: Optional[Exception]) -> None:
        if self._is_current(cycle):
            _call(cycle.callbacks.on_exit, error)

    def _on_liveness_timeout(self, cycle: _Cycle) -> None:
        if not self._is_current(cycle):
            return
        _call(cycle.callbacks.on_timeout)
        self._reset(cycle, "liveness-timeout", LivenessTimeout(f"no inbound traffic for {cycle.config.ping_time_limit}s"))

    def _on_key_rotation_failure(self, cycle: _Cycle, error: KeyRotationError) -> None:
        self._reset(cycle, "key-rotation-failed", error)

    def _on_failure_threshold(self) -> None:
        error = DecryptAndDecodeFailure(f"{self._failures.threshold} consecutive decrypt failures")
        self._reset_current("decrypt-failure-threshold", error)

    # --- recovery ---

    def reset(self) -> None:
        """Tear down the current cycle; restart it when retry is configured.

        While a restart is already scheduled this is a no-op.
        """
        self._reset_current("reset")

    def _reset_current(self, reason: str, error: Optional[Exception] = None) -> None:
        with self._lock:
            cycle = self._cycle
            restart_pending = self._retry_timer is not None
        if cycle is not None:
            self._reset(cycle, reason, error)
        elif restart_pending:
            logger.info("Reset skipped, restart already scheduled", extra={"reason": reason})
        else:
            self._stop(None, reason)

    def cancel(self) -> None:
        """Tear everything down without a retry."""
        self._stop(ChannelState.TERMINATED, "cancel")

    def _reset(self, cycle: _Cycle, reason: str, error: Optional[Exception] = None) -> None:
        with self._lock:
            if not self._is_current(cycle):
                return
            cycle.cancelled.set()
            self._cycle = None
            self._generation += 1
            self._session = None
            streams = self._detach_streams()
            self._state = ChannelState.FAULTED
        METRICS.counter("resets").inc()
        logger.warning(
            "Channel reset",
            extra={"generation": cycle.generation, "reason": reason, "retry": cycle.config.with_retry},
        )
        self._teardown(cycle, streams)
        if error is not None:
            _call(cycle.callbacks.on_exit, error)

        with self._lock:
            if self._cycle is not None or self._state is not ChannelState.FAULTED:
                return
            if not cycle.config.with_retry:
                self._state = ChannelState.TERMINATED
                return
            token = self._generation
            timer = threading.Timer(
                cycle.config.retry_delay, self._restart, args=(token, cycle.config, cycle.callbacks, cycle.path)
            )
            timer.daemon = True
            self._retry_timer = timer
        timer.start()

    def _restart(self, token: int, config: ChannelConfig, callbacks: ChannelCallbacks, path: Optional[str]) -> None:
        self._start_cycle(config, callbacks, path, token=token)

    def _stop(self, state: Optional[ChannelState], reason: str) -> None:
        with self._lock:
            cycle = self._cycle
            self._cycle = None
            if cycle is not None:
                cycle.cancelled.set()
            if self._retry_timer is not None:
                self._retry_timer.cancel()
                self._retry_timer = None
            self._generation += 1
            if cycle is not None:
                self._session = None
            streams = self._detach_streams()
            if state is not None:
                self._state = state
        if cycle is not None or streams:
            logger.info("Channel stopped", extra={"reason": reason, "streams": len(streams)})
        self._teardown(cycle, streams)

    def _detach_streams(self) -> List[_Stream]:
        streams = list(self._streams.values())
        self._streams.clear()
        return streams

    def _teardown(self, cycle: Optional[_Cycle], streams: List[_Stream]) -> None:
        if cycle is not None:
            if cycle.watchdog is not None:
                cycle.watchdog.stop()
            if cycle.helper is not None:
                cycle.helper.stop()
            if cycle.watcher is not None:
                cycle.watcher.reset()
        for stream in streams:
            if stream.connection is not None:
                stream.connection.close()
