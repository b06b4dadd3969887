"""
Helper process lifecycle management.

Provides `HelperProcess`, which guarantees:
1. Parent ownership (child dies if parent dies).
2. Clean termination of the whole tree (SIGTERM -> SIGKILL).
3. Output capture: stdout and stderr are merged and forwarded as text chunks.
4. Exit notification for every exit, with optional restart-on-exit.
"""

import atexit
import codecs
import ctypes
import os
import shutil
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import psutil

from securestream.config import CONFIG
from securestream.exceptions import HelperProcessError
from securestream.logging_utils import METRICS, get_logger

logger = get_logger("securestream")

_READ_CHUNK = 4096

# --- Platform Specifics ---

_libc = None

if sys.platform.startswith("linux"):
    try:
        _libc = ctypes.CDLL("libc.so.6")
    except OSError:
        _libc = None


def _posix_preexec():
    """Set PR_SET_PDEATHSIG to SIGTERM and start a new session."""
    if _libc is not None:
        PR_SET_PDEATHSIG = 1
        _libc.prctl(PR_SET_PDEATHSIG, signal.SIGTERM)
    # New session so the whole tree can be signalled as a group
    os.setsid()


def _popen_kwargs() -> Dict[str, object]:
    if sys.platform.startswith("win"):
        return {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
    return {"preexec_fn": _posix_preexec}


def resolve_helper(name: str) -> str:
    """Locate a helper binary by path, in HELPER_BIN_DIR, or on PATH."""
    if not name:
        raise HelperProcessError("helper name is empty")
    candidate = Path(name)
    if candidate.is_file():
        return str(candidate)
    bin_dir = CONFIG["HELPER_BIN_DIR"]
    if bin_dir:
        bundled = Path(bin_dir) / name
        if bundled.is_file():
            return str(bundled)
    found = shutil.which(name)
    if found:
        return found
    raise HelperProcessError(f"helper binary not found: {name}")


# --- Global Registry ---

_REGISTRY = set()
_REGISTRY_LOCK = threading.Lock()


def _register(proc):
    with _REGISTRY_LOCK:
        _REGISTRY.add(proc)


def _unregister(proc):
    with _REGISTRY_LOCK:
        _REGISTRY.discard(proc)


def kill_all_helpers():
    """Stop every registered helper. Safe to call multiple times."""
    with _REGISTRY_LOCK:
        procs = list(_REGISTRY)

    if not procs:
        return

    logger.info(f"Cleaning up {len(procs)} helper processes...")
    for p in procs:
        try:
            p.stop(timeout=1.0)
        except (OSError, psutil.Error) as e:
            logger.error(f"Error stopping helper {p.name}: {e}")


atexit.register(kill_all_helpers)


def _terminate_tree(popen: subprocess.Popen, timeout: float) -> None:
    try:
        children = psutil.Process(popen.pid).children(recursive=True)
    except psutil.Error:
        children = []

    if sys.platform.startswith("win"):
        subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(popen.pid)],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    else:
        try:
            os.killpg(os.getpgid(popen.pid), signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            popen.terminate()

    try:
        popen.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        if sys.platform.startswith("win"):
            popen.kill()
        else:
            try:
                os.killpg(os.getpgid(popen.pid), signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                popen.kill()
        popen.wait(timeout=timeout)

    # Descendants that left the process group.
    for child in children:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            continue
    _, alive = psutil.wait_procs(children, timeout=timeout)
    for child in alive:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            continue


class HelperProcess:
    def __init__(
        self,
        cmd: List[str],
        name: str = "helper",
        on_output: Optional[Callable[[str], None]] = None,
        on_exit: Optional[Callable[[Optional[Exception]], None]] = None,
        with_retry: bool = False,
        retry_delay: Optional[float] = None,
        cwd: Optional[str] = None,
        env: Optional[dict] = None,
    ):
        self.cmd = list(cmd)
        self.name = name
        self.on_output = on_output
        self.on_exit = on_exit
        self.with_retry = with_retry
        self.retry_delay = CONFIG["HELPER_RETRY_DELAY_S"] if retry_delay is None else retry_delay
        self.cwd = cwd
        self.env = env

        self.process: Optional[subprocess.Popen] = None
        self.restarts = 0
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._monitor: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        proc = self.process
        return proc.pid if proc is not None else None

    def start(self) -> None:
        """Spawn the helper; raises HelperProcessError if it cannot be started."""
        if self.is_running():
            return
        self._stopped.clear()
        self._spawn()
        _register(self)

    def _spawn(self) -> None:
        try:
            popen = subprocess.Popen(
                self.cmd,
                cwd=self.cwd,
                env=self.env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                bufsize=0,
                **_popen_kwargs(),
            )
        except OSError as e:
            raise HelperProcessError(f"failed to start {self.name}: {e}") from e
        with self._lock:
            stopped = self._stopped.is_set()
            if not stopped:
                self.process = popen
        if stopped:
            # stop() raced a restart
            _terminate_tree(popen, CONFIG["HELPER_STOP_TIMEOUT_S"])
            return
        logger.info("Helper started", extra={"helper": self.name, "pid": popen.pid})
        self._monitor = threading.Thread(
            target=self._watch, args=(popen,), name=f"{self.name}-monitor", daemon=True
        )
        self._monitor.start()

    def _watch(self, popen: subprocess.Popen) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stream = popen.stdout
        while True:
            try:
                chunk = stream.read(_READ_CHUNK)
            except (OSError, ValueError):
                break
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text and self.on_output is not None:
                self.on_output(text)
        tail = decoder.decode(b"", final=True)
        if tail and self.on_output is not None:
            self.on_output(tail)
        stream.close()

        returncode = popen.wait()
        if self._stopped.is_set():
            return

        METRICS.counter("helper_exits").inc()
        error = None
        if returncode != 0:
            error = HelperProcessError(f"{self.name} exited with code {returncode}")
        logger.warning("Helper exited", extra={"helper": self.name, "returncode": returncode})
        if self.on_exit is not None:
            self.on_exit(error)

        while self.with_retry and not self._stopped.wait(self.retry_delay):
            self.restarts += 1
            try:
                self._spawn()
            except HelperProcessError as e:
                logger.error("Helper restart failed", extra={"helper": self.name, "error": str(e)})
                if self.on_exit is not None:
                    self.on_exit(e)
                continue
            return

    def stop(self, timeout: Optional[float] = None) -> None:
        """Terminate the helper tree; no exit notification is sent for it."""
        if timeout is None:
            timeout = CONFIG["HELPER_STOP_TIMEOUT_S"]
        self._stopped.set()
        _unregister(self)
        with self._lock:
            popen = self.process
            self.process = None
        if popen is None:
            return
        if popen.poll() is None:
            try:
                _terminate_tree(popen, timeout)
            except (OSError, subprocess.TimeoutExpired, psutil.Error) as e:
                logger.error(f"Error stopping {self.name}: {e}")
        monitor = self._monitor
        if monitor is not None and monitor is not threading.current_thread():
            monitor.join(timeout=timeout)
        logger.info("Helper stopped", extra={"helper": self.name, "pid": popen.pid})

    def is_running(self) -> bool:
        proc = self.process
        return proc is not None and proc.poll() is None
