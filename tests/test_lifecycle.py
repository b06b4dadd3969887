import sys
import time
import threading
from pathlib import Path

# Add root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from securestream.exceptions import HelperProcessError
from securestream.process import HelperProcess, resolve_helper


def test_lifecycle():
    print("--- Testing HelperProcess Lifecycle ---")

    # 1. Start a sleeper process
    cmd = [sys.executable, "-u", "-c", "import time; print('Child running'); time.sleep(30); print('Child done')"]
    output = []
    exits = []

    print(f"Starting child: {cmd}")
    proc = HelperProcess(cmd, name="test-sleeper", on_output=output.append, on_exit=exits.append)
    proc.start()
    print(f"Child started with PID: {proc.pid}")

    # 2. Verify running and output captured
    time.sleep(1.0)
    assert proc.is_running(), "Process died immediately"
    assert "Child running" in "".join(output)
    print("Child is running...")

    # 3. Stop
    print("Stopping child...")
    start_stop = time.time()
    proc.stop(timeout=5.0)
    duration = time.time() - start_stop

    # 4. Verify stopped, no exit notification for a requested stop
    assert not proc.is_running(), "Process still running after stop()"
    assert exits == []
    print(f"Child stopped successfully in {duration:.2f}s")


def test_exit_code_reported():
    done = threading.Event()
    exits = []

    def on_exit(error):
        exits.append(error)
        done.set()

    proc = HelperProcess([sys.executable, "-c", "import sys; sys.exit(3)"], name="failing", on_exit=on_exit)
    proc.start()
    assert done.wait(10.0), "exit was not reported"
    assert isinstance(exits[0], HelperProcessError)
    assert "code 3" in str(exits[0])
    proc.stop()


def test_clean_exit_reported_as_none():
    done = threading.Event()
    exits = []

    def on_exit(error):
        exits.append(error)
        done.set()

    proc = HelperProcess([sys.executable, "-c", "print('bye')"], name="clean", on_exit=on_exit)
    proc.start()
    assert done.wait(10.0)
    assert exits == [None]
    proc.stop()


def test_restart_on_exit():
    starts = []
    restarted = threading.Event()

    def on_output(text):
        starts.append(text)
        if "".join(starts).count("started") >= 2:
            restarted.set()

    cmd = [sys.executable, "-u", "-c", "print('started')"]
    proc = HelperProcess(cmd, name="flaky", on_output=on_output, with_retry=True, retry_delay=0.1)
    proc.start()
    try:
        assert restarted.wait(10.0), "helper was not restarted"
        assert proc.restarts >= 1
    finally:
        proc.stop()


def test_resolve_helper():
    assert resolve_helper(sys.executable) == sys.executable
    try:
        resolve_helper("securestream-no-such-helper-binary")
    except HelperProcessError:
        pass
    else:
        raise AssertionError("missing helper resolved")


if __name__ == "__main__":
    try:
        test_lifecycle()
    except AssertionError as e:
        print(f"TEST FAILED: {e}")
        sys.exit(1)
    print("TEST PASSED")
    sys.exit(0)
