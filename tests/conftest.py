from __future__ import annotations

import io
import signal
import subprocess
import threading
import time
from typing import Callable

import pytest

from vinicapture.capture_controller import CaptureController
from vinicapture.profile_store import Profile, ProfileStore


class FakeProcess:
    """Stand-in for subprocess.Popen whose exit is driven by the test."""

    _next_pid = 41000

    def __init__(self, argv, *, stderr_text: str = "", exit_on_kill: bool = True, **kwargs):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.argv = list(argv)
        self.kwargs = kwargs
        self.returncode: int | None = None
        self.stdout = io.StringIO("")
        self.stderr = io.StringIO(stderr_text)
        self.kill_calls = 0
        self.exit_on_kill = exit_on_kill
        self._exited = threading.Event()

    def wait(self, timeout: float | None = None) -> int:
        if not self._exited.wait(timeout):
            raise subprocess.TimeoutExpired(self.argv, timeout)
        assert self.returncode is not None
        return self.returncode

    def poll(self) -> int | None:
        return self.returncode

    def kill(self) -> None:
        self.kill_calls += 1
        if self.exit_on_kill:
            self.exit(-signal.SIGKILL)

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
        self._exited.set()


class FakePopen:
    def __init__(self):
        self.processes: list[FakeProcess] = []
        self.spawn_delay = 0.0
        self.error: Exception | None = None
        self.stderr_text = ""
        self.exit_on_kill = True
        self._lock = threading.Lock()

    def __call__(self, argv, **kwargs) -> FakeProcess:
        if self.spawn_delay:
            time.sleep(self.spawn_delay)
        if self.error is not None:
            raise self.error
        proc = FakeProcess(
            argv,
            stderr_text=self.stderr_text,
            exit_on_kill=self.exit_on_kill,
            **kwargs,
        )
        with self._lock:
            self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def fake_popen():
    popen = FakePopen()
    yield popen
    # Release observer threads still blocked in wait().
    for proc in popen.processes:
        proc.exit(0)


@pytest.fixture
def hls_dir(tmp_path):
    path = tmp_path / "hls"
    path.mkdir()
    return path


@pytest.fixture
def store(tmp_path, hls_dir) -> ProfileStore:
    return ProfileStore(tmp_path / "data" / "profiles.json", hls_dir=str(hls_dir))


@pytest.fixture
def make_controller(store, hls_dir, fake_popen):
    created: list[CaptureController] = []

    def _make(**kwargs) -> CaptureController:
        kwargs.setdefault("binary", "ffmpeg")
        kwargs.setdefault("stop_cleanup_delay", 0.0)
        kwargs.setdefault("popen", fake_popen)
        controller = CaptureController(store, str(hls_dir), **kwargs)
        created.append(controller)
        return controller

    yield _make
    for controller in created:
        controller.shutdown()


def simple_profiles(command: str = "-f lavfi -i testsrc -f hls /tmp/live.m3u8") -> list[Profile]:
    return [
        Profile(id="one", name="One", command=command, active=True),
        Profile(id="two", name="Two", command="-f lavfi -i testsrc2", active=False),
    ]
