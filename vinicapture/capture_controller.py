#!/usr/bin/env python3
"""
Capture controller (single encoder process orchestration).

Owns the one screen-capture encoder that may run at a time:
- start() reserves the slot, clears stale HLS output, resolves the active
  profile and launches the encoder with that profile's arguments.
- stop() kills the encoder and frees the slot straight away; leftover
  segments are removed by a short deferred cleanup.
- A background observer reaps the process, classifies its exit code and
  cleans the output directory.

stop() frees the slot before the old process has been reaped, so a Stop
followed quickly by Start can overlap two encoders for a moment. Each launch
carries a generation number so observers and timers belonging to an older
session never touch a newer one.
"""

from __future__ import annotations
import logging
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from .config import profiles_path
from .ffmpeg_io import DEFAULT_ENCODER_BINARY, build_encoder_argv
from .hls_artifacts import clean_stream_artifacts
from .profile_store import Profile, ProfileStore

DEFAULT_STOP_CLEANUP_DELAY = 1.0
DEFAULT_PROGRESS_PREFIXES: tuple[str, ...] = ("frame=", "size=")

# 255 is ffmpeg's own exit status after it catches a termination signal.
EXPECTED_EXIT_CODES = frozenset({0, 255, -signal.SIGKILL})


class CaptureError(Exception):
    """Base class for errors reported to start()/stop() callers."""


class CaptureConfigError(CaptureError):
    """No usable active profile."""


class CaptureLaunchError(CaptureError):
    """The encoder process could not be spawned."""


class CaptureAlreadyRunning(CaptureError):
    pass


class CaptureNotRunning(CaptureError):
    pass


@dataclass(frozen=True)
class ExitRecord:
    returncode: int
    expected: bool
    generation: int
    exited_at: float

    def to_dict(self) -> dict:
        return {
            "code": self.returncode,
            "expected": self.expected,
            "generation": self.generation,
            "exited_at": self.exited_at,
        }


def is_expected_exit(returncode: int) -> bool:
    return returncode in EXPECTED_EXIT_CODES


class CaptureController:
    def __init__(
        self,
        store: ProfileStore,
        hls_dir: str,
        *,
        binary: str = DEFAULT_ENCODER_BINARY,
        stop_cleanup_delay: float = DEFAULT_STOP_CLEANUP_DELAY,
        progress_prefixes: Iterable[str] = DEFAULT_PROGRESS_PREFIXES,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self.store = store
        self.hls_dir = hls_dir
        self.binary = binary or DEFAULT_ENCODER_BINARY
        self.stop_cleanup_delay = max(0.0, float(stop_cleanup_delay))
        self.progress_prefixes = tuple(progress_prefixes)
        self._popen = popen

        self._log = logging.getLogger("capture_controller")
        self._encoder_log = logging.getLogger("capture_controller.encoder")

        self._lock = threading.Lock()
        self._proc: Optional[subprocess.Popen] = None
        self._starting = False
        self._generation = 0
        self._profile: Optional[Profile] = None
        self._started_at: Optional[float] = None
        self._last_exit: Optional[ExitRecord] = None
        self._cleanup_timer: Optional[threading.Timer] = None

    # --- Control ---
    def start(self) -> Profile:
        """Launch the encoder for the active profile and return that profile."""
        with self._lock:
            if self._proc is not None or self._starting:
                raise CaptureAlreadyRunning("Capture is already running")
            self._starting = True
            self._generation += 1
            generation = self._generation
            timer = self._cleanup_timer
            self._cleanup_timer = None
        if timer is not None:
            timer.cancel()

        try:
            proc, profile = self._launch()
        except BaseException:
            with self._lock:
                self._starting = False
            raise

        with self._lock:
            self._starting = False
            self._proc = proc
            self._profile = profile
            self._started_at = time.time()
        self._attach_observers(proc, generation)
        return profile

    def stop(self) -> None:
        """Kill the encoder and free the slot without waiting for it to exit."""
        with self._lock:
            proc = self._proc
            if proc is None:
                raise CaptureNotRunning("Capture is not running")
            self._signal_kill(proc)
            self._proc = None
            self._profile = None
            self._started_at = None
            previous = self._cleanup_timer
            timer = threading.Timer(
                self.stop_cleanup_delay, self._deferred_clean, args=(self._generation,)
            )
            timer.daemon = True
            self._cleanup_timer = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        self._log.info("Capture stopped (pid %s)", getattr(proc, "pid", "?"))

    def shutdown(self) -> None:
        """Kill any running encoder and drop pending timers; never raises."""
        with self._lock:
            proc = self._proc
            self._proc = None
            self._profile = None
            self._started_at = None
            timer = self._cleanup_timer
            self._cleanup_timer = None
            if proc is not None:
                self._signal_kill(proc)
        if timer is not None:
            timer.cancel()
        if proc is not None:
            self._log.info("Encoder killed during shutdown (pid %s)", getattr(proc, "pid", "?"))

    # --- Status ---
    def is_running(self) -> bool:
        with self._lock:
            return self._proc is not None

    def status(self) -> dict:
        with self._lock:
            proc = self._proc
            profile = self._profile
            started_at = self._started_at
            last_exit = self._last_exit
            generation = self._generation
        return {
            "running": proc is not None,
            "pid": getattr(proc, "pid", None) if proc is not None else None,
            "generation": generation,
            "profile_id": profile.id if profile else None,
            "profile_name": profile.name if profile else None,
            "started_at": started_at,
            "last_exit": last_exit.to_dict() if last_exit else None,
        }

    @property
    def last_exit(self) -> Optional[ExitRecord]:
        with self._lock:
            return self._last_exit

    # --- Internals ---
    def _launch(self) -> tuple[subprocess.Popen, Profile]:
        try:
            os.makedirs(self.hls_dir, exist_ok=True)
        except OSError as exc:
            self._log.warning("Unable to create HLS directory %s: %s", self.hls_dir, exc)
        self._clean()

        profile = self.store.active_profile()
        if profile is None or not profile.command.strip():
            raise CaptureConfigError("No active FFmpeg profile found or command is empty.")
        argv = build_encoder_argv(self.binary, profile.command)
        if len(argv) < 2:
            raise CaptureConfigError(f"Profile {profile.name!r} has no encoder arguments.")

        self._log.info("Starting encoder with profile: %s", profile.name)
        self._log.info("Full command: %s", " ".join(argv))
        try:
            proc = self._popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            self._log.error("Failed to spawn %r. Is it installed? %s", self.binary, exc)
            raise CaptureLaunchError(f"Failed to spawn {self.binary}: {exc}") from exc
        return proc, profile

    def _attach_observers(self, proc: subprocess.Popen, generation: int) -> None:
        streams = (
            ("stderr", proc.stderr, self._on_stderr_line),
            ("stdout", proc.stdout, self._on_stdout_line),
        )
        for label, stream, handler in streams:
            if stream is None:
                continue
            threading.Thread(
                target=self._pump_output,
                args=(stream, handler),
                name=f"encoder_{label}",
                daemon=True,
            ).start()
        threading.Thread(
            target=self._watch_exit,
            args=(proc, generation),
            name="encoder_exit",
            daemon=True,
        ).start()

    def _pump_output(self, stream, handler: Callable[[str], None]) -> None:
        try:
            for line in stream:
                text = line.rstrip()
                if text:
                    handler(text)
        except (OSError, ValueError) as exc:
            self._log.debug("Encoder output stream closed: %r", exc)
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def _on_stderr_line(self, line: str) -> None:
        if line.startswith(self.progress_prefixes):
            self._encoder_log.debug("%s", line)
        else:
            self._encoder_log.warning("%s", line)

    def _on_stdout_line(self, line: str) -> None:
        self._encoder_log.debug("%s", line)

    def _watch_exit(self, proc: subprocess.Popen, generation: int) -> None:
        self._handle_exit(proc, generation, proc.wait())

    def _handle_exit(self, proc: subprocess.Popen, generation: int, returncode: int) -> None:
        record = ExitRecord(
            returncode=returncode,
            expected=is_expected_exit(returncode),
            generation=generation,
            exited_at=time.time(),
        )
        with self._lock:
            if self._proc is proc:
                self._proc = None
                self._profile = None
                self._started_at = None
            self._last_exit = record
            superseded = self._generation != generation

        if record.expected:
            self._log.info("Encoder process exited with code %s", returncode)
        else:
            self._log.error("Encoder process exited unexpectedly with code %s", returncode)

        if superseded:
            self._log.debug("Skipping exit cleanup; generation %s superseded", generation)
            return
        self._clean()

    def _deferred_clean(self, generation: int) -> None:
        with self._lock:
            if self._generation != generation:
                return
            self._cleanup_timer = None
        self._clean()

    def _signal_kill(self, proc: subprocess.Popen) -> None:
        try:
            proc.kill()
        except OSError as exc:
            self._log.warning("Encoder kill() failed: %r", exc)

    def _clean(self) -> int:
        removed = clean_stream_artifacts(self.hls_dir)
        if removed:
            self._log.info("Removed %d stale HLS files from %s", removed, self.hls_dir)
        return removed


def build_controller(cfg: dict, *, store: ProfileStore | None = None) -> CaptureController:
    """Create a controller wired from the loaded configuration."""
    paths = cfg.get("paths", {})
    encoder = cfg.get("encoder", {})
    hls_dir = paths.get("hls_dir") or "/var/www/hls"
    if store is None:
        store = ProfileStore(profiles_path(cfg), hls_dir=hls_dir)
    return CaptureController(
        store,
        hls_dir,
        binary=encoder.get("binary") or DEFAULT_ENCODER_BINARY,
        stop_cleanup_delay=encoder.get("stop_cleanup_delay_sec", DEFAULT_STOP_CLEANUP_DELAY),
        progress_prefixes=encoder.get("progress_prefixes") or DEFAULT_PROGRESS_PREFIXES,
    )
