"""Persistent store of named encoder command profiles.

The store is a single JSON array on disk. Reads never raise: a missing file
is seeded with the built-in defaults, and an unreadable one is left untouched
while the in-memory defaults are served instead.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

DEFAULT_HLS_DIR = "/var/www/hls"

_CAPTURE_INPUT = (
    "-f x11grab -video_size 1920x1080 -framerate 30 -i :1.0+0,0 "
    "-f pulse -i default"
)
_HLS_OUTPUT = (
    "-c:a aac -b:a 192k -f hls -hls_time 4 -hls_list_size 10 "
    "-hls_flags delete_segments+discont_start+omit_endlist "
    "-hls_segment_filename {hls_dir}/segment_%03d.ts {hls_dir}/live.m3u8"
)


class ProfileFormatError(ValueError):
    """Raised when a profile payload cannot be interpreted."""


@dataclass
class Profile:
    id: str
    name: str
    command: str
    active: bool = False
    is_default: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Profile":
        if not isinstance(data, Mapping):
            raise ProfileFormatError("profile entries must be JSON objects")
        raw_id = data.get("id")
        profile_id = str(raw_id).strip() if raw_id not in (None, "") else ""
        if not profile_id:
            profile_id = f"profile-{secrets.token_hex(4)}"
        name = data.get("name")
        command = data.get("command")
        return cls(
            id=profile_id,
            name=str(name) if name is not None else profile_id,
            command=str(command) if command is not None else "",
            active=data.get("active") is True,
            is_default=data.get("isDefault") is True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "active": self.active,
            "isDefault": self.is_default,
        }


def default_profiles(hls_dir: str = DEFAULT_HLS_DIR) -> list[Profile]:
    output = _HLS_OUTPUT.format(hls_dir=hls_dir.rstrip("/") or "/")
    return [
        Profile(
            id="default-nvenc",
            name="Default (NVIDIA NVENC)",
            command=(
                f"{_CAPTURE_INPUT} -c:v h264_nvenc -preset p6 -tune hq -b:v 6M {output}"
            ),
            active=True,
            is_default=True,
        ),
        Profile(
            id="default-cpu",
            name="Default (CPU x264 - ultrafast)",
            command=(
                f"{_CAPTURE_INPUT} -c:v libx264 -preset ultrafast -tune zerolatency -b:v 6M {output}"
            ),
            active=False,
            is_default=True,
        ),
    ]


def profiles_from_payload(payload: Any) -> list[Profile]:
    """Convert a decoded JSON payload into profiles, or raise ProfileFormatError."""
    if not isinstance(payload, list):
        raise ProfileFormatError("Invalid profiles data. Expected an array.")
    return [Profile.from_dict(entry) for entry in payload]


class ProfileStore:
    def __init__(self, path: str | os.PathLike[str], *, hls_dir: str = DEFAULT_HLS_DIR):
        self.path = Path(path)
        self.hls_dir = hls_dir
        self._write_lock = threading.Lock()
        self._log = logging.getLogger("profile_store")

    def defaults(self) -> list[Profile]:
        return default_profiles(self.hls_dir)

    def load(self) -> list[Profile]:
        if not self.path.exists():
            self._log.info("Profiles file %s not found; creating defaults", self.path)
            profiles = self.defaults()
            if self.save(profiles):
                self._log.info("Default profiles file created")
            return profiles

        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            profiles = profiles_from_payload(payload)
        except (OSError, ValueError) as exc:
            self._log.error("Failed to parse %s, returning defaults: %s", self.path, exc)
            return self.defaults()

        self._log.debug("Loaded %d profiles from %s", len(profiles), self.path)
        return profiles

    def save(self, profiles: Iterable[Profile]) -> bool:
        data = [profile.to_dict() for profile in profiles]
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        with self._write_lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with tmp_path.open("w", encoding="utf-8") as handle:
                    json.dump(data, handle, indent=2)
                    handle.write("\n")
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_path, self.path)
            except OSError as exc:
                self._log.error("Failed to save profiles to %s: %s", self.path, exc)
                try:
                    tmp_path.unlink()
                except OSError:
                    pass
                return False
        self._log.info("Saved %d profiles to %s", len(data), self.path)
        return True

    def active_profile(self) -> Profile | None:
        """Return the active profile, repairing the active flags if needed.

        Exactly one profile ends up flagged: the first flagged one, or the
        first profile overall when none is. Corrections are persisted.
        """
        profiles = self.load()
        if not profiles:
            self._log.error("No profiles stored; falling back to built-in default")
            fallback = self.defaults()
            return fallback[0] if fallback else None

        active = next((profile for profile in profiles if profile.active), None)
        if active is None:
            active = profiles[0]
            self._log.warning(
                "No active profile found; marking %r active and resaving", active.name
            )
        changed = False
        for profile in profiles:
            flag = profile is active
            if profile.active != flag:
                profile.active = flag
                changed = True
        if changed:
            self.save(profiles)

        self._log.debug("Active profile: %r", active.name)
        return active
