#!/usr/bin/env python3
"""
Unified configuration loader for ViniCapture.

Load order (later entries are merged first, so the first found wins):
  1) VINICAPTURE_CONFIG (env, absolute or relative to CWD)
  2) /etc/vinicapture/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

_DEFAULTS: Dict[str, Any] = {
    "paths": {
        "hls_dir": "/var/www/hls",
        "data_dir": "/data",
        "profiles_filename": "profiles.json",
    },
    "encoder": {
        "binary": "ffmpeg",
        "stop_cleanup_delay_sec": 1.0,
        "progress_prefixes": ["frame=", "size="],
    },
    "web_server": {
        "listen_host": "127.0.0.1",
        "listen_port": 3000,
        "cors_enabled": True,
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None

_log = logging.getLogger("config")


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        _log.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("VINICAPTURE_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/vinicapture/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    def _parse_bool(value: str) -> bool:
        return value.strip().lower() in {"1", "true", "yes", "on"}

    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    # Paths
    if "HLS_DIR" in os.environ:
        cfg.setdefault("paths", {})["hls_dir"] = os.environ["HLS_DIR"]
    if "DATA_DIR" in os.environ:
        cfg.setdefault("paths", {})["data_dir"] = os.environ["DATA_DIR"]

    env_map = {
        "ENCODER_BIN": ("encoder", "binary", lambda s: s.strip() or "ffmpeg"),
        "STOP_CLEANUP_DELAY_SEC": ("encoder", "stop_cleanup_delay_sec", lambda s: max(0.0, float(s))),
        "LISTEN_HOST": ("web_server", "listen_host", str),
        "LISTEN_PORT": ("web_server", "listen_port", int),
        "CORS_ENABLED": ("web_server", "cors_enabled", _parse_bool),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                _log.warning("Ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (vinicapture/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    get_cfg()
    return list(_search_paths)


def profiles_path(cfg: Dict[str, Any] | None = None) -> Path:
    """Location of the persisted profile document."""
    cfg = cfg if cfg is not None else get_cfg()
    paths = cfg.get("paths", {})
    data_dir = paths.get("data_dir") or _DEFAULTS["paths"]["data_dir"]
    filename = paths.get("profiles_filename") or _DEFAULTS["paths"]["profiles_filename"]
    return Path(data_dir) / filename
