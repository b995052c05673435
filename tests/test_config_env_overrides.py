"""Tests covering config file loading and environment variable overrides."""

from __future__ import annotations

from pathlib import Path

from vinicapture import config as config_module
from vinicapture.capture_controller import build_controller


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    for key in (
        "HLS_DIR",
        "DATA_DIR",
        "ENCODER_BIN",
        "STOP_CLEANUP_DELAY_SEC",
        "LISTEN_HOST",
        "LISTEN_PORT",
        "CORS_ENABLED",
        "DEV",
    ):
        monkeypatch.delenv(key, raising=False)


def test_config_file_values_merge_over_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "paths:\n  hls_dir: /srv/hls\nencoder:\n  binary: /opt/ffmpeg/bin/ffmpeg\n"
    )
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("VINICAPTURE_CONFIG", str(config_path))

    cfg = config_module.get_cfg()

    assert cfg["paths"]["hls_dir"] == "/srv/hls"
    assert cfg["paths"]["data_dir"] == "/data"
    assert cfg["encoder"]["binary"] == "/opt/ffmpeg/bin/ffmpeg"
    assert cfg["encoder"]["progress_prefixes"] == ["frame=", "size="]
    assert config_module.active_config_path() == config_path.resolve()


def test_env_overrides_win_over_file(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("paths:\n  data_dir: /from/file\nweb_server:\n  listen_port: 8080\n")
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("VINICAPTURE_CONFIG", str(config_path))
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("LISTEN_PORT", "3100")
    monkeypatch.setenv("CORS_ENABLED", "no")
    monkeypatch.setenv("STOP_CLEANUP_DELAY_SEC", "2.5")
    monkeypatch.setenv("DEV", "1")

    cfg = config_module.get_cfg()

    assert cfg["paths"]["data_dir"] == str(tmp_path / "data")
    assert cfg["web_server"]["listen_port"] == 3100
    assert cfg["web_server"]["cors_enabled"] is False
    assert cfg["encoder"]["stop_cleanup_delay_sec"] == 2.5
    assert cfg["logging"]["dev_mode"] is True
    assert config_module.profiles_path(cfg) == tmp_path / "data" / "profiles.json"


def test_invalid_env_values_are_ignored(monkeypatch, tmp_path: Path) -> None:
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("VINICAPTURE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("LISTEN_PORT", "not-a-port")

    cfg = config_module.get_cfg()

    assert isinstance(cfg["web_server"]["listen_port"], int)


def test_malformed_yaml_falls_back_to_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("paths: [unterminated\n")
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("VINICAPTURE_CONFIG", str(config_path))

    cfg = config_module.get_cfg()

    assert cfg["encoder"]["binary"] == "ffmpeg"


def test_build_controller_uses_config(monkeypatch, tmp_path: Path) -> None:
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("VINICAPTURE_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("HLS_DIR", str(tmp_path / "hls"))
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("ENCODER_BIN", "ffmpeg-custom")
    monkeypatch.setenv("STOP_CLEANUP_DELAY_SEC", "0.5")

    controller = build_controller(config_module.reload_cfg())

    assert controller.hls_dir == str(tmp_path / "hls")
    assert controller.binary == "ffmpeg-custom"
    assert controller.stop_cleanup_delay == 0.5
    assert controller.store.path == tmp_path / "data" / "profiles.json"
    assert controller.store.hls_dir == str(tmp_path / "hls")
