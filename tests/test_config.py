"""Tests for the JSON config loader."""

import json
import logging

import pytest

from mcx import config


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    # Restored to the cached config on teardown
    monkeypatch.setattr(config, "_config", None)


def write_config(path, data):
    path.write_text(json.dumps(data))
    return str(path)


class TestLoadConfig:
    def test_override_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MCX_CONFIG", write_config(
            tmp_path / "config.json",
            {"lifecycle": {"grace_ms": 1000}, "serial": {"baudrate": 57600}}))
        assert config.cfg("lifecycle", "grace_ms") == 1000
        assert config.cfg("serial", "baudrate") == 57600

    def test_missing_key_uses_default(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MCX_CONFIG", write_config(tmp_path / "config.json", {"serial": {}}))
        assert config.cfg("serial", "write_timeout", default=2.0) == 2.0
        assert config.cfg("badge", "text_color", default="white") == "white"

    def test_whole_section(self, tmp_path, monkeypatch):
        monkeypatch.setenv("MCX_CONFIG", write_config(
            tmp_path / "config.json", {"hub": {"http_port": 9000}}))
        assert config.cfg("hub") == {"http_port": 9000}
        assert config.cfg("metadata", default={}) == {}

    def test_invalid_override_falls_back_to_repo_default(self, tmp_path, monkeypatch):
        bad = tmp_path / "config.json"
        bad.write_text("{not json")
        monkeypatch.setenv("MCX_CONFIG", str(bad))
        assert config.cfg("lifecycle", "grace_ms") == 4500
        assert config.cfg("hub", "host_port") == 8785

    def test_reload_rereads(self, tmp_path, monkeypatch):
        path = tmp_path / "config.json"
        monkeypatch.setenv("MCX_CONFIG", write_config(path, {"serial": {"baudrate": 9600}}))
        assert config.cfg("serial", "baudrate") == 9600
        write_config(path, {"serial": {"baudrate": 19200}})
        assert config.cfg("serial", "baudrate") == 9600
        config.reload_config()
        assert config.cfg("serial", "baudrate") == 19200


class TestValidation:
    def test_port_clash_logged(self, tmp_path, monkeypatch, caplog):
        monkeypatch.setenv("MCX_CONFIG", write_config(
            tmp_path / "config.json", {"hub": {"http_port": 8786, "host_port": 8786}}))
        with caplog.at_level(logging.WARNING, logger="mcx.config"):
            config.load_config()
        assert "cannot bind" in caplog.text

    def test_unusual_baudrate_logged(self, tmp_path, monkeypatch, caplog):
        monkeypatch.setenv("MCX_CONFIG", write_config(
            tmp_path / "config.json", {"serial": {"baudrate": 12345}}))
        with caplog.at_level(logging.WARNING, logger="mcx.config"):
            config.load_config()
        assert "unusual serial.baudrate" in caplog.text

    def test_defaults_file_is_clean(self, monkeypatch, caplog):
        monkeypatch.delenv("MCX_CONFIG", raising=False)
        with caplog.at_level(logging.WARNING, logger="mcx.config"):
            data = config.load_config()
        assert data["lifecycle"]["grace_ms"] == 4500
        assert caplog.text == ""
