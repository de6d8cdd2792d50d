"""Tests for config module."""

import importlib

import dotenv
import pytest

import voice_remind.config as config_mod


@pytest.fixture(autouse=True)
def _reload_config_after():
    yield
    importlib.reload(config_mod)


@pytest.fixture()
def no_dotenv(monkeypatch):
    monkeypatch.setattr(dotenv, "load_dotenv", lambda: None)


def test_defaults(monkeypatch, no_dotenv):
    for name in (
        "VOICE_REMIND_POLL_SECONDS",
        "VOICE_REMIND_RECONCILE_BUDGET",
        "VOICE_REMIND_SINK_TIMEOUT",
        "VOICE_REMIND_SINK_RETRIES",
        "VOICE_REMIND_USE_ALARM",
    ):
        monkeypatch.delenv(name, raising=False)

    importlib.reload(config_mod)

    assert config_mod.POLL_SECONDS == 30
    assert config_mod.RECONCILE_BUDGET == 10.0
    assert config_mod.SINK_TIMEOUT == 5.0
    assert config_mod.SINK_RETRIES == 3
    assert config_mod.USE_ALARM is False


def test_values_from_environment(monkeypatch, no_dotenv, tmp_path):
    monkeypatch.setenv("VOICE_REMIND_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("VOICE_REMIND_TIMEZONE", "Europe/Berlin")
    monkeypatch.setenv("VOICE_REMIND_POLL_SECONDS", "5")
    monkeypatch.setenv("VOICE_REMIND_RECONCILE_BUDGET", "2.5")
    monkeypatch.setenv("VOICE_REMIND_USE_ALARM", "yes")

    importlib.reload(config_mod)

    assert config_mod.DATA_DIR == tmp_path
    assert config_mod.TZ.key == "Europe/Berlin"
    assert config_mod.POLL_SECONDS == 5
    assert config_mod.RECONCILE_BUDGET == 2.5
    assert config_mod.USE_ALARM is True


def test_non_numeric_value_exits(monkeypatch, no_dotenv):
    monkeypatch.setenv("VOICE_REMIND_POLL_SECONDS", "often")

    with pytest.raises(SystemExit):
        importlib.reload(config_mod)


def test_non_positive_value_exits(monkeypatch, no_dotenv):
    monkeypatch.setenv("VOICE_REMIND_SINK_TIMEOUT", "0")

    with pytest.raises(SystemExit):
        importlib.reload(config_mod)


def test_bad_flag_exits(monkeypatch, no_dotenv):
    monkeypatch.setenv("VOICE_REMIND_USE_ALARM", "maybe")

    with pytest.raises(SystemExit):
        importlib.reload(config_mod)


def test_detect_local_tz_falls_back_to_utc(monkeypatch):
    monkeypatch.setattr(config_mod, "Path", _MissingPath)

    assert config_mod._detect_local_tz() == "UTC"


class _MissingPath:
    def __init__(self, *args):
        pass

    def exists(self):
        return False

    def is_symlink(self):
        return False
