import pytest

from src.timetable import config as config_module
from src.timetable.config import TimetableConfig, get_config
from src.timetable.errors import ConfigurationError


def test_defaults():
    config = TimetableConfig(_env_file=None)
    assert config.default_ttl == 900
    assert not config.caching_disabled
    assert config.worker_pool_size == 20
    assert config.timezone == "Asia/Yekaterinburg"


def test_caching_can_be_disabled(monkeypatch):
    monkeypatch.setenv("CACHE_TTL_SECONDS", "disabled")
    config = TimetableConfig(_env_file=None)
    assert config.caching_disabled
    assert config.default_ttl == 0


def test_ttl_from_environment(monkeypatch):
    monkeypatch.setenv("CACHE_TTL_SECONDS", "300")
    assert TimetableConfig(_env_file=None).default_ttl == 300


@pytest.mark.parametrize(
    "name, value",
    [("WORKER_POOL_SIZE", "0"), ("MAX_RETRIES", "0"), ("STEALTH_PROBABILITY", "1.5")],
)
def test_invalid_values_raise_configuration_error(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    monkeypatch.setattr(config_module, "_config", None)
    with pytest.raises(ConfigurationError):
        get_config()


def test_get_config_is_cached(monkeypatch):
    monkeypatch.setattr(config_module, "_config", None)
    assert get_config() is get_config()
