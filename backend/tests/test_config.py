"""Tests for configuration loading and validation."""

import pytest

from botengine.services.config import ConfigService, ConfigValidationException


@pytest.fixture
def write_config(tmp_path):
    def _write(text):
        path = tmp_path / "config.yaml"
        path.write_text(text)
        return ConfigService(str(path))
    return _write


def test_missing_file_uses_defaults(tmp_path):
    service = ConfigService(str(tmp_path / "absent.yaml"))
    assert service.load_and_validate() == {}
    assert service.get("engine.candle_limit") == 100
    assert service.get("engine.resume_on_startup") is True


def test_values_override_defaults(write_config):
    service = write_config("engine:\n  candle_interval: 5m\n  stop_timeout_seconds: 3\n")
    service.load_and_validate()
    assert service.get("engine.candle_interval") == "5m"
    assert service.get("engine.stop_timeout_seconds") == 3
    assert service.get("engine.candle_limit") == 100


def test_unknown_key_rejected(write_config):
    service = write_config("engine:\n  tick_rate: 3\n")
    with pytest.raises(ConfigValidationException) as exc:
        service.load_and_validate()
    assert exc.value.errors[0].path == "engine.tick_rate"


def test_type_and_range_checked(write_config):
    service = write_config("engine:\n  candle_limit: 5000\n  resume_on_startup: 1\n")
    with pytest.raises(ConfigValidationException) as exc:
        service.load_and_validate()
    paths = sorted(e.path for e in exc.value.errors)
    assert paths == ["engine.candle_limit", "engine.resume_on_startup"]


def test_bool_is_not_a_number(write_config):
    service = write_config("engine:\n  candle_limit: true\n")
    with pytest.raises(ConfigValidationException):
        service.load_and_validate()


def test_invalid_yaml(write_config):
    service = write_config("engine: [unclosed\n")
    with pytest.raises(ConfigValidationException, match="Invalid YAML"):
        service.load_and_validate()


def test_exchange_credentials(write_config):
    service = write_config("exchanges:\n  binance:\n    sandbox: true\n    retry_count: 5\n")
    service.load_and_validate()
    assert service.exchange_credentials("binance") == {"sandbox": True, "retry_count": 5}
    assert service.exchange_credentials("kraken") == {}


def test_exchange_entry_validated(write_config):
    service = write_config("exchanges:\n  binance:\n    retry_count: 50\n")
    with pytest.raises(ConfigValidationException):
        service.load_and_validate()


def test_load_dict():
    service = ConfigService("unused.yaml")
    service.load_dict({"logging": {"level": "DEBUG"}})
    assert service.get("logging.level") == "DEBUG"
    with pytest.raises(ConfigValidationException):
        service.load_dict({"logging": {"level": "LOUD"}})
