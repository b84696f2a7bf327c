import logging

import pytest
from pydantic import ValidationError

from usd1_radar.config import RadarSettings, load_settings


def test_defaults_without_environment():
    settings = load_settings({})
    assert settings.helius_api_key is None
    assert settings.redis_url is None
    assert settings.fresh_ttl == 15.0
    assert settings.stale_ttl == 45.0
    assert settings.max_new_per_run == 30
    assert settings.log_level == "INFO"
    assert settings.log_json is False
    assert settings.record_volume is True


def test_reads_environment_values():
    settings = load_settings(
        {
            "HELIUS_API_KEY": " abc ",
            "REDIS_URL": "redis://localhost:6379/0",
            "RADAR_FRESH_TTL": "5",
            "RADAR_STALE_TTL": "20",
            "RADAR_VERIFY_TX_WINDOW": "25",
            "RADAR_LOG_LEVEL": "debug",
            "RADAR_LOG_JSON": "yes",
            "RADAR_RECORD_VOLUME": "0",
        }
    )
    assert settings.helius_api_key == "abc"
    assert settings.redis_url == "redis://localhost:6379/0"
    assert settings.fresh_ttl == 5.0
    assert settings.stale_ttl == 20.0
    assert settings.verify_tx_window == 25
    assert settings.log_level == "DEBUG"
    assert settings.log_json is True
    assert settings.record_volume is False


def test_invalid_values_fall_back_with_warning(caplog):
    caplog.set_level(logging.WARNING)
    settings = load_settings({"RADAR_HTTP_TIMEOUT": "-3", "RADAR_MAX_NEW_PER_RUN": "lots", "REDIS_URL": "localhost"})
    assert settings.http_timeout == 8.0
    assert settings.max_new_per_run == 30
    assert settings.redis_url is None
    assert "http_timeout" in caplog.text


def test_inverted_ttls_fall_back_to_defaults(caplog):
    caplog.set_level(logging.WARNING)
    settings = load_settings({"RADAR_FRESH_TTL": "60", "RADAR_STALE_TTL": "30"})
    assert (settings.fresh_ttl, settings.stale_ttl) == (15.0, 45.0)
    assert "TTL" in caplog.text


def test_overrides_take_precedence():
    settings = load_settings({"RADAR_MAX_NEW_PER_RUN": "5"}, max_new_per_run=7)
    assert settings.max_new_per_run == 7


def test_model_is_frozen_and_validates():
    settings = RadarSettings()
    with pytest.raises(ValidationError):
        settings.fresh_ttl = 1.0
    with pytest.raises(ValidationError):
        RadarSettings(log_level="LOUD")
