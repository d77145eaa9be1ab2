"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest
import yaml

from pricewatch.config import (
    ConfigLoader,
    get_channel_chat_ids,
    get_cleanup_config,
    get_dedup_config,
    get_dispatcher_config,
    get_display_config,
    get_evaluator_config,
    get_healthcheck_config,
    get_seed_config,
)


def _write(tmp_path: Path, config: dict) -> ConfigLoader:
    config_file = tmp_path / 'config.yaml'
    with open(config_file, 'w', encoding='utf-8') as f:
        yaml.dump(config, f)
    return ConfigLoader(str(config_file))


class TestConfigLoaderBasics:
    """Tests for basic ConfigLoader functionality."""

    def test_config_loader_init(self, test_config_yaml: Path):
        """ConfigLoader should initialize with valid YAML file."""
        loader = ConfigLoader(str(test_config_yaml))
        assert loader.raw['app']['name'] == 'PriceWatch Test'

    def test_config_loader_missing_file(self):
        """ConfigLoader should raise FileNotFoundError for missing file."""
        with pytest.raises(FileNotFoundError):
            ConfigLoader("/nonexistent/path/config.yaml")

    def test_config_loader_missing_section(self, tmp_path: Path):
        """ConfigLoader should raise ValueError for missing required sections."""
        with pytest.raises(ValueError, match="Missing required config section"):
            _write(tmp_path, {'engine': {'max_workers': 2}})

    def test_config_loader_non_mapping_root(self, tmp_path: Path):
        config_file = tmp_path / 'list.yaml'
        config_file.write_text("- a\n- b\n", encoding='utf-8')
        with pytest.raises(ValueError, match="mapping"):
            ConfigLoader(str(config_file))


class TestConfigLoaderDotNotation:
    """Tests for dot-notation config access."""

    def test_get_nested_key(self, test_config_yaml: Path):
        loader = ConfigLoader(str(test_config_yaml))
        assert loader.get('notifications.max_retries') == 2

    def test_get_nonexistent_key_with_default(self, test_config_yaml: Path):
        loader = ConfigLoader(str(test_config_yaml))
        assert loader.get('nonexistent.key', 'default_value') == 'default_value'

    def test_get_through_scalar_returns_default(self, test_config_yaml: Path):
        loader = ConfigLoader(str(test_config_yaml))
        assert loader.get('app.name.deeper', 'x') == 'x'

    def test_env_substitution(self, tmp_path: Path, monkeypatch):
        monkeypatch.setenv('PW_TEST_DIR', '/tmp/alerts')
        loader = _write(tmp_path, {
            'engine': {},
            'notifications': {'fallback_dir': '${PW_TEST_DIR}'},
        })
        assert loader.get('notifications.fallback_dir') == '/tmp/alerts'

    def test_env_substitution_missing_var_uses_default(self, tmp_path: Path, monkeypatch):
        monkeypatch.delenv('PW_MISSING_VAR', raising=False)
        loader = _write(tmp_path, {
            'engine': {},
            'notifications': {'fallback_dir': '${PW_MISSING_VAR}'},
        })
        assert loader.get('notifications.fallback_dir', './data/alerts') == './data/alerts'


class TestTypedHelpers:
    """Typed accessors read explicit values and fall back to safe defaults."""

    def test_values_from_file(self, test_config_yaml: Path):
        loader = ConfigLoader(str(test_config_yaml))

        evaluator = get_evaluator_config(loader)
        assert evaluator['check_interval_seconds'] == 30
        assert evaluator['max_workers'] == 2
        assert evaluator['default_cooldown_seconds'] == 3600

        dedup = get_dedup_config(loader)
        assert dedup['trend_window_seconds'] == 7200
        assert dedup['trend_tolerance_pct'] == 2.5
        assert dedup['include_unnotified'] is False
        assert dedup['within_cycle'] is True

        dispatcher = get_dispatcher_config(loader)
        assert dispatcher['max_retries'] == 2
        assert dispatcher['retry_base_delay_seconds'] == 1.0
        assert dispatcher['retry_max_delay_seconds'] == 5.0
        assert dispatcher['queue_size'] == 10

        assert get_display_config(loader)['timezone'] == 'Asia/Shanghai'
        assert get_healthcheck_config(loader) == {'enabled': False, 'host': '0.0.0.0', 'port': 9090}

        cleanup = get_cleanup_config(loader)
        assert cleanup['hour_utc'] == 4
        assert cleanup['price_retention_days'] == 30
        assert cleanup['alert_retention_days'] == 90

    def test_defaults_for_minimal_config(self, tmp_path: Path):
        loader = _write(tmp_path, {'engine': {}, 'notifications': {}})

        assert get_evaluator_config(loader) == {
            'check_interval_seconds': 60,
            'max_workers': 4,
            'default_cooldown_seconds': 86400,
        }
        dedup = get_dedup_config(loader)
        assert dedup['trend_window_seconds'] == 86400
        assert dedup['trend_tolerance_pct'] == 3.0
        assert dedup['include_unnotified'] is True

        dispatcher = get_dispatcher_config(loader)
        assert dispatcher['max_retries'] == 3
        assert dispatcher['queue_size'] == 1000
        assert dispatcher['fallback_dir'] == './data/alerts'
        assert get_cleanup_config(loader)['enabled'] is False

    def test_invalid_values_fall_back(self, tmp_path: Path):
        loader = _write(tmp_path, {
            'engine': {'check_interval_seconds': 'soon', 'max_workers': 0},
            'notifications': {'max_retries': -1, 'queue_size': 'big'},
            'healthcheck': {'port': 70000},
        })
        assert get_evaluator_config(loader)['check_interval_seconds'] == 60
        assert get_evaluator_config(loader)['max_workers'] == 4
        assert get_dispatcher_config(loader)['max_retries'] == 3
        assert get_dispatcher_config(loader)['queue_size'] == 1000
        assert get_healthcheck_config(loader)['port'] == 8080

    def test_max_delay_never_below_base(self, tmp_path: Path):
        loader = _write(tmp_path, {
            'engine': {},
            'notifications': {'retry_base_delay_seconds': 10, 'retry_max_delay_seconds': 1},
        })
        dispatcher = get_dispatcher_config(loader)
        assert dispatcher['retry_max_delay_seconds'] == 10.0

    def test_seed_config(self, test_config_yaml: Path):
        seed = get_seed_config(ConfigLoader(str(test_config_yaml)))
        assert [s['id'] for s in seed['subjects']] == ['bitcoin', 'token-A']
        assert seed['global_rules'][0]['id'] == 'g-drop'
        assert list(seed['subject_rules']) == ['bitcoin']


class TestChannelChatIds:

    def test_split_and_strip(self):
        assert get_channel_chat_ids(" -1001, -1002 ,,") == ["-1001", "-1002"]

    def test_empty(self):
        assert get_channel_chat_ids("") == []
