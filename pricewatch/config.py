import os
import yaml
from pathlib import Path
from typing import Dict, List, Any, Optional
from dotenv import load_dotenv
from loguru import logger

# Load environment variables from .env
load_dotenv(dotenv_path=os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))

# Environment variables (secrets)
BOT_TOKEN = os.getenv("BOT_TOKEN", "")
CHANNEL_CHAT_IDS = os.getenv("CHANNEL_CHAT_IDS", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CONFIG_FILE = os.getenv("CONFIG_FILE", "./configs/default.yaml")
DB_URL = os.getenv("DB_URL", "sqlite:///./data/pricewatch.db")


class ConfigLoader:
    """Loads and validates YAML configuration with environment variable substitution."""

    REQUIRED_SECTIONS = ('engine', 'notifications')

    def __init__(self, config_path: str):
        self.config_path = Path(config_path)
        self._config: Optional[Dict[str, Any]] = None
        self._load()

    def _load(self):
        """Load YAML config file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")

        with open(self.config_path, 'r', encoding='utf-8') as f:
            self._config = yaml.safe_load(f) or {}

        if not isinstance(self._config, dict):
            raise ValueError(f"Config root must be a mapping: {self.config_path}")

        for section in self.REQUIRED_SECTIONS:
            if section not in self._config:
                raise ValueError(f"Missing required config section: {section}")

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get config value by dot-notation path.
        Example: config.get('notifications.max_retries') -> 3
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
                if value is None:
                    return default
            else:
                return default

        # Handle environment variable substitution in strings
        if isinstance(value, str) and value.startswith('${') and value.endswith('}'):
            env_var = value[2:-1]
            return os.getenv(env_var, default)

        return value

    @property
    def raw(self) -> Dict[str, Any]:
        """Get raw config dict."""
        return self._config


# Global config instance (lazy-loaded)
_config_instance: Optional[ConfigLoader] = None


def get_config() -> ConfigLoader:
    """Get process config instance (loaded once from CONFIG_FILE)."""
    global _config_instance
    if _config_instance is None:
        _config_instance = ConfigLoader(CONFIG_FILE)
    return _config_instance


def reload_config():
    """Reload config from file."""
    global _config_instance
    _config_instance = ConfigLoader(CONFIG_FILE)


def _resolve(config: Optional[ConfigLoader]) -> ConfigLoader:
    return config if config is not None else get_config()


def _as_int(value: Any, default: int, minimum: int = None, maximum: int = None) -> int:
    """Coerce to int, falling back to default when invalid or out of range."""
    try:
        result = int(value)
    except (ValueError, TypeError):
        return default
    if minimum is not None and result < minimum:
        return default
    if maximum is not None and result > maximum:
        return default
    return result


def _as_float(value: Any, default: float, minimum: float = None) -> float:
    try:
        result = float(value)
    except (ValueError, TypeError):
        return default
    if minimum is not None and result < minimum:
        return default
    return result


def get_channel_chat_ids(raw: Optional[str] = None) -> List[str]:
    """Split CHANNEL_CHAT_IDS ("-100123,-100456") into destinations."""
    raw = CHANNEL_CHAT_IDS if raw is None else raw
    return [chat_id.strip() for chat_id in raw.split(',') if chat_id.strip()]


def get_app_name(config: Optional[ConfigLoader] = None) -> str:
    return _resolve(config).get('app.name', 'PriceWatch')


def get_app_version(config: Optional[ConfigLoader] = None) -> str:
    return _resolve(config).get('app.version', '1.0.0')


def get_evaluator_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    """Get evaluation loop settings with validation and safe defaults."""
    cfg = _resolve(config)
    return {
        'check_interval_seconds': _as_int(cfg.get('engine.check_interval_seconds', 60), 60, minimum=1),
        'max_workers': _as_int(cfg.get('engine.max_workers', 4), 4, minimum=1, maximum=64),
        'default_cooldown_seconds': _as_int(
            cfg.get('engine.default_cooldown_seconds', 86400), 86400, minimum=0
        ),
    }


def get_dedup_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    """
    Get trend dedup and within-cycle dedup settings.

    Defaults: 24h window, 3 percentage points tolerance, unnotified records
    count as prior firings, within-cycle dedup enabled.
    """
    cfg = _resolve(config)
    return {
        'trend_window_seconds': _as_int(cfg.get('dedup.trend_window_seconds', 86400), 86400, minimum=0),
        'trend_tolerance_pct': _as_float(cfg.get('dedup.trend_tolerance_pct', 3.0), 3.0, minimum=0.0),
        'include_unnotified': bool(cfg.get('dedup.include_unnotified', True)),
        'within_cycle': bool(cfg.get('dedup.within_cycle', True)),
    }


def get_dispatcher_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    """Get notification dispatcher settings with validation and safe defaults."""
    cfg = _resolve(config)
    base_delay = _as_float(cfg.get('notifications.retry_base_delay_seconds', 2.0), 2.0, minimum=0.0)
    max_delay = _as_float(cfg.get('notifications.retry_max_delay_seconds', 60.0), 60.0, minimum=0.0)
    if max_delay < base_delay:
        max_delay = base_delay

    return {
        'channel': cfg.get('notifications.channel', 'telegram'),
        'max_retries': _as_int(cfg.get('notifications.max_retries', 3), 3, minimum=0, maximum=20),
        'retry_base_delay_seconds': base_delay,
        'retry_max_delay_seconds': max_delay,
        'send_timeout_seconds': _as_float(cfg.get('notifications.send_timeout_seconds', 10.0), 10.0, minimum=0.1),
        'queue_size': _as_int(cfg.get('notifications.queue_size', 1000), 1000, minimum=1),
        'fallback_dir': cfg.get('notifications.fallback_dir', './data/alerts'),
    }


def get_display_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    cfg = _resolve(config)
    return {
        'timezone': cfg.get('display.timezone', 'UTC'),
    }


def get_healthcheck_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    cfg = _resolve(config)
    return {
        'enabled': bool(cfg.get('healthcheck.enabled', True)),
        'host': cfg.get('healthcheck.host', '0.0.0.0'),
        'port': _as_int(cfg.get('healthcheck.port', 8080), 8080, minimum=1, maximum=65535),
    }


def get_cleanup_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    """Get data retention settings (days) with safe defaults."""
    cfg = _resolve(config)
    return {
        'enabled': bool(cfg.get('cleanup.enabled', False)),
        'hour_utc': _as_int(cfg.get('cleanup.hour_utc', 3), 3, minimum=0, maximum=23),
        'price_retention_days': _as_int(cfg.get('cleanup.price_retention_days', 90), 90, minimum=1),
        'alert_retention_days': _as_int(cfg.get('cleanup.alert_retention_days', 90), 90, minimum=1),
        'notification_retention_days': _as_int(
            cfg.get('cleanup.notification_retention_days', 90), 90, minimum=1
        ),
        'fallback_retention_days': _as_int(cfg.get('cleanup.fallback_retention_days', 7), 7, minimum=1),
    }


def get_seed_config(config: Optional[ConfigLoader] = None) -> Dict[str, Any]:
    """Subjects and rule definitions declared in the config file."""
    cfg = _resolve(config)
    rules = cfg.get('rules', {})
    if not isinstance(rules, dict):
        rules = {}
    subjects = cfg.get('subjects', [])
    if not isinstance(subjects, list):
        subjects = []
    return {
        'subjects': subjects,
        'global_rules': rules.get('global') or [],
        'subject_rules': rules.get('subjects') or {},
    }


def log_env_warnings() -> None:
    """Warn about missing secrets (dry-run mode is allowed)."""
    if not BOT_TOKEN:
        logger.warning("BOT_TOKEN not set - running in dry-run mode")

    if not get_channel_chat_ids():
        logger.warning("CHANNEL_CHAT_IDS not set - alerts will be logged only")
