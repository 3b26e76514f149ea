import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from dotenv import find_dotenv, load_dotenv

from spice.logger import get_logger

logger = get_logger(__name__)

# Package defaults (bundled with code)
PACKAGE_CONFIG_DIR = Path(__file__).parent / "defaults"

# User configs (relative to the working directory, gitignored)
USER_CONFIG_DIR = Path.cwd() / "config"


class ConfigLoader:
    """Load configuration with user overrides"""

    @staticmethod
    def load_config(config_name: str, user_dir: Optional[Path] = None) -> Dict[str, Any]:
        """
        Load config with fallback: user config -> default config

        Args:
            config_name: Name of the config file (e.g., 'parsers.json')
            user_dir: Override directory, defaults to ./config

        Raises:
            FileNotFoundError: If no config file was found

        Returns:
            Parsed JSON configuration
        """
        user_config_path = (user_dir or USER_CONFIG_DIR) / config_name
        if user_config_path.exists():
            with open(user_config_path) as f:
                return json.load(f)

        default_config_path = PACKAGE_CONFIG_DIR / config_name
        if default_config_path.exists():
            with open(default_config_path) as f:
                return json.load(f)

        raise FileNotFoundError(
            f"Config file '{config_name}' not found in:\n"
            f" - {user_config_path}\n"
            f" - {default_config_path}"
        )

    @staticmethod
    def load_parsers_config():
        """Load parsers registry configuration"""
        return ConfigLoader.load_config("parsers.json")

    @staticmethod
    def load_settings_config():
        """Load application settings"""
        return ConfigLoader.load_config("settings.json")


@dataclass
class Settings:
    db_path: Path = Path("data/spice.db")
    auto_accept_threshold: float = 0.95
    batch_size: int = 5
    workers: int = 5
    max_auto_checkpoints: int = 5
    log_level: str = "WARNING"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_base_url: Optional[str] = None


def _parse_env(
    name: str,
    default: Any,
    cast: Callable[[str], Any],
    valid: Callable[[Any], bool] = lambda _: True,
) -> Any:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        logger.warning("Invalid %s=%r, using default %r", name, raw, default)
        return default
    if not valid(value):
        logger.warning("Out of range %s=%r, using default %r", name, raw, default)
        return default
    return value


def _valid_threshold(value: float) -> bool:
    return 0.0 <= value <= 1.0


def _positive(value: int) -> bool:
    return value >= 1


def load_settings(config: Optional[Dict[str, Any]] = None) -> Settings:
    """
    Build settings from settings.json, then environment overrides.

    A .env file is loaded first but never overrides variables that are
    already set in the environment.

    Args:
        config: Optional settings dict. If None, loads from ConfigLoader.
    """
    dotenv_path = find_dotenv(usecwd=True)
    if dotenv_path:
        load_dotenv(dotenv_path, override=False)

    if config is None:
        config = ConfigLoader.load_settings_config()

    base = Settings(
        db_path=Path(config.get("db_path", Settings.db_path)),
        auto_accept_threshold=float(
            config.get("auto_accept_threshold", Settings.auto_accept_threshold)
        ),
        batch_size=int(config.get("batch_size", Settings.batch_size)),
        workers=int(config.get("workers", Settings.workers)),
        max_auto_checkpoints=int(
            config.get("max_auto_checkpoints", Settings.max_auto_checkpoints)
        ),
        log_level=str(config.get("log_level", Settings.log_level)),
        openai_model=str(config.get("openai_model", Settings.openai_model)),
    )

    return Settings(
        db_path=Path(_parse_env("SPICE_DB_PATH", str(base.db_path), str)),
        auto_accept_threshold=_parse_env(
            "SPICE_AUTO_ACCEPT_THRESHOLD",
            base.auto_accept_threshold,
            float,
            _valid_threshold,
        ),
        batch_size=_parse_env("SPICE_BATCH_SIZE", base.batch_size, int, _positive),
        workers=_parse_env("SPICE_WORKERS", base.workers, int, _positive),
        max_auto_checkpoints=_parse_env(
            "SPICE_MAX_AUTO_CHECKPOINTS", base.max_auto_checkpoints, int, _positive
        ),
        log_level=_parse_env("SPICE_LOG_LEVEL", base.log_level, str).upper(),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=_parse_env("OPENAI_MODEL", base.openai_model, str),
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
    )
