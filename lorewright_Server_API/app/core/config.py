# config.py
# Description: Configuration settings for the lorewright world-info server.
#
# Imports
import configparser
import os
from dataclasses import asdict, dataclass, fields
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

#
# 3rd-party Libraries
import yaml
from dotenv import load_dotenv
from loguru import logger

#
########################################################################################################################
#
# Functions:

# __file__ is .../lorewright_Server_API/app/core/config.py
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
CONFIG_SECTION = "World-Info"


def _load_env_files() -> None:
    """Load .env files without replacing variables already set in the process env."""
    candidate_env_paths = [
        PROJECT_ROOT / '.env',
        PROJECT_ROOT / '.ENV',
        PROJECT_ROOT / 'Config_Files' / '.env',
        PROJECT_ROOT / 'Config_Files' / '.ENV',
    ]
    loaded_any = False
    for p in candidate_env_paths:
        if p.exists():
            logger.debug(f"Loading environment variables from: {str(p)}")
            load_dotenv(dotenv_path=str(p), override=False)
            loaded_any = True
    if not loaded_any:
        logger.debug("No .env file found; relying on config.txt and process env")


def _as_bool(val: object, default: bool) -> bool:
    if val is None:
        return default
    s = str(val).strip().lower()
    if s in ("1", "true", "yes", "on", "y"):
        return True
    if s in ("0", "false", "no", "off", "n"):
        return False
    return default


def _as_int(val: object, default: int) -> int:
    if val is None or str(val).strip() == "":
        return default
    try:
        return int(str(val).strip())
    except ValueError:
        logger.warning(f"Invalid integer config value {val!r}; using {default}")
        return default


@dataclass
class WorldInfoConfig:
    """Runtime configuration for the world-info engine and its store."""
    db_path: str = "Databases/world_info.db"
    # Seed values for newly created per-owner settings
    default_scan_depth: int = 2
    default_budget_percent: int = 25
    default_budget_cap_tokens: int = 0
    default_context_window_tokens: int = 8192
    token_chars_per_token: int = 4
    metrics_enabled: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WorldInfoConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown world-info config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def from_yaml(cls, path: str) -> 'WorldInfoConfig':
        """Load configuration from YAML file"""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data.get("world_info", data))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def settings_defaults(self) -> Dict[str, Any]:
        """Overrides for ``build_default_world_info_settings``."""
        return {
            "scan_depth": self.default_scan_depth,
            "budget_percent": self.default_budget_percent,
            "budget_cap_tokens": self.default_budget_cap_tokens,
            "context_window_tokens": self.default_context_window_tokens,
        }


_ENV_OVERRIDES = {
    "WORLD_INFO_DB_PATH": "db_path",
    "WORLD_INFO_SCAN_DEPTH": "default_scan_depth",
    "WORLD_INFO_BUDGET_PERCENT": "default_budget_percent",
    "WORLD_INFO_BUDGET_CAP_TOKENS": "default_budget_cap_tokens",
    "WORLD_INFO_CONTEXT_WINDOW_TOKENS": "default_context_window_tokens",
    "WORLD_INFO_TOKEN_CHARS_PER_TOKEN": "token_chars_per_token",
    "WORLD_INFO_METRICS_ENABLED": "metrics_enabled",
}


def _coerce(raw: object, current: Any) -> Any:
    if isinstance(current, bool):
        return _as_bool(raw, current)
    if isinstance(current, int):
        return _as_int(raw, current)
    return str(raw)


def load_config_parser(config_path: Optional[Path] = None) -> configparser.ConfigParser:
    parser = configparser.ConfigParser()
    path = config_path or PROJECT_ROOT / 'Config_Files' / 'config.txt'
    if path.exists():
        parser.read(path, encoding="utf-8")
        logger.debug(f"Loaded world-info config from: {str(path)}")
    else:
        logger.debug(f"Config file not found at {str(path)}; using defaults")
    return parser


@lru_cache(maxsize=1)
def load_world_info_config() -> WorldInfoConfig:
    """
    Build the world-info configuration.

    Precedence (lowest to highest): dataclass defaults, ``[World-Info]`` in
    ``Config_Files/config.txt``, an optional YAML file named by
    ``WORLD_INFO_CONFIG_YAML``, then ``WORLD_INFO_*`` environment variables.
    """
    _load_env_files()
    config = WorldInfoConfig()

    parser = load_config_parser()
    if parser.has_section(CONFIG_SECTION):
        for f in fields(WorldInfoConfig):
            raw = parser.get(CONFIG_SECTION, f.name, fallback=None)
            if raw is not None:
                setattr(config, f.name, _coerce(raw, getattr(config, f.name)))

    yaml_path = os.getenv("WORLD_INFO_CONFIG_YAML")
    if yaml_path:
        if Path(yaml_path).exists():
            overlay = WorldInfoConfig.from_yaml(yaml_path)
            defaults = WorldInfoConfig()
            for f in fields(WorldInfoConfig):
                value = getattr(overlay, f.name)
                if value != getattr(defaults, f.name):
                    setattr(config, f.name, value)
            logger.info(f"Applied world-info YAML config from {yaml_path}")
        else:
            logger.warning(f"WORLD_INFO_CONFIG_YAML points to a missing file: {yaml_path}")

    for env_name, field_name in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is not None:
            setattr(config, field_name, _coerce(raw, getattr(config, field_name)))

    return config


def clear_config_cache() -> None:
    """Clear cached configuration loaders (for tests or dynamic reloads)."""
    load_world_info_config.cache_clear()

#
# End of config.py
#######################################################################################################################
