"""Freebie Notifier — Configuration Loader.

Loads and validates application configuration from a YAML file.
Resolves environment variables referenced via ${VAR_NAME} syntax,
after loading a .env file with python-dotenv.
Uses frozen dataclasses for type-safe configuration access.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from freebie_notifier.utils.logger import get_logger

logger = get_logger(__name__)

# ── Path Constants ────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"
SETTINGS_PATH = CONFIG_DIR / "settings.yaml"

# ── Environment Variable Pattern ─────────────────────────
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)}")

_DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


# ═══════════════════════════════════════════════════════════
# Configuration Dataclasses
# ═══════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SearchConfig:
    """Search target and HTTP behaviour of the fetcher."""

    base_url: str
    category_slug: str
    category_id: int
    postal_code: str
    location_id: int
    radius_km: int
    max_pages: int = 10
    page_delay_seconds: float = 1.0
    max_retries: int = 3
    backoff_base_seconds: float = 2.0
    timeout_seconds: float = 20.0
    user_agents: tuple[str, ...] = (_DEFAULT_USER_AGENT,)


@dataclass(frozen=True)
class FilterConfig:
    """Domain filter settings."""

    free_markers: tuple[str, ...] = ("verschenken",)
    require_price_marker: bool = False
    first_run_limit: int = 25


@dataclass(frozen=True)
class TelegramConfig:
    """Configuration for Telegram notifications."""

    bot_token: str
    chat_id: str
    messages_per_minute: int = 20
    max_retries: int = 3
    backoff_base_seconds: float = 2.0
    max_retry_after_seconds: float = 60.0
    send_photos: bool = True
    circuit_failure_threshold: int = 5


@dataclass(frozen=True)
class StateConfig:
    """Durable state locations and retention."""

    database_path: str = "data/seen_listings.db"
    lock_path: str = "data/run.lock"
    lock_stale_after_seconds: float = 900.0
    max_seen: int = 1000
    retention_days: int = 0
    suppress_after_failures: int = 0


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration container."""

    search: SearchConfig
    filter: FilterConfig
    telegram: TelegramConfig
    state: StateConfig
    log_level: str = "INFO"


# ═══════════════════════════════════════════════════════════
# YAML Loading & Environment Variable Resolution
# ═══════════════════════════════════════════════════════════


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${VAR_NAME} references in YAML values.

    Args:
        value: A string, dict, list, or primitive from parsed YAML.

    Returns:
        The same structure with all ${VAR_NAME} placeholders replaced.

    Raises:
        ValueError: If a referenced environment variable is not set.
    """
    if isinstance(value, str):
        for var_name in ENV_VAR_PATTERN.findall(value):
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ValueError(
                    f"Environment variable '${{{var_name}}}' is required but not set. "
                    f"Add it to your .env file or export it in your shell."
                )
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse a YAML file with UTF-8 encoding.

    Raises:
        FileNotFoundError: If the YAML file does not exist.
        ValueError: If the file is empty, malformed or not a mapping.
    """
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Configuration file is not valid YAML: {path}: {e}") from e

    if data is None:
        raise ValueError(f"Configuration file is empty: {path}")
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")

    logger.debug("Loaded configuration from %s", path)
    return data


def _validate_keys(data: dict[str, Any], required: list[str], section: str) -> None:
    """Validate that all required keys exist in a config section.

    Raises:
        ValueError: If any required key is missing.
    """
    missing = [key for key in required if key not in data]
    if missing:
        raise ValueError(
            f"Missing required configuration keys in '{section}': {', '.join(missing)}"
        )


def _positive(value: Any, name: str, allow_zero: bool = False) -> Any:
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"'{name}' must be {'>= 0' if allow_zero else '> 0'}, got {value}")
    return value


# ═══════════════════════════════════════════════════════════
# Dataclass Builders
# ═══════════════════════════════════════════════════════════


def _build_search_config(data: dict[str, Any]) -> SearchConfig:
    """Build a SearchConfig from the 'search' section."""
    required_keys = [
        "base_url", "category_slug", "category_id",
        "postal_code", "location_id", "radius_km",
    ]
    _validate_keys(data, required_keys, "search")

    user_agents = data.get("user_agents") or [_DEFAULT_USER_AGENT]

    base_url = str(data["base_url"]).rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ValueError(f"'search.base_url' must be an http(s) URL, got {base_url!r}")

    return SearchConfig(
        base_url=base_url,
        category_slug=str(data["category_slug"]).strip("/"),
        category_id=int(data["category_id"]),
        # YAML turns 04105 into an int; keep the leading zero
        postal_code=str(data["postal_code"]).zfill(5),
        location_id=int(data["location_id"]),
        radius_km=_positive(int(data["radius_km"]), "search.radius_km"),
        max_pages=_positive(int(data.get("max_pages", 10)), "search.max_pages"),
        page_delay_seconds=_positive(
            float(data.get("page_delay_seconds", 1.0)), "search.page_delay_seconds", True,
        ),
        max_retries=_positive(int(data.get("max_retries", 3)), "search.max_retries"),
        backoff_base_seconds=_positive(
            float(data.get("backoff_base_seconds", 2.0)), "search.backoff_base_seconds", True,
        ),
        timeout_seconds=_positive(float(data.get("timeout_seconds", 20)), "search.timeout_seconds"),
        user_agents=tuple(user_agents),
    )


def _build_filter_config(data: dict[str, Any]) -> FilterConfig:
    """Build a FilterConfig from the optional 'filter' section."""
    markers = data.get("free_markers") or ["verschenken"]
    return FilterConfig(
        free_markers=tuple(str(m).lower() for m in markers),
        require_price_marker=bool(data.get("require_price_marker", False)),
        first_run_limit=_positive(
            int(data.get("first_run_limit", 25)), "filter.first_run_limit", True,
        ),
    )


def _build_telegram_config(data: dict[str, Any]) -> TelegramConfig:
    """Build a TelegramConfig from the 'telegram' section."""
    _validate_keys(data, ["bot_token", "chat_id"], "telegram")
    for key in ("bot_token", "chat_id"):
        if not str(data[key] or "").strip():
            raise ValueError(f"'telegram.{key}' must not be empty")

    return TelegramConfig(
        bot_token=str(data["bot_token"]),
        chat_id=str(data["chat_id"]),
        messages_per_minute=_positive(
            int(data.get("messages_per_minute", 20)), "telegram.messages_per_minute",
        ),
        max_retries=_positive(int(data.get("max_retries", 3)), "telegram.max_retries"),
        backoff_base_seconds=_positive(
            float(data.get("backoff_base_seconds", 2.0)), "telegram.backoff_base_seconds", True,
        ),
        max_retry_after_seconds=_positive(
            float(data.get("max_retry_after_seconds", 60)),
            "telegram.max_retry_after_seconds", True,
        ),
        send_photos=bool(data.get("send_photos", True)),
        circuit_failure_threshold=_positive(
            int(data.get("circuit_failure_threshold", 5)), "telegram.circuit_failure_threshold",
        ),
    )


def _build_state_config(data: dict[str, Any], base_dir: Path) -> StateConfig:
    """Build a StateConfig; relative paths are resolved against base_dir."""

    def _path(key: str, default: str) -> str:
        p = Path(str(data.get(key, default)))
        return str(p if p.is_absolute() else base_dir / p)

    return StateConfig(
        database_path=_path("database_path", "data/seen_listings.db"),
        lock_path=_path("lock_path", "data/run.lock"),
        lock_stale_after_seconds=_positive(
            float(data.get("lock_stale_after_seconds", 900)), "state.lock_stale_after_seconds",
        ),
        max_seen=_positive(int(data.get("max_seen", 1000)), "state.max_seen"),
        retention_days=_positive(int(data.get("retention_days", 0)), "state.retention_days", True),
        suppress_after_failures=_positive(
            int(data.get("suppress_after_failures", 0)), "state.suppress_after_failures", True,
        ),
    )


def build_config(settings: dict[str, Any], base_dir: Path = PROJECT_ROOT) -> AppConfig:
    """Build an AppConfig from an already resolved settings mapping.

    Args:
        settings: Parsed settings with environment variables resolved.
        base_dir: Directory that relative state paths are resolved against.

    Returns:
        A validated AppConfig.

    Raises:
        ValueError: If required sections or keys are missing or invalid.
    """
    _validate_keys(settings, ["search", "telegram"], "settings")

    return AppConfig(
        search=_build_search_config(settings["search"]),
        filter=_build_filter_config(settings.get("filter") or {}),
        telegram=_build_telegram_config(settings["telegram"]),
        state=_build_state_config(settings.get("state") or {}, base_dir),
        log_level=str((settings.get("logging") or {}).get("level", "INFO")).upper(),
    )


# ═══════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════


def load_config(
    settings_path: Path | None = None,
    env_path: Path | None = None,
) -> AppConfig:
    """Load the complete application configuration.

    Loads the .env file, reads settings.yaml, resolves ${VAR} references
    and validates all fields. Relative state paths are resolved against
    the project root.

    Args:
        settings_path: Override path to settings.yaml. Defaults to config/settings.yaml.
        env_path: Override path to the .env file. Defaults to project root .env.

    Returns:
        A fully validated AppConfig instance.

    Raises:
        FileNotFoundError: If the settings file is missing.
        ValueError: If required fields are missing or env vars are unset.
    """
    env_file = env_path or (PROJECT_ROOT / ".env")
    load_dotenv(env_file)
    logger.debug("Loaded environment from %s", env_file)

    settings = _resolve_env_vars(_load_yaml(settings_path or SETTINGS_PATH))
    config = build_config(settings)

    logger.info("Configuration loaded successfully")
    logger.debug("Search: %s/%s (%s, %d km)",
                 config.search.base_url, config.search.category_slug,
                 config.search.postal_code, config.search.radius_km)
    logger.debug("State database: %s", config.state.database_path)
    return config
