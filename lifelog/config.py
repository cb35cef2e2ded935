"""
Configuration management for lifelog stores.

The configuration is stored as a TOML file in the store directory. It
holds tuning knobs and provider choices. Credentials and feature flags
are read from the environment on every load and never written to disk.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# tomli_w for writing TOML (tomllib is read-only)
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "lifelog.toml"
CONFIG_VERSION = 1
DEFAULT_API_URL = "https://api.limitless.ai/v1/"


def get_default_store_path() -> Path:
    """Store directory: LIFELOG_STORE_PATH, else ~/.lifelog."""
    env_path = os.environ.get("LIFELOG_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return Path.home() / ".lifelog"


def _env_flag(*names: str) -> bool:
    return any(os.environ.get(name, "").strip() == "1" for name in names)


@dataclass
class ProviderConfig:
    """Configuration for a single inference provider."""
    name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class LimitlessConfig:
    api_url: str = DEFAULT_API_URL
    page_limit: int = 100
    timezone: str = "UTC"
    timeout: float = 30.0


@dataclass
class SyncConfig:
    bootstrap_days: int = 7
    backfill_hours: int = 6
    refresh_after_minutes: int = 60
    stale_after_hours: int = 6
    alert_interval_hours: int = 3
    segment_batch_size: int = 9
    atomic_segments: bool = False


@dataclass
class AnalysisConfig:
    version: str = "v1"
    limit: int = 2
    segment_limit: int = 120
    call_delay: float = 5.0


@dataclass
class AlertConfig:
    channel: str = "#lifelog-alerts"


@dataclass
class Flags:
    """Feature flags and credentials from the environment."""
    limitless_api_key: Optional[str] = None
    disable_sync: bool = False
    disable_inference: bool = False
    full_refresh: bool = False
    slack_token: Optional[str] = None
    slack_channel: Optional[str] = None

    @property
    def sync_disabled(self) -> bool:
        return self.disable_sync or self.limitless_api_key == "skip"

    @classmethod
    def from_env(cls) -> "Flags":
        return cls(
            limitless_api_key=os.environ.get("LIMITLESS_API_KEY") or None,
            disable_sync=_env_flag("DISABLE_LIMITLESS_SYNC"),
            disable_inference=_env_flag("DISABLE_INFERENCE", "DISABLE_WORKERS_AI"),
            full_refresh=_env_flag("LIFELOG_FULL_REFRESH"),
            slack_token=os.environ.get("SLACK_BOT_TOKEN") or None,
            slack_channel=os.environ.get("SLACK_CHANNEL") or None,
        )


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    limitless: LimitlessConfig = field(default_factory=LimitlessConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    # Inference providers; None means not configured
    primary: Optional[ProviderConfig] = None
    secondary: Optional[ProviderConfig] = None

    flags: Flags = field(default_factory=Flags.from_env)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        return self.path / "lifelog.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def detect_default_providers() -> dict[str, Optional[ProviderConfig]]:
    """
    Pick inference providers from the credentials available.

    Primary priority:
    1. Cloudflare Workers AI (CLOUDFLARE_ACCOUNT_ID + CLOUDFLARE_API_TOKEN)
    2. OpenAI (OPENAI_API_KEY)
    3. None (analysis is skipped)

    Secondary is Gemini whenever a Gemini key is present.
    """
    providers: dict[str, Optional[ProviderConfig]] = {"primary": None, "secondary": None}

    if os.environ.get("CLOUDFLARE_ACCOUNT_ID") and os.environ.get("CLOUDFLARE_API_TOKEN"):
        providers["primary"] = ProviderConfig("workers-ai")
    elif os.environ.get("LIFELOG_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY"):
        providers["primary"] = ProviderConfig("openai")

    if os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY"):
        providers["secondary"] = ProviderConfig("gemini")

    return providers


def create_default_config(store_path: Path) -> StoreConfig:
    """Create a new config with auto-detected defaults."""
    providers = detect_default_providers()
    return StoreConfig(
        path=store_path,
        primary=providers["primary"],
        secondary=providers["secondary"],
    )


def _section(data: dict, name: str, cls):
    """Build a dataclass from a TOML section, ignoring unknown keys."""
    raw = data.get(name, {})
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    def parse_provider(section: Optional[dict]) -> Optional[ProviderConfig]:
        if not section or not section.get("name"):
            return None
        return ProviderConfig(
            name=section["name"],
            params={k: v for k, v in section.items() if k != "name"},
        )

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        limitless=_section(data, "limitless", LimitlessConfig),
        sync=_section(data, "sync", SyncConfig),
        analysis=_section(data, "analysis", AnalysisConfig),
        alerts=_section(data, "alerts", AlertConfig),
        primary=parse_provider(data.get("primary")),
        secondary=parse_provider(data.get("secondary")),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. Flags and credentials
    are not written.
    """
    if tomli_w is None:
        raise RuntimeError("tomli_w is required to save config. Install with: pip install tomli-w")

    config.path.mkdir(parents=True, exist_ok=True)

    def provider_to_dict(p: ProviderConfig) -> dict:
        d = {"name": p.name}
        d.update(p.params)
        return d

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "limitless": vars(config.limitless).copy(),
        "sync": vars(config.sync).copy(),
        "analysis": vars(config.analysis).copy(),
        "alerts": vars(config.alerts).copy(),
    }
    if config.primary is not None:
        data["primary"] = provider_to_dict(config.primary)
    if config.secondary is not None:
        data["secondary"] = provider_to_dict(config.secondary)

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = create_default_config(store_path)
    save_config(config)
    return config
