"""Configuration management for the CNC index ingestion tools.

Provides:
- Config: base class with dict/JSON round-tripping
- FamilyConfig: per-family period range, regions and processing mode
- IngestConfig: application settings loaded from environment variables

Values are kept as raw strings here; period and region validation happens in
pipeline.periods / pipeline.families so that a bad value raises ConfigError
before any I/O.
"""

import json
import os as _os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

MODE_INCREMENTAL = "incremental"
MODE_TRUNCATE = "truncate"

# Accepted PROCESSING_METHOD spellings (lower-cased, quotes stripped)
_PROCESSING_METHODS = {
    "incremental": MODE_INCREMENTAL,
    "truncate and load": MODE_TRUNCATE,
    "truncate": MODE_TRUNCATE,
}

FAMILY_NAMES = ("icf", "icec", "peic")

DEFAULT_PERIODS = {
    "icf": "04/2012:>",
    "icec": "03/2012:>",
    "peic": "03/2012:-1M",
}

DEFAULT_BASE_URL = "https://backend.pesquisascnc.com.br/admin/4/upload"
DEFAULT_SITE_URL = "https://pesquisascnc.com.br/pesquisa-{family}/"


class Config:
    """Base configuration class for organizing application settings."""

    def __init__(self):
        """Initialize configuration with default values."""
        pass

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary.

        Returns:
            Dictionary of all config attributes
        """
        return {k: v for k, v in self.__dict__.items() if not k.startswith("_")}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Config instance with values from dictionary
        """
        config = cls()
        for key, value in data.items():
            setattr(config, key, value)
        return config

    def save_json(self, path: Path) -> None:
        """Save configuration to JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)

    @classmethod
    def load_json(cls, path: Path) -> "Config":
        """Load configuration from JSON file.

        Raises:
            FileNotFoundError: If file doesn't exist
            json.JSONDecodeError: If file is not valid JSON
        """
        with open(path, "r") as f:
            data = json.load(f)
        return cls.from_dict(data)


@dataclass
class FamilyConfig:
    """Raw per-family run settings.

    ``period_spec`` is the ``"MM/YYYY:END"`` string exactly as configured;
    ``start`` and ``end_spec`` split it without validating.
    """

    family: str
    period_spec: str
    regions: List[str] = field(default_factory=lambda: ["BR"])
    mode: str = MODE_INCREMENTAL

    @property
    def start(self) -> str:
        return self.period_spec.split(":", 1)[0].strip()

    @property
    def end_spec(self) -> str:
        parts = self.period_spec.split(":", 1)
        return parts[1].strip() if len(parts) == 2 else ""


def parse_regions(raw: Optional[str]) -> List[str]:
    """Split a comma-separated region list; empty falls back to ``["BR"]``."""
    if not raw:
        return ["BR"]
    regions = [r.strip().upper() for r in raw.split(",") if r.strip()]
    return regions or ["BR"]


def parse_processing_method(raw: Optional[str]) -> str:
    """Map a PROCESSING_METHOD value onto MODE_INCREMENTAL / MODE_TRUNCATE.

    Raises:
        ValueError: for an unrecognised method name.
    """
    if raw is None:
        return MODE_INCREMENTAL
    key = " ".join(raw.strip().strip("'\"").lower().split())
    if not key:
        return MODE_INCREMENTAL
    try:
        return _PROCESSING_METHODS[key]
    except KeyError:
        raise ValueError(
            f"PROCESSING_METHOD must be 'Incremental' or 'Truncate and Load', got {raw!r}"
        ) from None


def _env_bool(name: str, default: bool) -> bool:
    raw = _os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


class IngestConfig(Config):
    """Application-level configuration loaded from environment variables.

    All env vars have defaults so the tool runs without any configuration
    (apart from portal credentials, which only the fallback path needs).

    Environment variables:
        BASE_URL: Spreadsheet host prefix
        BASE_URL_SITE_<FAMILY>: Portal page for the fallback path
        CREDENTIALS_USER / CREDENTIALS_PASSWORD: Portal login
        PERIOD_<FAMILY>: "MM/YYYY:END" range (END is ">", "-NM" or "MM/YYYY")
        REGIONS_<FAMILY>: Comma-separated region codes (default: BR)
        PROCESSING_METHOD: "Incremental" or "Truncate and Load"
        INGEST_DB_PATH: SQLite database file (default: cnc_indices.sqlite)
        INGEST_TEMP_DIR: Download directory (default: temp)
        DOWNLOAD_TIMEOUT: HTTP timeout in seconds (default: 30)
        PLAYWRIGHT_HEADLESS: Run the portal browser headless (default: true)
        PORTAL_SETTLE_MS: Wait after filtering the portal table (default: 3000)
        NOTIFY_URL: Webhook receiving the run result as JSON
    """

    def __init__(self) -> None:
        super().__init__()
        self.base_url = _os.getenv("BASE_URL", DEFAULT_BASE_URL).rstrip("/")
        self.site_urls: Dict[str, str] = {
            name: _os.getenv(f"BASE_URL_SITE_{name.upper()}",
                             DEFAULT_SITE_URL.format(family=name))
            for name in FAMILY_NAMES
        }
        self.credentials_user = _os.getenv("CREDENTIALS_USER", "")
        self.credentials_password = _os.getenv("CREDENTIALS_PASSWORD", "")
        self.periods: Dict[str, str] = {
            name: _os.getenv(f"PERIOD_{name.upper()}") or DEFAULT_PERIODS[name]
            for name in FAMILY_NAMES
        }
        self.regions: Dict[str, List[str]] = {
            name: parse_regions(_os.getenv(f"REGIONS_{name.upper()}"))
            for name in FAMILY_NAMES
        }
        self.processing_method = _os.getenv("PROCESSING_METHOD", "Incremental")
        self.db_path = Path(_os.getenv("INGEST_DB_PATH", "cnc_indices.sqlite"))
        self.temp_dir = Path(_os.getenv("INGEST_TEMP_DIR", "temp"))
        self.download_timeout = int(_os.getenv("DOWNLOAD_TIMEOUT", "30"))
        self.headless = _env_bool("PLAYWRIGHT_HEADLESS", True)
        self.portal_settle_ms = int(_os.getenv("PORTAL_SETTLE_MS", "3000"))
        self.notify_url: Optional[str] = _os.getenv("NOTIFY_URL") or None

    @classmethod
    def from_env(cls) -> "IngestConfig":
        """Create an IngestConfig instance populated from environment variables."""
        return cls()

    @property
    def mode(self) -> str:
        return parse_processing_method(self.processing_method)

    def family_config(self, name: str, mode: Optional[str] = None) -> FamilyConfig:
        """Build the FamilyConfig for one family.

        Args:
            name: Family name ("icf", "icec" or "peic")
            mode: Override for PROCESSING_METHOD (CLI ``--mode``)
        """
        key = name.strip().lower()
        return FamilyConfig(
            family=key,
            period_spec=self.periods.get(key) or DEFAULT_PERIODS.get(key, ""),
            regions=list(self.regions.get(key) or ["BR"]),
            mode=mode or self.mode,
        )
