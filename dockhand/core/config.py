"""Dockhand runtime configuration and settings."""
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from dockhand.core.logger import get_logger

logger = get_logger(__name__)

# No remote catalog by default; documents in <data_root>/repos are always read
DEFAULT_CATALOG_URL = ""


@dataclass
class Features:
    """Feature switches for unattended behaviour.

    Attributes:
        auto_update: Run the daily bulk update sweep ("on"/"off")
        self_update: Allow Dockhand to update its own image ("on"/"off")
    """

    auto_update: str = "on"
    self_update: str = "on"

    @property
    def auto_update_enabled(self) -> bool:
        return self.auto_update != "off"

    @property
    def self_update_enabled(self) -> bool:
        return self.self_update != "off"


@dataclass
class DockhandConfig:
    """Runtime configuration for Dockhand.

    Attributes:
        engine_url: Container engine API endpoint
        engine_timeout: Seconds before an engine API call times out
        data_root: Persistent root; binds live under ``<data_root>/binds/<name>``
        log_dir: Where demultiplexed extension logs are written
        catalog_url: Remote catalog document (empty to disable)
        manager_name: Container name Dockhand itself runs under
        catalog_name: Pseudo-extension name that refreshes the catalog
        stop_timeout: Grace period in seconds for a user-initiated stop
        update_time: Daily update sweep time, hh:mm[am|pm] (empty to disable)
        features: Feature switches
    """

    engine_url: str = "unix:///var/run/docker.sock"
    engine_timeout: int = 120
    data_root: Path = field(default_factory=lambda: Path.cwd() / ".dockhand")
    log_dir: Path = field(default_factory=lambda: Path("log"))
    catalog_url: str = DEFAULT_CATALOG_URL
    manager_name: str = "dockhand"
    catalog_name: str = "dockhand-catalog"
    stop_timeout: int = 10
    update_time: str = "02:00"
    features: Features = field(default_factory=Features)

    def __post_init__(self):
        # The engine treats a relative bind source as a volume name
        self.data_root = Path(self.data_root).expanduser().resolve()

    @property
    def binds_dir(self) -> Path:
        return self.data_root / "binds"

    @property
    def repos_dir(self) -> Path:
        return self.data_root / "repos"

    @property
    def state_file(self) -> Path:
        return self.data_root / "state.json"

    @classmethod
    def from_env(cls, base: Optional["DockhandConfig"] = None) -> "DockhandConfig":
        """Create config from environment variables.

        Environment variables:
            DOCKHAND_ENGINE_URL: Container engine endpoint
            DOCKHAND_ENGINE_TIMEOUT: Engine API timeout in seconds
            DOCKHAND_DATA_ROOT: Persistent data root
            DOCKHAND_LOG_DIR: Extension log directory
            DOCKHAND_CATALOG_URL: Remote catalog document
            DOCKHAND_MANAGER_NAME: Dockhand's own container name
            DOCKHAND_STOP_TIMEOUT: Stop grace period in seconds
            DOCKHAND_UPDATE_TIME: Daily update time
            DOCKHAND_AUTO_UPDATE / DOCKHAND_SELF_UPDATE: "on" or "off"

        Args:
            base: Values to fall back on (defaults to a fresh config)

        Returns:
            DockhandConfig instance with values from environment or base
        """
        base = base or cls()
        return cls(
            engine_url=os.getenv("DOCKHAND_ENGINE_URL", base.engine_url),
            engine_timeout=int(os.getenv("DOCKHAND_ENGINE_TIMEOUT", base.engine_timeout)),
            data_root=Path(os.getenv("DOCKHAND_DATA_ROOT", str(base.data_root))),
            log_dir=Path(os.getenv("DOCKHAND_LOG_DIR", str(base.log_dir))),
            catalog_url=os.getenv("DOCKHAND_CATALOG_URL", base.catalog_url),
            manager_name=os.getenv("DOCKHAND_MANAGER_NAME", base.manager_name),
            catalog_name=base.catalog_name,
            stop_timeout=int(os.getenv("DOCKHAND_STOP_TIMEOUT", base.stop_timeout)),
            update_time=os.getenv("DOCKHAND_UPDATE_TIME", base.update_time),
            features=Features(
                auto_update=os.getenv("DOCKHAND_AUTO_UPDATE", base.features.auto_update),
                self_update=os.getenv("DOCKHAND_SELF_UPDATE", base.features.self_update),
            ),
        )

    @classmethod
    def from_file(cls, path: Path) -> "DockhandConfig":
        """Load config from a YAML file; unknown keys are ignored with a warning.

        Missing files yield the defaults.
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No config file at {path}, using defaults")
            return cls()

        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

        if not isinstance(raw, dict):
            raise ValueError(f"Config file {path} must contain a mapping")

        return cls.from_dict(raw)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "DockhandConfig":
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}

        for key, value in raw.items():
            if key not in known:
                logger.warning(f"Ignoring unknown config key: {key}")
                continue
            if key in ("data_root", "log_dir"):
                value = Path(value)
            elif key == "features":
                value = Features(**(value or {}))
            values[key] = value

        return cls(**values)


# Global config instance (can be overridden)
_config: Optional[DockhandConfig] = None


def get_config() -> DockhandConfig:
    """Get the global Dockhand configuration.

    Returns:
        DockhandConfig instance (creates from environment if not set)
    """
    global _config
    if _config is None:
        _config = DockhandConfig.from_env()
    return _config


def set_config(config: DockhandConfig):
    """Set the global Dockhand configuration.

    Args:
        config: DockhandConfig instance to use globally
    """
    global _config
    _config = config
