"""Configuration file discovery and loading."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .logging_config import get_logger
from .models import PortalConfig

logger = get_logger(__name__)

DEFAULT_CONFIG_PATHS = [
    Path("portal-gun.yaml"),
    Path.home() / ".config" / "portal-gun" / "config.yaml",
]


def find_config_file(explicit: Optional[str] = None) -> Optional[Path]:
    """Return the config file to use, or None when there is none.

    Raises:
        FileNotFoundError: An explicitly requested file does not exist.
    """
    if explicit:
        path = Path(explicit).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        return path

    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path
    return None


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read a YAML config file into a dict of PortalConfig fields."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping of settings")
    logger.debug("Loaded configuration file", config_path=str(path), keys=sorted(data))
    return data


def build_config(path: Optional[Path] = None, **overrides: Any) -> PortalConfig:
    """Merge file settings with overrides; None overrides are ignored.

    Raises:
        pydantic.ValidationError: The merged settings are invalid.
    """
    data = load_config_file(path) if path else {}
    data.update({key: value for key, value in overrides.items() if value is not None})
    return PortalConfig(**data)
