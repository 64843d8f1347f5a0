"""Settings and configuration file loading.

The configuration file is TOML with one ``[[repository]]`` table per managed
repository::

    [[repository]]
    name = "dotfiles"            # optional, defaults to the last path segment
    location = "~/src/dotfiles"
    description = "My shell setup"  # optional
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import rtoml

from .errors import ConfigLoadError
from .models import RepositoryDescriptor

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = ".gatconfig"
CONFIG_ENV_VAR = "GAT_CONFIG"


@dataclass(frozen=True)
class Settings:
    """Process-wide paths, resolved once at startup."""

    config_path: Path
    ssh_key_path: Path

    @classmethod
    def from_environment(
        cls, home: Path | None = None, environ: Mapping[str, str] | None = None
    ) -> Settings:
        """Resolve settings from the home directory and environment.

        Priority order for the configuration file:
        1. $GAT_CONFIG environment variable
        2. ~/.gatconfig
        """
        environ = os.environ if environ is None else environ
        if home is None:
            home = Path(environ["HOME"]) if environ.get("HOME") else Path.home()

        env_config = environ.get(CONFIG_ENV_VAR)
        if env_config:
            config_path = Path(env_config).expanduser()
        else:
            config_path = home / CONFIG_FILE_NAME

        return cls(config_path=config_path, ssh_key_path=home / ".ssh" / "id_rsa")


def _optional_string(entry: dict, key: str, index: int) -> str | None:
    value = entry.get(key)
    if value is not None and not isinstance(value, str):
        raise ConfigLoadError(f"repository #{index}: '{key}' must be a string")
    return value


def parse_repositories(doc: dict) -> list[RepositoryDescriptor]:
    """Build repository descriptors from a parsed configuration document."""
    entries = doc.get("repository")
    if entries is None:
        raise ConfigLoadError("no [[repository]] entries found")
    if not isinstance(entries, list):
        raise ConfigLoadError("'repository' must be an array of tables")

    descriptors = []
    for index, entry in enumerate(entries, start=1):
        if not isinstance(entry, dict):
            raise ConfigLoadError(f"repository #{index}: expected a table")
        location = _optional_string(entry, "location", index)
        if not location:
            raise ConfigLoadError(f"repository #{index}: missing 'location'")

        descriptor = RepositoryDescriptor(
            location=location,
            name=_optional_string(entry, "name", index),
            description=_optional_string(entry, "description", index),
        )
        try:
            descriptor.display_name
        except ValueError as e:
            raise ConfigLoadError(f"repository #{index}: {e}") from e
        descriptors.append(descriptor)

    return descriptors


def load_config(config_path: Path) -> list[RepositoryDescriptor]:
    """Load the repository list from a configuration file."""
    try:
        with open(config_path.expanduser(), encoding="utf-8") as f:
            doc = rtoml.load(f)
    except OSError as e:
        raise ConfigLoadError(f"cannot read {config_path}: {e.strerror or e}") from e
    except rtoml.TomlParsingError as e:
        raise ConfigLoadError(f"invalid TOML in {config_path}: {e}") from e

    descriptors = parse_repositories(doc)
    logger.debug("Loaded %d repositories from %s", len(descriptors), config_path)
    return descriptors
