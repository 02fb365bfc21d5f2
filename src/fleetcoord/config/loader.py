"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching with reload support
- Conversion from dict to typed Config dataclass
- Group validation (unknown references, dependency cycles)
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from fleetcoord.config.merge import merge_configs
from fleetcoord.config.paths import get_config_paths
from fleetcoord.config.schema import (
    Config,
    CoordinatorConfig,
    LoggingConfig,
    ResolverConfig,
    StoreConfig,
    WorkerConfig,
)
from fleetcoord.errors import ConfigError, GroupNotFound
from fleetcoord.resolver import validate_groups
from fleetcoord.state.schema import GroupSpec

# Module logger (may not be configured yet at import time)
_log = logging.getLogger("fleetcoord.config")

# Global cached config
_cached_config: Config | None = None

# Used when no config file defines any group
DEFAULT_GROUPS: dict[str, dict[str, Any]] = {
    "typescript": {
        "name": "TypeScript & Build System",
        "priority": 1,
        "blocked_by": [],
        "resource_patterns": ["tsconfig.json", "src/**/*.ts", "src/**/*.tsx"],
        "tasks": [
            {
                "name": "Type check",
                "resources": ["tsconfig.json"],
                "action": "command",
                "params": {"command": "npx tsc --noEmit"},
            },
        ],
    },
    "eslint": {
        "name": "ESLint & Code Quality",
        "priority": 2,
        "blocked_by": ["typescript"],
        "resource_patterns": ["eslint.config.*", "src/**/*"],
        "tasks": [
            {
                "name": "Fix lint warnings",
                "resources": ["eslint.config.js"],
                "action": "command",
                "params": {"command": "npx eslint . --fix"},
            },
        ],
    },
    "bundle": {
        "name": "Bundle & Dependencies",
        "priority": 2,
        "blocked_by": [],
        "resource_patterns": ["package.json", "package-lock.json", "next.config.*"],
        "tasks": [
            {
                "name": "Production build",
                "resources": ["package.json", "package-lock.json"],
                "action": "command",
                "params": {"command": "npm run build"},
            },
        ],
    },
}


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML as dict, or empty dict on error.
    """
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables.

    FLEET_LOG sets the log file, FLEET_LOG_LEVEL the log level.

    Returns:
        Config dict with values from environment.
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("FLEET_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    log_level = os.environ.get("FLEET_LOG_LEVEL")
    if log_level:
        overrides.setdefault("logging", {})["level"] = log_level

    return overrides


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return section


def _known_fields(cls: type, section: dict[str, Any], name: str) -> dict[str, Any]:
    """Drop (and log) keys the section dataclass does not define."""
    fields = cls.__dataclass_fields__
    unknown = sorted(k for k in section if k not in fields)
    if unknown:
        _log.warning("Ignoring unknown keys in '%s': %s", name, ", ".join(unknown))
    return {k: v for k, v in section.items() if k in fields and v is not None}


def parse_groups(data: dict[str, Any]) -> dict[str, GroupSpec]:
    """Parse the ``groups`` mapping into GroupSpecs.

    Raises:
        ConfigError: An entry is not a mapping or lacks required fields.
    """
    groups: dict[str, GroupSpec] = {}
    for group_id, entry in data.items():
        if not isinstance(entry, dict):
            raise ConfigError(f"Group '{group_id}' must be a mapping")
        try:
            groups[str(group_id)] = GroupSpec.from_dict(entry, group_id=str(group_id))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid group '{group_id}': {e}") from e
    return groups


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass.

    Args:
        data: Merged configuration dictionary.

    Returns:
        Typed Config object.

    Raises:
        ConfigError: A section is malformed or the groups are invalid.
        CyclicDependency: The groups' ``blocked_by`` graph has a cycle.
    """
    try:
        coordinator = CoordinatorConfig(
            **_known_fields(CoordinatorConfig, _section(data, "coordinator"), "coordinator")
        )
        worker = WorkerConfig(**_known_fields(WorkerConfig, _section(data, "worker"), "worker"))
        store = StoreConfig(**_known_fields(StoreConfig, _section(data, "store"), "store"))
        resolver = ResolverConfig(
            **_known_fields(ResolverConfig, _section(data, "resolver"), "resolver")
        )
    except TypeError as e:
        raise ConfigError(str(e)) from e

    log_data = _section(data, "logging")
    logging_config = LoggingConfig(
        level=log_data.get("level"),
        verbose=log_data.get("verbose"),
        file=log_data.get("file"),
    )

    groups_data = _section(data, "groups") or DEFAULT_GROUPS
    groups = parse_groups(groups_data)
    try:
        validate_groups(groups)
    except GroupNotFound as e:
        raise ConfigError(f"Unknown group '{e.group_id}' in blocked_by") from e

    # Extra fields for extensibility
    known_keys = {"coordinator", "worker", "store", "resolver", "logging", "groups"}
    extra = {k: v for k, v in data.items() if k not in known_keys}

    return Config(
        coordinator=coordinator,
        worker=worker,
        store=store,
        resolver=resolver,
        logging=logging_config,
        groups=groups,
        extra=extra,
    )


def load_config(project_root: str | Path | None = None, reload: bool = False) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Project config (<project_root>/.fleet/config.yaml)
    3. User config (~/.config/fleetcoord/config.yaml, or under $XDG_CONFIG_HOME)
    4. System config (/etc/fleetcoord/config.yaml)

    Args:
        project_root: Project directory for project-level config.
        reload: Force reload even if cached.

    Returns:
        Merged Config object.
    """
    global _cached_config

    # Return cached global config if available and not reloading
    if _cached_config is not None and not reload and project_root is None:
        return _cached_config

    configs: list[dict[str, Any]] = []

    # Load file configs in order (system -> user -> project)
    for path in get_config_paths(project_root):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    # Environment overrides (highest priority)
    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    merged = merge_configs(*configs)
    config = dict_to_config(merged)

    # Cache only global config (no project_root)
    if project_root is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it if needed."""
    global _cached_config
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config.

    Useful for testing or forcing a reload.
    """
    global _cached_config
    _cached_config = None
