"""Configuration management for fleetcoord.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/fleetcoord/)
- User-level config ($XDG_CONFIG_HOME/fleetcoord/ or ~/.config/fleetcoord/)
- Project-level config (<project_root>/.fleet/)
- Environment variable overrides (highest priority)

Example usage:
    from fleetcoord.config import load_config

    config = load_config(project_root="/path/to/project")
    print(config.coordinator.heartbeat_interval)
    print(sorted(config.groups))
"""

from fleetcoord.config.loader import (
    DEFAULT_GROUPS,
    get_config,
    load_config,
    reset_config,
)
from fleetcoord.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_state_path,
    get_system_config_path,
    get_user_config_path,
)
from fleetcoord.config.schema import (
    Config,
    CoordinatorConfig,
    LoggingConfig,
    ResolverConfig,
    StoreConfig,
    WorkerConfig,
)

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reset_config",
    "DEFAULT_GROUPS",
    # Schema types
    "CoordinatorConfig",
    "WorkerConfig",
    "StoreConfig",
    "ResolverConfig",
    "LoggingConfig",
    # Path utilities
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
    "get_state_path",
]
