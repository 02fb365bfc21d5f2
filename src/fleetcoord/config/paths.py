"""Configuration and state path resolution.

Config file locations:
- System: /etc/fleetcoord/config.yaml
- User: $XDG_CONFIG_HOME/fleetcoord/ or ~/.config/fleetcoord/
- Project: $project_root/.fleet/

The project's `.fleet/` directory is also the reserved coordination
directory holding the shared state document.
"""

from __future__ import annotations

import os
from pathlib import Path

CONFIG_FILENAME = "config.yaml"
STATE_FILENAME = "state.yaml"
APP_NAME = "fleetcoord"
SHORT_NAME = ".fleet"


def get_system_config_path() -> Path:
    """Get system-level config path. The file may not exist."""
    return Path("/etc") / APP_NAME / CONFIG_FILENAME


def get_user_config_path() -> Path:
    """Get user-level config path. The file may not exist."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_config) if xdg_config else Path.home() / ".config"
    return base / APP_NAME / CONFIG_FILENAME


def get_coordination_dir(project_root: str | Path) -> Path:
    """Reserved per-project directory for config and shared state."""
    return Path(project_root) / SHORT_NAME


def get_project_config_path(project_root: str | Path) -> Path:
    """Get project-level config path (may not exist)."""
    return get_coordination_dir(project_root) / CONFIG_FILENAME


def get_state_path(project_root: str | Path) -> Path:
    """Get the shared state document path (may not exist)."""
    return get_coordination_dir(project_root) / STATE_FILENAME


def get_config_paths(project_root: str | Path | None = None) -> list[Path]:
    """Get all config paths in priority order (lowest to highest).

    Args:
        project_root: Optional project directory for project-level config.

    Returns:
        List of config paths in order: system, user, project.
        Later paths override earlier ones when merging.
    """
    paths = [get_system_config_path(), get_user_config_path()]
    if project_root:
        paths.append(get_project_config_path(project_root))
    return paths
