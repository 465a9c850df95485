"""
Filesystem locations used by messagebridge.

Recovered commands run inside a dedicated workspace directory, never in the
gateway's own working directory. By default it lives under the per-user
state directory that platformdirs resolves for the platform.
"""

import os
from functools import lru_cache
from pathlib import Path

import platformdirs

APP_NAME = "messagebridge"
STATE_HOME_ENV = "MESSAGEBRIDGE_STATE_HOME"
WORKSPACE_DIR_ENV = "MESSAGEBRIDGE_WORKSPACE_DIR"


def _env_path(name: str) -> Path | None:
    value = os.environ.get(name)
    return Path(value) if value else None


@lru_cache(maxsize=1)
def get_state_home() -> Path:
    """
    Per-user state directory (not created here).

    MESSAGEBRIDGE_STATE_HOME takes precedence; otherwise
    ``platformdirs.user_state_dir`` decides, e.g.
    ``~/.local/state/messagebridge`` on Linux.
    """
    return _env_path(STATE_HOME_ENV) or Path(platformdirs.user_state_dir(APP_NAME))


def get_workspace_dir(override: str | None = None) -> Path:
    """Workspace for recovered commands: override, then env, then state home."""
    if override:
        return Path(override)
    return _env_path(WORKSPACE_DIR_ENV) or get_state_home() / "workspace"


def ensure_dir(path: Path) -> Path:
    """Create ``path`` and its parents if missing; returns ``path``."""
    path.mkdir(parents=True, exist_ok=True)
    return path
