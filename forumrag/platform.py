"""
ForumRAG Platform Paths
-----------------------
Cross-platform resolution of the data and log directories.

Priority for each directory: explicit environment variable, then the
container convention when running inside Docker, then platformdirs.
"""

import os
import logging
from pathlib import Path

import platformdirs

logger = logging.getLogger("ForumRag.Platform")

_APP_NAME = "forumrag"
_APP_AUTHOR = "ForumRAG"


def is_running_in_docker() -> bool:
    """Detect if we're running inside a Docker container."""
    if os.environ.get("FORUMRAG_DOCKER") == "1":
        return True
    if Path("/.dockerenv").exists():
        return True
    try:
        with open("/proc/1/cgroup", "r") as f:
            return "docker" in f.read()
    except (FileNotFoundError, PermissionError):
        return False


def get_data_dir() -> Path:
    """
    Get the ForumRAG data directory.

    Contains: indexing.db (queues, settings, leases, fallback triggers).
    """
    env_val = os.environ.get("FORUMRAG_DATA_DIR")
    if env_val:
        return Path(env_val)
    if is_running_in_docker():
        return Path("/data")
    return Path(platformdirs.user_data_dir(_APP_NAME, _APP_AUTHOR))


def get_log_dir() -> Path:
    """Get the ForumRAG log directory."""
    env_val = os.environ.get("FORUMRAG_LOG_DIR")
    if env_val:
        return Path(env_val)
    if is_running_in_docker():
        return Path("/data/logs")
    return Path(platformdirs.user_log_dir(_APP_NAME, _APP_AUTHOR))
