"""
ServiceBell Device - Restaurant notification receiver.

Runs on kitchen and floor devices. Keeps a change stream open to the
ServiceBell server, turns booking and order changes into notifications,
and pulls anything the push path missed.

Key modules:
- main: Device runner and logging setup
- config: Device configuration management
- api_client: HTTP client for the notification endpoints
- connection_manager: Change stream channels with backoff and recovery
- notification_bridge: Row changes to notification intents
- sync_client: Heartbeat, sync pull, acknowledgement and escalation
- notification_store: Local store of unacknowledged notifications
"""

import os
import re
import subprocess
from typing import Optional


def _run_git_command(args: list[str]) -> Optional[str]:
    """Run a Git command and return its output."""
    try:
        result = subprocess.run(
            ['git'] + args,
            capture_output=True,
            text=True,
            check=True,
            timeout=5
        )
        return result.stdout.strip()
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, FileNotFoundError):
        return None


def _get_version_from_git() -> Optional[str]:
    """
    Get version from Git tags.

    Version Format:
    - Tagged releases: "v1.2.3"
    - Development builds: "v1.2.3-dev.5+a1b2c3d"
    """
    describe = _run_git_command(['describe', '--tags', '--long', '--always'])
    if not describe:
        return None

    match = re.match(r'^(.+?)-(\d+)-g([a-f0-9]+)$', describe)
    if match:
        tag, commits_since, commit_hash = match.groups()
        if int(commits_since) == 0:
            return tag
        return f"{tag}-dev.{commits_since}+{commit_hash}"

    # No tags, describe returned the bare commit hash
    return f"v0.0.0-dev+{describe}"


def _get_version() -> str:
    """
    Get version with priority: SERVICEBELL_DEVICE_VERSION env var > Git tags > fallback.
    """
    env_version = os.environ.get('SERVICEBELL_DEVICE_VERSION')
    if env_version:
        return env_version

    git_version = _get_version_from_git()
    if git_version:
        return git_version

    return 'v0.0.0-dev+unknown'


__version__ = _get_version()
