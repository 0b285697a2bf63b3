"""Global constants for Git SyncPush.

This module defines application identifiers, the fixed branch and remote layout
used for synchronization, and the message templates shared across the package.
"""

# --- Identity ---
APP_NAME = "git-syncpush"
"""str: The human-readable application name (also the logger name)."""

ENV_PREFIX = "GITSYNCPUSH_"
"""str: Prefix for environment variables that provide startup settings."""

# --- Git Layout ---
REMOTE_NAME = "origin"
"""str: The remote the working tree is cloned from and published to."""

BRANCH = "main"
"""str: The only branch that is ever committed to or published."""

BRANCH_REF = f"refs/heads/{BRANCH}"
"""str: The fully qualified reference acting as the history tip."""

PUSH_REFSPEC = f"{BRANCH_REF}:{BRANCH_REF}"
"""str: Fixed mapping of the local branch onto the remote branch."""

# --- Snapshots ---
COMMIT_MESSAGE_TEMPLATE = "Auto-sync: snapshot at {timestamp}"
"""str: Template for snapshot commit messages."""

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
"""str: UTC timestamp format embedded in snapshot commit messages."""

# --- Readiness ---
READY_MESSAGE = "Repository is ready"
NOT_READY_MESSAGE = "Repository is not ready"

# --- Logging ---
LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_MAX_LOG_SIZE = 5 * 1024 * 1024
