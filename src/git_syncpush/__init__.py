"""Git SyncPush: periodic snapshot-and-publish agent for a git working tree.

This package provides the command-line entry point, the synchronization loop,
the git operations it drives, and the readiness probe exposed to
orchestrators.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    errors,
    git_wrapper,
    health,
    ops,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "errors",
    "git_wrapper",
    "health",
    "ops",
]
