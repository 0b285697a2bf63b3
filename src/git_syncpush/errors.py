"""Error taxonomy for the synchronization agent.

Fatal errors (`SetupError`, `SignalRegistrationError`, `ConfigError`) abort the
process before the sync loop starts. Cycle-local errors (`StagingError`,
`CommitError`, `PushError`) are logged by the loop, which then waits for the
next tick. None of them trigger a retry.
"""


class SyncError(RuntimeError):
    """Base class for all synchronization failures."""


class SetupError(SyncError):
    """The working tree could not be cloned, opened, or prepared."""


class StagingError(SyncError):
    """Staging the working tree or comparing it to the history tip failed."""


class CommitError(SyncError):
    """Writing the snapshot tree, commit, or branch update failed."""


class PushError(SyncError):
    """Publishing the history tip to the remote failed."""


class SignalRegistrationError(SyncError):
    """Termination signal handlers could not be installed."""


class ConfigError(ValueError):
    """Startup settings are missing or malformed."""
