"""Snapshot operations: staging, committing, publishing and initial setup.

Each component wraps a `GitRepo` and translates git failures into the typed
errors the sync loop understands. `GitBackend` bundles the three capabilities
behind the `SyncBackend` interface.
"""

import datetime
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from .config import Secret, mask_url
from .constants import (
    APP_NAME,
    BRANCH,
    BRANCH_REF,
    COMMIT_MESSAGE_TEMPLATE,
    PUSH_REFSPEC,
    REMOTE_NAME,
    TIMESTAMP_FORMAT,
)
from .errors import CommitError, PushError, SetupError, StagingError
from .git_wrapper import GitRepo, credential_options

logger = logging.getLogger(APP_NAME)


@dataclass(frozen=True)
class Identity:
    """The fixed author and committer identity of every snapshot."""

    name: str
    email: str

    def env(self) -> dict[str, str]:
        """Returns a process environment carrying this identity for git."""
        env = os.environ.copy()
        env["GIT_AUTHOR_NAME"] = self.name
        env["GIT_AUTHOR_EMAIL"] = self.email
        env["GIT_COMMITTER_NAME"] = self.name
        env["GIT_COMMITTER_EMAIL"] = self.email
        return env


def snapshot_message(when: datetime.datetime | None = None) -> str:
    """Renders the snapshot commit message for a point in time.

    Args:
        when (datetime.datetime | None): The creation time. Defaults to now.
            Aware values are converted to UTC; naive values are taken as UTC.

    Returns:
        str: e.g. 'Auto-sync: snapshot at 2024-05-01 12:00:00'.
    """
    if when is None:
        when = datetime.datetime.now(datetime.timezone.utc)
    elif when.tzinfo is not None:
        when = when.astimezone(datetime.timezone.utc)
    return COMMIT_MESSAGE_TEMPLATE.format(timestamp=when.strftime(TIMESTAMP_FORMAT))


class ChangeDetector:
    """Stages the whole working tree and reports whether it moved past the tip."""

    def __init__(self, repo: GitRepo, ref: str = BRANCH_REF):
        self.repo = repo
        self.ref = ref

    def has_pending_changes(self) -> bool:
        """Stages every file and compares the index with the history tip's tree.

        Returns:
            bool: True if the staged tree differs from the last snapshot. With
            no snapshot yet, True if anything at all is staged.

        Raises:
            StagingError: If staging or the comparison fails.
        """
        try:
            self.repo.add_all()
            tip = self.repo.rev_parse(self.ref)
            if tip is None:
                return bool(self.repo.ls_files())

            staged_tree = self.repo.write_tree()
            return staged_tree != self.repo.rev_parse(f"{tip}^{{tree}}")
        except (RuntimeError, OSError) as e:
            raise StagingError(f"Could not stage {self.repo.path}: {e}") from e


class Committer:
    """Turns the staged index into a snapshot on top of the history tip."""

    def __init__(self, repo: GitRepo, identity: Identity, ref: str = BRANCH_REF):
        self.repo = repo
        self.identity = identity
        self.ref = ref

    def commit(self) -> str:
        """Writes the index as a new snapshot and advances the tip to it.

        The tip is only moved once the commit object exists, and the move is
        guarded by the old tip value, so a failure leaves it unchanged. A root
        snapshot may only create the ref, never overwrite an existing one.

        Returns:
            str: The hash of the new snapshot.

        Raises:
            CommitError: If writing the tree, the commit, or the ref fails.
        """
        try:
            tip = self.repo.rev_parse(self.ref)
            tree_oid = self.repo.write_tree()
            parents = [tip] if tip else []
            commit_oid = self.repo.commit_tree(
                tree_oid, parents, snapshot_message(), env=self.identity.env()
            )
            self.repo.update_ref(self.ref, commit_oid, tip or "")
        except (RuntimeError, OSError) as e:
            raise CommitError(f"Could not create snapshot: {e}") from e
        return commit_oid


class Publisher:
    """Pushes the history tip to the remote using basic authentication."""

    def __init__(
        self,
        repo: GitRepo,
        username: str,
        password: Secret,
        remote: str = REMOTE_NAME,
        refspec: str = PUSH_REFSPEC,
    ):
        self.repo = repo
        self.username = username
        self.password = password
        self.remote = remote
        self.refspec = refspec

    def publish(self) -> None:
        """Pushes the fixed refspec. Never creates or rewrites snapshots.

        Raises:
            PushError: On authentication, network or non-fast-forward failure.
                The message has the password masked.
        """
        options, env = credential_options(self.username, self.password)
        try:
            self.repo.push(self.remote, self.refspec, options=options, env=env)
        except (RuntimeError, OSError) as e:
            raise PushError(self.password.redact(str(e))) from e


class SyncBackend:
    """Interface for the three capabilities the sync loop drives.

    Implementations may be a real version-control backend or a test double.
    """

    def stage(self) -> bool:
        """Stages the working tree and returns True if it has pending changes.

        Raises:
            StagingError: If staging fails.
        """
        raise NotImplementedError

    def commit(self) -> str:
        """Creates a snapshot from the staged changes and returns its id.

        Raises:
            CommitError: If the snapshot cannot be created.
        """
        raise NotImplementedError

    def push(self) -> None:
        """Publishes the history tip.

        Raises:
            PushError: If publishing fails.
        """
        raise NotImplementedError


class GitBackend(SyncBackend):
    """`SyncBackend` over a git working tree."""

    def __init__(
        self, repo: GitRepo, identity: Identity, username: str, password: Secret
    ):
        self.repo = repo
        self.detector = ChangeDetector(repo)
        self.committer = Committer(repo, identity)
        self.publisher = Publisher(repo, username, password)

    def stage(self) -> bool:
        return self.detector.has_pending_changes()

    def commit(self) -> str:
        return self.committer.commit()

    def push(self) -> None:
        self.publisher.publish()


def prepare_repository(
    url: str, path: Path, username: str, password: Secret
) -> GitRepo:
    """Opens or clones the working tree and checks out the sync branch.

    An existing working tree at `path` is reused so that restarts keep their
    local history. Otherwise `url` is cloned into `path`.

    Args:
        url (str): The remote repository address.
        path (Path): Where the working tree lives.
        username (str): Remote username.
        password (Secret): Remote password.

    Returns:
        GitRepo: The prepared repository.

    Raises:
        SetupError: If the repository cannot be opened, cloned or prepared.
    """
    try:
        if (path / ".git").exists():
            logger.info(f"Using existing repository at {path}")
            repo = GitRepo(path)
        else:
            logger.info(f"Cloning repository {mask_url(url)}...")
            options, env = credential_options(username, password)
            repo = GitRepo.clone(url, path, options=options, env=env)
            logger.info(f"Repository cloned at {path}")
        repo.ensure_branch(BRANCH)
    except (RuntimeError, ValueError, OSError) as e:
        raise SetupError(password.redact(f"Failed to prepare repository: {e}")) from e
    return repo
