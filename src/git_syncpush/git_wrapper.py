import logging
import os
import subprocess
from pathlib import Path

from .config import Secret
from .constants import APP_NAME

logger = logging.getLogger(APP_NAME)

_USERNAME_VAR = "GITSYNCPUSH_CREDENTIAL_USERNAME"
_PASSWORD_VAR = "GITSYNCPUSH_CREDENTIAL_PASSWORD"

CREDENTIAL_HELPER = (
    '!f() { test "$1" = get || exit 0; '
    f'echo "username=${{{_USERNAME_VAR}}}"; '
    f'echo "password=${{{_PASSWORD_VAR}}}"; '
    "}; f"
)
"""str: Shell credential helper that answers from the subprocess environment."""


def credential_options(
    username: str, password: Secret
) -> tuple[list[str], dict[str, str]]:
    """Builds git options and environment for basic authentication.

    The password travels only through the subprocess environment; it never
    appears in the argument vector (visible to `ps`) or in any log line.
    Interactive prompts are disabled so bad credentials fail fast instead of
    blocking on a terminal.

    Args:
        username (str): The remote username.
        password (Secret): The remote password.

    Returns:
        tuple[list[str], dict[str, str]]: Global `-c` options to place before
        the git subcommand, and the environment to run it with.
    """
    options = [
        "-c",
        "credential.helper=",
        "-c",
        f"credential.helper={CREDENTIAL_HELPER}",
    ]
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GIT_SSH_COMMAND"] = "ssh -o BatchMode=yes"
    env[_USERNAME_VAR] = username
    env[_PASSWORD_VAR] = password.reveal()
    return options, env


class GitRepo:
    """A wrapper around the Git command-line interface for a specific repository.

    This class provides methods to execute the Git operations the sync loop
    needs using `subprocess`, abstracting away the command construction and
    output handling.

    Every git process is started in its own session, so a terminal interrupt
    sent to the agent's process group never kills a command mid-flight. Only
    the agent sees the signal; it lets the running command finish.

    Attributes:
        path (Path): The file system path to the repository root.
    """

    def __init__(self, path: Path):
        """Initializes the GitRepo instance.

        Args:
            path (Path): The path to the repository root directory.

        Raises:
            ValueError: If the specified path does not contain a .git directory.
        """
        self.path = path
        if not (self.path / ".git").exists():
            raise ValueError(f"Not a git repository: {self.path}")

    @classmethod
    def clone(
        cls,
        url: str,
        path: Path,
        options: list[str] | None = None,
        env: dict | None = None,
    ) -> "GitRepo":
        """Clones a remote repository into `path`.

        Args:
            url (str): The remote repository address.
            path (Path): The destination directory (created if missing).
            options (list[str] | None): Global git options, e.g. credentials.
            env (dict | None): Environment for the git subprocess.

        Returns:
            GitRepo: A wrapper around the new working tree.

        Raises:
            RuntimeError: If the clone fails.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            subprocess.run(
                ["git", *(options or []), "clone", "--", url, str(path)],
                capture_output=True,
                text=True,
                check=True,
                env=env,
                start_new_session=True,
            )
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"Git error: {e.stderr or e}") from e
        return cls(path)

    def _run(
        self, args: list[str], capture: bool = True, env: dict | None = None
    ) -> str:
        """Executes a Git command within the repository context.

        Args:
            args (list[str]): A list of arguments to pass to the git command.
            capture (bool, optional):   Whether to capture and return stdout.
                                        Defaults to True.
            env (Optional[dict], optional): Environment variables to pass to the
                                            subprocess. Defaults to None.

        Returns:
            str:    The stripped stdout of the command if capture is True,
                    otherwise an empty string.

        Raises:
            RuntimeError: If the git command returns a non-zero exit code.
        """
        try:
            res = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=capture,
                text=True,
                check=True,
                env=env,
                start_new_session=True,
            )
            return res.stdout.strip() if capture else ""
        except subprocess.CalledProcessError as e:
            raise RuntimeError(f"Git error: {e.stderr or e}") from e

    def current_branch(self) -> str:
        """Retrieves the name of the currently checked-out branch.

        Returns:
            str: The branch name (also reported for an unborn branch).
        """
        return self._run(["branch", "--show-current"])

    def ensure_branch(self, branch: str) -> None:
        """Makes HEAD point at `branch`.

        An existing local `branch` is checked out as is, keeping its history.
        On an empty clone HEAD is re-pointed symbolically, so the first
        snapshot becomes the root of `branch`. Otherwise the branch is
        created at the current HEAD and checked out.

        Args:
            branch (str): The branch name.
        """
        if self.current_branch() == branch:
            return
        if self.rev_parse(f"refs/heads/{branch}") is not None:
            self._run(["checkout", branch])
        elif self.rev_parse("HEAD") is None:
            self._run(["symbolic-ref", "HEAD", f"refs/heads/{branch}"])
        else:
            self._run(["checkout", "-B", branch])

    def add_all(self) -> None:
        """
        Stages all changes (modified, deleted, and untracked files)
        in the working directory.
        """
        self._run(["add", "--all"], capture=False)

    def ls_files(self) -> list[str]:
        """Lists the paths recorded in the index.

        Returns:
            list[str]: Index entries, relative to the repository root.
        """
        output = self._run(["ls-files"])
        return output.splitlines() if output else []

    def rev_parse(self, rev: str) -> str | None:
        """Resolves a revision (tag, branch, relative ref) to a full object hash.

        Args:
            rev (str): The revision to parse (e.g., 'HEAD', 'refs/heads/main').

        Returns:
            Optional[str]:  The full hash,
                            or None if the revision could not be resolved.
        """
        try:
            return self._run(["rev-parse", "--verify", "--quiet", rev]) or None
        except RuntimeError as e:
            logger.debug(f"rev-parse failed for '{rev}': {e}")
            return None

    def write_tree(self, env: dict | None = None) -> str:
        """Creates a tree object from the current index.

        Returns:
            str: The hash of the created tree object.
        """
        return self._run(["write-tree"], env=env)

    def commit_tree(
        self, tree: str, parents: list[str], message: str, env: dict | None = None
    ) -> str:
        """Creates a commit object from a tree object.

        Args:
            tree (str): The tree hash to commit.
            parents (list[str]): A list of parent commit hashes.
            message (str): The commit message.
            env (Optional[dict], optional): Environment variables to
                                            pass to the subprocess, used
                                            for author and committer identity.

        Returns:
            str: The hash of the new commit.
        """
        cmd = ["commit-tree", tree, "-m", message]
        for p in parents:
            cmd.extend(["-p", p])
        try:
            return self._run(cmd, env=env)
        except RuntimeError as e:
            logger.warning(f"Failed to commit tree {tree}: {e}")
            raise

    def update_ref(self, ref: str, new_oid: str, old_oid: str | None = None) -> None:
        """Safely updates a reference to a new object ID.

        Args:
            ref (str): The reference to update (e.g., 'refs/heads/main').
            new_oid (str): The new hash.
            old_oid (Optional[str], optional): The expected old hash. If provided,
                                               the update will fail if the current ref
                                               does not match this value. An empty
                                               string requires that the ref does
                                               not exist yet.
        """
        cmd = ["update-ref", "-m", "git-syncpush: snapshot", ref, new_oid]
        if old_oid is not None:
            cmd.append(old_oid)
        try:
            self._run(cmd)
        except RuntimeError as e:
            logger.warning(f"Failed to update ref {ref}: {e}")
            raise

    def push(
        self,
        remote: str,
        refspec: str,
        options: list[str] | None = None,
        env: dict | None = None,
    ) -> None:
        """Pushes a refspec to a remote.

        Args:
            remote (str): The remote name (e.g., 'origin').
            refspec (str): The refspec to push (e.g., "main:main").
            options (list[str] | None): Global git options, e.g. credentials.
            env (dict | None): Environment for the git subprocess.
        """
        # capture=True suppresses verbose "Enumerating objects..." output.
        self._run([*(options or []), "push", remote, refspec], capture=True, env=env)
