"""Thin wrapper over the git CLI for one repository working copy per call."""

import logging
import os
import shutil
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from commands import CancelToken, CommandError, run_command

logger = logging.getLogger(__name__)

# stderr fragments that mean retrying cannot help
_TERMINAL_ERRORS = (
    "repository not found",
    "authentication failed",
    "could not read username",
    "permission denied",
    "couldn't find remote ref",
)


class GitError(RuntimeError):
    """Raised when a git command fails."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


def authenticated_url(url: str, token: str | None = None) -> str:
    """Return *url* with an access token embedded, for HTTPS URLs only.

    The token defaults to ``GH_TOKEN`` or ``GITHUB_TOKEN`` from the
    environment. URLs that already carry credentials are returned unchanged.
    """
    token = token if token is not None else (os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN"))
    parts = urlsplit(url)
    if not token or parts.scheme != "https" or "@" in parts.netloc:
        return url
    return urlunsplit(parts._replace(netloc=f"x-access-token:{token}@{parts.netloc}"))


def _redact(text: str) -> str:
    token = os.environ.get("GH_TOKEN") or os.environ.get("GITHUB_TOKEN")
    return text.replace(token, "***") if token else text


class GitClient:
    def __init__(self, git_name: str, git_email: str, timeout: float | None = 300):
        self.git_name = git_name
        self.git_email = git_email
        self.timeout = timeout

    def _run_git(
        self,
        args: list[str],
        cwd: str | Path | None = None,
        token: CancelToken | None = None,
    ) -> str:
        """Run a git subcommand, raising GitError on non-zero exit."""
        cmd = ["git"] + args
        try:
            proc = run_command(cmd, cwd=cwd, timeout=self.timeout, token=token)
        except CommandError as exc:
            if not exc.retryable:
                raise
            raise GitError(_redact(str(exc))) from exc
        if proc.returncode != 0:
            stderr = _redact(proc.stderr.strip())
            retryable = not any(fragment in stderr.lower() for fragment in _TERMINAL_ERRORS)
            raise GitError(f"git {args[0]} failed ({proc.returncode}): {stderr[:500]}", retryable=retryable)
        return proc.stdout

    def _identity(self) -> list[str]:
        return ["-c", f"user.name={self.git_name}", "-c", f"user.email={self.git_email}"]

    # ------------------------------------------------------------------
    # Working copy
    # ------------------------------------------------------------------

    def clone(self, url: str, repo_dir: str | Path, branch: str, token: CancelToken | None = None) -> None:
        repo_dir = Path(repo_dir)
        repo_dir.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning %s into %s", url, repo_dir)
        self._run_git(
            ["clone", "--branch", branch, "--single-branch", authenticated_url(url), str(repo_dir)],
            token=token,
        )

    def sync(self, repo_dir: str | Path, branch: str, token: CancelToken | None = None) -> None:
        """Make *repo_dir* match ``origin/<branch>`` exactly, dropping local changes."""
        logger.debug("Syncing %s to origin/%s", repo_dir, branch)
        self._run_git(["fetch", "--prune", "origin", branch], cwd=repo_dir, token=token)
        self._run_git(["checkout", "-B", branch, f"origin/{branch}"], cwd=repo_dir, token=token)
        self._run_git(["reset", "--hard", f"origin/{branch}"], cwd=repo_dir, token=token)
        self._run_git(["clean", "-fdx"], cwd=repo_dir, token=token)

    def ensure_working_copy(
        self,
        url: str,
        repo_dir: str | Path,
        branch: str,
        token: CancelToken | None = None,
    ) -> None:
        """Sync *repo_dir* with ``origin/<branch>``, cloning afresh when it is not a usable repository.

        A directory without ``.git`` (a clone killed part way) or one whose
        sync fails with a retryable error is removed and cloned again.
        """
        repo_dir = Path(repo_dir)
        if (repo_dir / ".git").is_dir():
            try:
                self._run_git(["remote", "set-url", "origin", authenticated_url(url)], cwd=repo_dir, token=token)
                self.sync(repo_dir, branch, token=token)
                return
            except GitError as exc:
                if not exc.retryable:
                    raise
                logger.warning("Sync of %s failed (%s), cloning again", repo_dir, exc)
        if repo_dir.exists():
            logger.info("Removing unusable working copy at %s", repo_dir)
            shutil.rmtree(repo_dir)
        self.clone(url, repo_dir, branch, token=token)

    def current_fingerprint(self, repo_dir: str | Path, token: CancelToken | None = None) -> str:
        return self._run_git(["rev-parse", "HEAD"], cwd=repo_dir, token=token).strip()

    def remote_fingerprint(self, url: str, branch: str, token: CancelToken | None = None) -> str:
        output = self._run_git(["ls-remote", authenticated_url(url), f"refs/heads/{branch}"], token=token)
        line = output.strip().splitlines()[0] if output.strip() else ""
        if not line:
            raise GitError(f"branch {branch} not found on {url}", retryable=False)
        return line.split()[0]

    def has_changes(self, repo_dir: str | Path, token: CancelToken | None = None) -> bool:
        return bool(self._run_git(["status", "--porcelain"], cwd=repo_dir, token=token).strip())

    def changed_files(self, repo_dir: str | Path, token: CancelToken | None = None) -> list[str]:
        output = self._run_git(["status", "--porcelain"], cwd=repo_dir, token=token)
        return [line[3:] for line in output.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def commit_and_push(
        self,
        repo_dir: str | Path,
        branch: str,
        message: str,
        token: CancelToken | None = None,
    ) -> None:
        self._run_git(["checkout", "-B", branch], cwd=repo_dir, token=token)
        self._run_git(["add", "--all"], cwd=repo_dir, token=token)
        self._run_git(self._identity() + ["commit", "-m", message], cwd=repo_dir, token=token)
        self._push(repo_dir, branch, token)

    def create_empty_commit_and_push(
        self,
        repo_dir: str | Path,
        branch: str,
        message: str,
        token: CancelToken | None = None,
    ) -> None:
        self._run_git(["checkout", "-B", branch], cwd=repo_dir, token=token)
        self._run_git(self._identity() + ["commit", "--allow-empty", "-m", message], cwd=repo_dir, token=token)
        self._push(repo_dir, branch, token)

    def _push(self, repo_dir: str | Path, branch: str, token: CancelToken | None) -> None:
        self._run_git(["push", "--force", "origin", f"{branch}:{branch}"], cwd=repo_dir, token=token)
        logger.info("Pushed branch %s from %s", branch, Path(repo_dir).name)
