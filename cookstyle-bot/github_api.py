"""GitHub REST operations used by the runner, issued through ``gh api``.

``gh`` owns authentication (``GH_TOKEN`` or a stored login), so this module
never handles credentials itself. Repositories are addressed as
``owner/name``.

Issues have no source branch. An issue is tied to its (repository, branch)
pair by a hidden marker line in its body, see :func:`branch_marker`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum

from commands import CancelToken, CommandError, run_command

log = logging.getLogger(__name__)

_HTTP_STATUS = re.compile(r"\(HTTP (\d{3})\)")
_MARKER_TEMPLATE = "<!-- cookstyle-runner:branch={branch} -->"


class ArtifactKind(str, Enum):
    PULL_REQUEST = "pull_request"
    ISSUE = "issue"


@dataclass(frozen=True)
class Artifact:
    repo: str
    number: int
    url: str
    title: str
    kind: ArtifactKind


class GitHubError(RuntimeError):
    """Raised when a ``gh api`` call fails."""

    def __init__(self, message: str, status: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class AuthenticationError(GitHubError):
    """Raised when gh has no usable credentials or the token is refused."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message, status=status, retryable=False)


class ArtifactExistsError(GitHubError):
    """Raised when GitHub refuses a create because the artifact already exists."""

    def __init__(self, message: str, status: int | None = None, retryable: bool = False):
        super().__init__(message, status=status, retryable=retryable)


def branch_marker(branch: str) -> str:
    return _MARKER_TEMPLATE.format(branch=branch)


def classify_error(stderr: str) -> GitHubError:
    """Map gh stderr to the matching GitHubError subclass.

    5xx, 429, rate limiting and failures without an HTTP status (network)
    are retryable. Other 4xx responses are terminal.
    """
    text = stderr.strip()
    lowered = text.lower()
    match = _HTTP_STATUS.search(text)
    status = int(match.group(1)) if match else None

    if "already exists" in lowered:
        return ArtifactExistsError(text, status=status)
    if "rate limit" in lowered or status == 429:
        return GitHubError(text, status=status, retryable=True)
    if status in (401, 403) or "gh auth login" in lowered:
        return AuthenticationError(text, status=status)
    if status is None or status >= 500:
        return GitHubError(text, status=status, retryable=True)
    return GitHubError(text, status=status, retryable=False)


def _parse_json_stream(text: str) -> list:
    """Decode concatenated JSON documents (``gh api --paginate`` output), flattening arrays."""
    decoder = json.JSONDecoder()
    items: list = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        value, end = decoder.raw_decode(text, pos)
        if isinstance(value, list):
            items.extend(value)
        else:
            items.append(value)
        pos = end
        while pos < len(text) and text[pos].isspace():
            pos += 1
    return items


class GitHubClient:
    def __init__(self, timeout: float | None = 60, executable: str = "gh"):
        self.timeout = timeout
        self.executable = executable

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _gh(
        self,
        args: list[str],
        payload: dict | None = None,
        token: CancelToken | None = None,
    ) -> str:
        """Run a ``gh`` subcommand, raising GitHubError on non-zero exit."""
        cmd = [self.executable] + args
        if payload is not None:
            cmd += ["--input", "-"]
        try:
            result = run_command(
                cmd,
                timeout=self.timeout,
                token=token,
                input_text=json.dumps(payload) if payload is not None else None,
            )
        except CommandError as exc:
            if not exc.retryable:
                raise
            raise GitHubError(f"gh command failed: {exc}") from exc
        if result.returncode != 0:
            raise classify_error(result.stderr or result.stdout)
        return result.stdout

    def _api(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        token: CancelToken | None = None,
    ):
        output = self._gh(["api", "-X", method, path], payload=payload, token=token)
        return json.loads(output) if output.strip() else None

    def _paginate(self, path: str, token: CancelToken | None = None) -> list:
        return _parse_json_stream(self._gh(["api", "--paginate", "-X", "GET", path], token=token))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def check_auth(self) -> None:
        """Raise AuthenticationError unless gh has a working login."""
        try:
            self._gh(["auth", "status"])
        except GitHubError as exc:
            raise AuthenticationError(f"GitHub authentication failed: {exc}") from exc

    def search_repositories(self, owner: str, topics: list[str] | None = None) -> list[str]:
        """Return clone URLs of repositories owned by *owner* carrying every topic in *topics*."""
        query = " ".join([f"org:{owner}"] + [f"topic:{t}" for t in topics or []])
        output = self._gh([
            "api", "--paginate", "-X", "GET", "search/repositories",
            "-f", f"q={query}",
            "-f", "per_page=100",
            "--jq", ".items[].clone_url",
        ])
        urls = [line.strip() for line in output.splitlines() if line.strip()]
        log.info("Found %d repositories for %r", len(urls), query)
        return urls

    def search_open_artifacts(
        self,
        repo: str,
        kind: ArtifactKind,
        branch: str,
        token: CancelToken | None = None,
    ) -> list[Artifact]:
        """Return open artifacts of *kind* in *repo* tied to *branch*, oldest first."""
        if kind == ArtifactKind.PULL_REQUEST:
            owner = repo.split("/", 1)[0]
            items = self._paginate(f"repos/{repo}/pulls?state=open&head={owner}:{branch}&per_page=100", token)
            items = [i for i in items if (i.get("head") or {}).get("ref", branch) == branch]
        else:
            marker = branch_marker(branch)
            items = self._paginate(f"repos/{repo}/issues?state=open&per_page=100", token)
            items = [i for i in items if "pull_request" not in i and marker in (i.get("body") or "")]
        artifacts = [self._to_artifact(repo, kind, item) for item in items]
        return sorted(artifacts, key=lambda a: a.number)

    def create_pull_request(
        self,
        repo: str,
        branch: str,
        base: str,
        title: str,
        body: str,
        token: CancelToken | None = None,
    ) -> Artifact:
        data = self._api(
            "POST", f"repos/{repo}/pulls",
            {"title": title, "body": body, "head": branch, "base": base},
            token,
        )
        artifact = self._to_artifact(repo, ArtifactKind.PULL_REQUEST, data)
        log.info("Created pull request %s", artifact.url)
        return artifact

    def update_pull_request(
        self,
        repo: str,
        number: int,
        title: str,
        body: str,
        token: CancelToken | None = None,
    ) -> Artifact:
        data = self._api("PATCH", f"repos/{repo}/pulls/{number}", {"title": title, "body": body}, token)
        return self._to_artifact(repo, ArtifactKind.PULL_REQUEST, data)

    def create_issue(
        self,
        repo: str,
        title: str,
        body: str,
        labels: list[str] | None = None,
        token: CancelToken | None = None,
    ) -> Artifact:
        data = self._api(
            "POST", f"repos/{repo}/issues",
            {"title": title, "body": body, "labels": list(labels or [])},
            token,
        )
        artifact = self._to_artifact(repo, ArtifactKind.ISSUE, data)
        log.info("Created issue %s", artifact.url)
        return artifact

    def update_issue(
        self,
        repo: str,
        number: int,
        title: str,
        body: str,
        token: CancelToken | None = None,
    ) -> Artifact:
        data = self._api("PATCH", f"repos/{repo}/issues/{number}", {"title": title, "body": body}, token)
        return self._to_artifact(repo, ArtifactKind.ISSUE, data)

    def add_labels(self, repo: str, number: int, labels: list[str], token: CancelToken | None = None) -> None:
        if not labels:
            return
        self._api("POST", f"repos/{repo}/issues/{number}/labels", {"labels": list(labels)}, token)

    def list_labels(self, repo: str, number: int, token: CancelToken | None = None) -> list[str]:
        items = self._paginate(f"repos/{repo}/issues/{number}/labels?per_page=100", token)
        return [item["name"] for item in items]

    @staticmethod
    def _to_artifact(repo: str, kind: ArtifactKind, data: dict) -> Artifact:
        return Artifact(
            repo=repo,
            number=int(data["number"]),
            url=data.get("html_url") or data.get("url", ""),
            title=data.get("title", ""),
            kind=kind,
        )
