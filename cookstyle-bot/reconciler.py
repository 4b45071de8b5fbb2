"""Create-or-update of the one open pull request or issue per (repository, branch)."""

import logging

from commands import CancelToken
from github_api import Artifact, ArtifactExistsError, ArtifactKind, GitHubClient, branch_marker

logger = logging.getLogger(__name__)


class ArtifactReconciler:
    """Converge the remote onto a single open artifact per (repo, branch, kind).

    The protocol is search, then create; a create refused as a duplicate
    falls back to search-and-update. Labels are only ever added.
    """

    def __init__(self, client: GitHubClient, base_branch: str = "main"):
        self.client = client
        self.base_branch = base_branch

    def reconcile(
        self,
        repo: str,
        branch: str,
        kind: ArtifactKind,
        title: str,
        body: str,
        labels: list[str],
        token: CancelToken | None = None,
    ) -> Artifact:
        """Return the open artifact for *branch*, updated with *title*, *body* and *labels*.

        Raises GitHubError if the platform cannot be reached or refuses the
        change for a reason other than a duplicate.
        """
        kind = ArtifactKind(kind)
        if kind == ArtifactKind.ISSUE:
            body = self._with_marker(body, branch)

        existing = self._find_existing(repo, branch, kind, token)
        if existing is not None:
            return self._update(existing, title, body, labels, token)

        try:
            artifact = self._create(repo, branch, kind, title, body, labels, token)
        except ArtifactExistsError as exc:
            logger.info("%s for %s:%s was created concurrently, updating it", kind.value, repo, branch)
            existing = self._find_existing(repo, branch, kind, token)
            if existing is None:
                # not yet visible to search; a later attempt will find it
                raise ArtifactExistsError(
                    f"{kind.value} for {repo}:{branch} already exists but was not found by search",
                    status=exc.status,
                    retryable=True,
                ) from exc
            return self._update(existing, title, body, labels, token)
        return artifact

    def _find_existing(
        self,
        repo: str,
        branch: str,
        kind: ArtifactKind,
        token: CancelToken | None,
    ) -> Artifact | None:
        found = self.client.search_open_artifacts(repo, kind, branch, token=token)
        if not found:
            return None
        if len(found) > 1:
            logger.warning(
                "%d open %s artifacts for %s:%s, updating #%d",
                len(found), kind.value, repo, branch, found[0].number,
            )
        return found[0]

    def _create(
        self,
        repo: str,
        branch: str,
        kind: ArtifactKind,
        title: str,
        body: str,
        labels: list[str],
        token: CancelToken | None,
    ) -> Artifact:
        if kind == ArtifactKind.PULL_REQUEST:
            artifact = self.client.create_pull_request(repo, branch, self.base_branch, title, body, token=token)
            self.client.add_labels(repo, artifact.number, list(labels), token=token)
        else:
            artifact = self.client.create_issue(repo, title, body, labels=list(labels), token=token)
        return artifact

    def _update(
        self,
        existing: Artifact,
        title: str,
        body: str,
        labels: list[str],
        token: CancelToken | None,
    ) -> Artifact:
        if existing.kind == ArtifactKind.PULL_REQUEST:
            artifact = self.client.update_pull_request(existing.repo, existing.number, title, body, token=token)
        else:
            artifact = self.client.update_issue(existing.repo, existing.number, title, body, token=token)
        self._merge_labels(existing, labels, token)
        logger.info("Updated %s #%d in %s", existing.kind.value, existing.number, existing.repo)
        return artifact

    def _merge_labels(self, artifact: Artifact, labels: list[str], token: CancelToken | None) -> None:
        current = set(self.client.list_labels(artifact.repo, artifact.number, token=token))
        missing = [label for label in dict.fromkeys(labels) if label not in current]
        if missing:
            self.client.add_labels(artifact.repo, artifact.number, missing, token=token)
            logger.debug("Added labels %s to #%d", ", ".join(missing), artifact.number)

    @staticmethod
    def _with_marker(body: str, branch: str) -> str:
        marker = branch_marker(branch)
        if marker in body:
            return body
        return f"{body.rstrip()}\n\n{marker}\n"
