"""Tests for the create-or-update artifact reconciler."""

import pytest

from github_api import Artifact, ArtifactExistsError, ArtifactKind, GitHubError, branch_marker
from reconciler import ArtifactReconciler

REPO = "acme/nginx"
BRANCH = "cookstyle-fixes"


class FakeGitHub:
    """In-memory stand-in for GitHubClient holding open pull requests and issues."""

    def __init__(self) -> None:
        self.records: dict[int, dict] = {}
        self.next_number = 1
        self.calls: list[str] = []
        self.race_on_create = False

    def _add(self, repo: str, kind: ArtifactKind, title: str, body: str, branch: str | None, labels: list[str]) -> Artifact:
        number = self.next_number
        self.next_number += 1
        self.records[number] = {
            "repo": repo, "kind": kind, "title": title, "body": body,
            "branch": branch, "labels": list(labels), "open": True,
        }
        return self._artifact(number)

    def _artifact(self, number: int) -> Artifact:
        r = self.records[number]
        return Artifact(r["repo"], number, f"https://github.com/{r['repo']}/{number}", r["title"], r["kind"])

    def open_artifacts(self, kind: ArtifactKind) -> list[int]:
        return [n for n, r in self.records.items() if r["open"] and r["kind"] == kind]

    def search_open_artifacts(self, repo, kind, branch, token=None):
        self.calls.append("search")
        found = []
        for number, r in self.records.items():
            if not r["open"] or r["repo"] != repo or r["kind"] != kind:
                continue
            if kind == ArtifactKind.PULL_REQUEST and r["branch"] == branch:
                found.append(self._artifact(number))
            if kind == ArtifactKind.ISSUE and branch_marker(branch) in r["body"]:
                found.append(self._artifact(number))
        return found

    def _maybe_race(self, repo, kind, branch, body):
        if self.race_on_create:
            self.race_on_create = False
            self._add(repo, kind, "created elsewhere", body, branch, ["other"])
            raise ArtifactExistsError("Validation Failed (HTTP 422): already exists", status=422)

    def create_pull_request(self, repo, branch, base, title, body, token=None):
        self.calls.append("create_pr")
        self._maybe_race(repo, ArtifactKind.PULL_REQUEST, branch, body)
        return self._add(repo, ArtifactKind.PULL_REQUEST, title, body, branch, [])

    def create_issue(self, repo, title, body, labels=None, token=None):
        self.calls.append("create_issue")
        self._maybe_race(repo, ArtifactKind.ISSUE, None, body)
        return self._add(repo, ArtifactKind.ISSUE, title, body, None, labels or [])

    def update_pull_request(self, repo, number, title, body, token=None):
        self.calls.append("update_pr")
        self.records[number].update(title=title, body=body)
        return self._artifact(number)

    def update_issue(self, repo, number, title, body, token=None):
        self.calls.append("update_issue")
        self.records[number].update(title=title, body=body)
        return self._artifact(number)

    def add_labels(self, repo, number, labels, token=None):
        self.calls.append("add_labels")
        for label in labels:
            if label not in self.records[number]["labels"]:
                self.records[number]["labels"].append(label)

    def list_labels(self, repo, number, token=None):
        return list(self.records[number]["labels"])


def make_reconciler() -> tuple[ArtifactReconciler, FakeGitHub]:
    fake = FakeGitHub()
    return ArtifactReconciler(fake, base_branch="main"), fake


# ---------------------------------------------------------------------------
# Pull requests
# ---------------------------------------------------------------------------


def test_creates_pull_request_when_none_open() -> None:
    reconciler, fake = make_reconciler()
    artifact = reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes", "body", ["cookstyle"])
    assert artifact.kind == ArtifactKind.PULL_REQUEST
    assert fake.open_artifacts(ArtifactKind.PULL_REQUEST) == [artifact.number]
    assert fake.records[artifact.number]["labels"] == ["cookstyle"]


def test_second_reconcile_updates_first_pull_request() -> None:
    reconciler, fake = make_reconciler()
    first = reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes", "v1", ["cookstyle"])
    second = reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes again", "v2", ["cookstyle"])
    assert second.number == first.number
    assert fake.open_artifacts(ArtifactKind.PULL_REQUEST) == [first.number]
    assert fake.records[first.number]["title"] == "Fixes again"
    assert fake.records[first.number]["body"] == "v2"
    assert fake.calls.count("create_pr") == 1


def test_different_branch_gets_its_own_pull_request() -> None:
    reconciler, fake = make_reconciler()
    a = reconciler.reconcile(REPO, "branch-a", ArtifactKind.PULL_REQUEST, "A", "a", [])
    b = reconciler.reconcile(REPO, "branch-b", ArtifactKind.PULL_REQUEST, "B", "b", [])
    assert a.number != b.number


def test_create_race_falls_back_to_update() -> None:
    reconciler, fake = make_reconciler()
    fake.race_on_create = True
    artifact = reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes", "mine", ["cookstyle"])
    assert fake.open_artifacts(ArtifactKind.PULL_REQUEST) == [artifact.number]
    record = fake.records[artifact.number]
    assert record["body"] == "mine"
    assert sorted(record["labels"]) == ["cookstyle", "other"]


def test_exists_error_without_match_is_raised_as_retryable() -> None:
    reconciler, fake = make_reconciler()

    def refuse(*args, **kwargs):
        raise ArtifactExistsError("already exists")

    fake.create_pull_request = refuse
    with pytest.raises(ArtifactExistsError) as excinfo:
        reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes", "body", [])
    assert excinfo.value.retryable is True
    assert fake.calls.count("search") == 2


def test_other_api_errors_propagate() -> None:
    reconciler, fake = make_reconciler()

    def fail(*args, **kwargs):
        raise GitHubError("Server Error (HTTP 502)", status=502)

    fake.search_open_artifacts = fail
    with pytest.raises(GitHubError):
        reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes", "body", [])


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------


def test_labels_are_only_added() -> None:
    reconciler, fake = make_reconciler()
    first = reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes", "v1", ["cookstyle", "automated"])
    fake.records[first.number]["labels"].append("needs-review")
    reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes", "v2", ["cookstyle"])
    assert sorted(fake.records[first.number]["labels"]) == ["automated", "cookstyle", "needs-review"]


def test_no_label_call_when_nothing_missing() -> None:
    reconciler, fake = make_reconciler()
    reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes", "v1", ["cookstyle"])
    fake.calls.clear()
    reconciler.reconcile(REPO, BRANCH, ArtifactKind.PULL_REQUEST, "Fixes", "v2", ["cookstyle"])
    assert "add_labels" not in fake.calls


# ---------------------------------------------------------------------------
# Issues
# ---------------------------------------------------------------------------


def test_issue_body_gets_branch_marker() -> None:
    reconciler, fake = make_reconciler()
    artifact = reconciler.reconcile(REPO, BRANCH, ArtifactKind.ISSUE, "Manual", "please fix", ["cookstyle"])
    assert branch_marker(BRANCH) in fake.records[artifact.number]["body"]


def test_second_issue_reconcile_updates_first() -> None:
    reconciler, fake = make_reconciler()
    first = reconciler.reconcile(REPO, BRANCH, ArtifactKind.ISSUE, "Manual", "v1", ["cookstyle"])
    second = reconciler.reconcile(REPO, BRANCH, ArtifactKind.ISSUE, "Manual", "v2", ["cookstyle"])
    assert first.number == second.number
    assert fake.open_artifacts(ArtifactKind.ISSUE) == [first.number]
    assert fake.records[first.number]["body"].startswith("v2")


def test_kind_accepts_plain_string() -> None:
    reconciler, fake = make_reconciler()
    artifact = reconciler.reconcile(REPO, BRANCH, "issue", "Manual", "body", [])
    assert artifact.kind == ArtifactKind.ISSUE
