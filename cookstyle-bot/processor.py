"""Per-repository pipeline: sync, analyze, decide, commit, reconcile."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from changelog import update_changelog
from commands import CancelToken
from cookstyle import Cookstyle, Report
from discovery import RepositoryTask, should_skip_repository
from formatter import (
    COMMIT_MESSAGE,
    MANUAL_COMMIT_MESSAGE,
    changelog_entry,
    issue_description,
    pr_description,
)
from git_ops import GitClient
from github_api import Artifact, ArtifactKind
from reconciler import ArtifactReconciler
from result_cache import Cache
from settings import Settings

if TYPE_CHECKING:
    from retry_policy import RetryState

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    CLEAN = "clean"
    ISSUES_FOUND = "issues_found"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class ProcessingOutcome:
    status: OutcomeStatus
    repo: str = ""
    artifact: Artifact | None = None
    error_detail: str | None = None
    retryable: bool = True
    had_issues: bool = False
    fingerprint: str | None = None
    duration: float = 0.0
    message: str = ""
    cached: bool = False
    auto_corrected: int = 0
    manual: int = 0

    @property
    def is_error(self) -> bool:
        return self.status == OutcomeStatus.ERROR

    @classmethod
    def failed(cls, detail: str, retryable: bool = True, repo: str = "") -> ProcessingOutcome:
        return cls(status=OutcomeStatus.ERROR, repo=repo, error_detail=detail, retryable=retryable)

    def to_dict(self) -> dict:
        return {
            "repo": self.repo,
            "status": self.status.value,
            "had_issues": self.had_issues,
            "cached": self.cached,
            "fingerprint": self.fingerprint,
            "duration": round(self.duration, 2),
            "message": self.message,
            "error": self.error_detail,
            "artifact": self.artifact.url if self.artifact else None,
            "auto_corrected": self.auto_corrected,
            "manual": self.manual,
        }


class RepositoryProcessor:
    """Drive one repository through the pipeline.

    Collaborators are injected so tests can hand in fakes. Any exception
    raised by a step is turned into an ``error`` outcome; nothing escapes
    :meth:`process`.
    """

    def __init__(
        self,
        settings: Settings,
        git: GitClient,
        linter: Cookstyle,
        reconciler: ArtifactReconciler,
        cache: Cache | None = None,
    ):
        self.settings = settings
        self.git = git
        self.linter = linter
        self.reconciler = reconciler
        self.cache = cache

    def process(
        self,
        task: RepositoryTask,
        workdir: str | Path,
        state: RetryState | None = None,
        token: CancelToken | None = None,
    ) -> ProcessingOutcome:
        started = time.monotonic()
        attempt = state.attempt_number if state is not None else 1
        logger.info("Processing %s (attempt %d)", task.full_name, attempt)
        try:
            outcome = self._run(task, Path(workdir), token)
        except Exception as exc:
            retryable = getattr(exc, "retryable", True)
            if token is not None and (token.expired or token.cancelled):
                retryable = False
            logger.error("%s failed: %s", task.name, exc)
            outcome = ProcessingOutcome.failed(f"{type(exc).__name__}: {exc}", retryable=retryable)
        outcome.repo = task.name
        outcome.duration = time.monotonic() - started
        return outcome

    # ------------------------------------------------------------------
    # States
    # ------------------------------------------------------------------

    def _run(self, task: RepositoryTask, workdir: Path, token: CancelToken | None) -> ProcessingOutcome:
        s = self.settings
        if should_skip_repository(task.name, s.include_repos, s.exclude_repos):
            logger.info("Skipping %s: excluded by include/exclude lists", task.name)
            return ProcessingOutcome(status=OutcomeStatus.SKIPPED, message="excluded by configuration")

        cached = self._check_cache(task, token)
        if cached is not None:
            return cached

        started = time.monotonic()
        self.git.ensure_working_copy(task.clone_url, workdir, s.default_branch, token=token)
        fingerprint = self.git.current_fingerprint(workdir, token=token)

        report = self.linter.analyze(workdir, token=token)
        if report.count == 0:
            outcome = ProcessingOutcome(status=OutcomeStatus.CLEAN, fingerprint=fingerprint, message="no offenses")
        else:
            outcome = self._decide(task, workdir, report, token)
            outcome.fingerprint = fingerprint

        self._record(task, outcome, report, time.monotonic() - started)
        return outcome

    def _check_cache(self, task: RepositoryTask, token: CancelToken | None) -> ProcessingOutcome | None:
        s = self.settings
        if self.cache is None or not s.use_cache:
            return None
        if s.force_refresh or task.name in s.force_refresh_repos:
            logger.debug("Cache bypassed for %s (force refresh)", task.name)
            return None

        remote = self.git.remote_fingerprint(task.clone_url, s.default_branch, token=token)
        if not self.cache.is_fresh(task.name, remote, s.cache_max_age):
            return None
        entry = self.cache.get(task.name)
        logger.info("Cache hit for %s at %s", task.name, remote[:12])
        return ProcessingOutcome(
            status=OutcomeStatus.SKIPPED,
            cached=True,
            had_issues=entry.had_issues if entry else False,
            fingerprint=remote,
            message=f"cached: {entry.result_summary}" if entry else "cached",
        )

    def _decide(
        self,
        task: RepositoryTask,
        workdir: Path,
        report: Report,
        token: CancelToken | None,
    ) -> ProcessingOutcome:
        s = self.settings
        changed = False
        if report.auto_correctable_count:
            self.linter.autocorrect(workdir, token=token)
            changed = self.git.has_changes(workdir, token=token)
            if not changed:
                logger.info("%s: correctable offenses reported but autocorrect changed nothing", task.name)

        outcome = ProcessingOutcome(
            status=OutcomeStatus.ISSUES_FOUND,
            had_issues=True,
            auto_corrected=report.auto_correctable_count if changed else 0,
            manual=report.manual_count if changed else report.count,
            message=report.summary(),
        )
        if changed:
            outcome.artifact = self._auto_fix(task, workdir, report, token)
        else:
            outcome.artifact = self._manual_fix(task, workdir, report, token)
        return outcome

    def _auto_fix(
        self,
        task: RepositoryTask,
        workdir: Path,
        report: Report,
        token: CancelToken | None,
    ) -> Artifact | None:
        s = self.settings
        if s.dry_run:
            files = self.git.changed_files(workdir, token=token)
            logger.info("[dry-run] %s: would commit %d file(s) and open a pull request", task.name, len(files))
            return None

        if s.manage_changelog:
            update_changelog(workdir, s.changelog_location, s.changelog_marker, changelog_entry(report))
        self.git.commit_and_push(workdir, s.branch_name, COMMIT_MESSAGE, token=token)
        body = pr_description(s.pr_body_header, s.topics, report, report.auto_correctable_count)
        return self.reconciler.reconcile(
            task.full_name, s.branch_name, ArtifactKind.PULL_REQUEST, s.pr_title, body, s.labels, token=token,
        )

    def _manual_fix(
        self,
        task: RepositoryTask,
        workdir: Path,
        report: Report,
        token: CancelToken | None,
    ) -> Artifact | None:
        s = self.settings
        if not s.create_manual_fix_artifacts:
            logger.info("%s: %d offense(s) need manual fixes; manual-fix artifacts disabled", task.name, report.count)
            return None
        kind = ArtifactKind(s.manual_fix_kind)
        if s.dry_run:
            logger.info("[dry-run] %s: would open a %s for %d manual offense(s)", task.name, kind.value, report.count)
            return None

        if kind == ArtifactKind.PULL_REQUEST:
            self.git.create_empty_commit_and_push(workdir, s.branch_name, MANUAL_COMMIT_MESSAGE, token=token)
        body = issue_description(s.pr_body_header, s.topics, report, s.branch_name)
        return self.reconciler.reconcile(
            task.full_name, s.branch_name, kind, s.issue_title, body, s.labels, token=token,
        )

    def _record(self, task: RepositoryTask, outcome: ProcessingOutcome, report: Report, duration: float) -> None:
        if self.cache is None or not self.settings.use_cache or self.settings.dry_run:
            return
        self.cache.put(task.name, outcome.fingerprint or "", outcome.had_issues, report.summary(), duration)
