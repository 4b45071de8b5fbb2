"""Fan repository tasks out over a bounded worker pool and aggregate their outcomes."""

import logging
import queue
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from commands import CancelToken
from discovery import RepositoryTask
from github_api import Artifact
from processor import OutcomeStatus, ProcessingOutcome, RepositoryProcessor
from retry_policy import RetryCoordinator, RetryState

log = logging.getLogger(__name__)

# Type alias for the optional event callback
EventCallback = Callable[[str, dict], None] | None


def _fire_event(on_event: EventCallback, event_type: str, payload: dict) -> None:
    """Invoke the event callback if set, logging and discarding any exception."""
    if on_event is None:
        return
    try:
        on_event(event_type, payload)
    except Exception as exc:  # pragma: no cover
        log.warning("on_event callback raised for %r: %s", event_type, exc)


@dataclass
class Summary:
    total: int = 0
    clean: int = 0
    issues_found: int = 0
    skipped: int = 0
    errored: int = 0
    cache_hits: int = 0
    artifacts: list[Artifact] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    outcomes: list[ProcessingOutcome] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def processed(self) -> int:
        return self.clean + self.issues_found

    def add(self, outcome: ProcessingOutcome) -> None:
        if outcome.status == OutcomeStatus.CLEAN:
            self.clean += 1
        elif outcome.status == OutcomeStatus.ISSUES_FOUND:
            self.issues_found += 1
        elif outcome.status == OutcomeStatus.SKIPPED:
            self.skipped += 1
        else:
            self.errored += 1
            self.failures[outcome.repo] = outcome.error_detail or "unknown error"
        if outcome.cached:
            self.cache_hits += 1
        if outcome.artifact is not None:
            self.artifacts.append(outcome.artifact)
        self.outcomes.append(outcome)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "processed": self.processed,
            "clean": self.clean,
            "issues_found": self.issues_found,
            "skipped": self.skipped,
            "errored": self.errored,
            "cache_hits": self.cache_hits,
            "elapsed": round(self.elapsed, 2),
            "artifacts": [
                {"repo": a.repo, "number": a.number, "url": a.url, "title": a.title, "kind": a.kind.value}
                for a in self.artifacts
            ],
            "failures": dict(self.failures),
            "repositories": [o.to_dict() for o in sorted(self.outcomes, key=lambda o: o.repo)],
        }


class _Accumulator:
    """The one place worker results are merged, under a lock."""

    def __init__(self, total: int):
        self._lock = threading.Lock()
        self._summary = Summary(total=total)

    def add(self, outcome: ProcessingOutcome) -> None:
        with self._lock:
            self._summary.add(outcome)

    def snapshot(self) -> Summary:
        with self._lock:
            return self._summary


class Scheduler:
    def __init__(
        self,
        processor: RepositoryProcessor,
        retry: RetryCoordinator,
        workspace_dir: str | Path,
        retry_count: int = 3,
        task_timeout: float | None = None,
        stop_event: threading.Event | None = None,
        on_event: EventCallback = None,
    ):
        self.processor = processor
        self.retry = retry
        self.workspace_dir = Path(workspace_dir)
        self.retry_count = retry_count
        self.task_timeout = task_timeout
        self.stop_event = stop_event or threading.Event()
        self.on_event = on_event

    def run(self, tasks: list[RepositoryTask], worker_count: int) -> Summary:
        """Process every task with at most *worker_count* concurrent workers.

        Returns a Summary holding exactly one outcome per task. Tasks still
        queued when the stop event is set are recorded as skipped.
        """
        started = time.monotonic()
        accumulator = _Accumulator(total=len(tasks))
        if not tasks:
            summary = accumulator.snapshot()
            _fire_event(self.on_event, "run_completed", summary.to_dict())
            return summary

        work: queue.Queue[RepositoryTask] = queue.Queue()
        for task in tasks:
            work.put(task)

        workers = max(1, min(worker_count, len(tasks)))
        log.info("Processing %d repositories with %d worker(s)", len(tasks), workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="repo-worker") as pool:
            futures = [pool.submit(self._worker_loop, worker_id, work, accumulator) for worker_id in range(1, workers + 1)]
            try:
                for future in futures:
                    future.result()
            except KeyboardInterrupt:
                log.warning("Interrupted, telling workers to stop")
                self.stop_event.set()
                raise

        summary = accumulator.snapshot()
        summary.elapsed = time.monotonic() - started
        _fire_event(self.on_event, "run_completed", summary.to_dict())
        return summary

    def _worker_loop(self, worker_id: int, work: "queue.Queue[RepositoryTask]", accumulator: _Accumulator) -> None:
        workdir_root = self.workspace_dir / f"worker-{worker_id}"
        while True:
            try:
                task = work.get_nowait()
            except queue.Empty:
                return
            try:
                if self.stop_event.is_set():
                    outcome = ProcessingOutcome(status=OutcomeStatus.SKIPPED, repo=task.name, message="run stopped")
                else:
                    try:
                        outcome = self._run_task(worker_id, task, workdir_root / task.name)
                    except Exception as exc:
                        log.exception("Worker %d failed on %s", worker_id, task.name)
                        outcome = ProcessingOutcome.failed(f"{type(exc).__name__}: {exc}", repo=task.name)
                accumulator.add(outcome)
                _fire_event(self.on_event, "task_finished", {"worker_id": worker_id, **outcome.to_dict()})
            finally:
                work.task_done()

    def _run_task(self, worker_id: int, task: RepositoryTask, workdir: Path) -> ProcessingOutcome:
        _fire_event(self.on_event, "task_started", {"repo": task.name, "worker_id": worker_id})
        token = CancelToken(self.stop_event, self.task_timeout)

        def body(t: RepositoryTask, state: RetryState) -> ProcessingOutcome:
            return self.processor.process(t, workdir, state=state, token=token)

        outcome = self.retry.attempt(task, self.retry_count, body)
        outcome.repo = task.name
        return outcome
