"""Operator-facing output: live progress, run summary, cache status, listings and the JSON report."""

import json
import threading
import time
from pathlib import Path

from rich.console import Console
from rich.table import Table

from discovery import RepositoryTask
from result_cache import Cache
from scheduler import Summary
from settings import Settings

console = Console()

_STATUS_STYLE = {
    "queued": "[dim]queued[/dim]",
    "running": "[yellow]running[/yellow]",
    "clean": "[green]clean[/green]",
    "issues_found": "[magenta]issues found[/magenta]",
    "skipped": "[blue]skipped[/blue]",
    "error": "[red]error[/red]",
}


def _format_duration(seconds: float) -> str:
    """Format elapsed seconds as 'Xm YYs' or 'Xs'."""
    if seconds < 60:
        return f"{seconds:.0f}s"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    return f"{mins}m {secs:02d}s"


# ---------------------------------------------------------------------------
# Live progress
# ---------------------------------------------------------------------------


class RunProgress:
    """Track per-repository state from scheduler events and render it as a table."""

    def __init__(self, tasks: list[RepositoryTask]):
        self._lock = threading.Lock()
        self.status = {t.name: "queued" for t in tasks}
        self.started: dict[str, float] = {}
        self.durations: dict[str, float] = {}
        self.notes: dict[str, str] = {}

    def handle_event(self, event_type: str, payload: dict) -> None:
        repo = payload.get("repo")
        with self._lock:
            if event_type == "task_started" and repo:
                self.status[repo] = "running"
                self.started[repo] = time.monotonic()
            elif event_type == "task_finished" and repo:
                self.status[repo] = payload.get("status", "error")
                self.durations[repo] = payload.get("duration", 0.0)
                self.notes[repo] = payload.get("artifact") or payload.get("error") or payload.get("message") or ""

    def build_table(self) -> Table:
        table = Table(title="Cookstyle Runner", expand=True)
        table.add_column("Repository", style="cyan", no_wrap=True)
        table.add_column("Status", justify="center")
        table.add_column("Duration", justify="right")
        table.add_column("Details", style="white")

        now = time.monotonic()
        with self._lock:
            for repo, status in self.status.items():
                if repo in self.durations:
                    duration = _format_duration(self.durations[repo])
                elif repo in self.started:
                    duration = f"[yellow]{_format_duration(now - self.started[repo])}[/yellow]"
                else:
                    duration = ""
                table.add_row(repo, _STATUS_STYLE.get(status, status), duration, self.notes.get(repo, ""))
            done = len(self.durations)
            running = sum(1 for s in self.status.values() if s == "running")
        table.caption = f"Total: {len(self.status)}  Running: {running}  Done: {done}"
        return table


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def print_summary(summary: Summary, cache_stats: dict | None = None, out: Console | None = None) -> None:
    out = out or console
    out.print()
    out.rule("[bold green]Cookstyle Run Complete")
    out.print(f"  Total:        {summary.total}")
    out.print(f"  Clean:        {summary.clean}")
    out.print(f"  Issues found: {summary.issues_found}")
    out.print(f"  Skipped:      {summary.skipped} ({summary.cache_hits} from cache)")
    out.print(f"  Errors:       {summary.errored}")
    out.print(f"  Elapsed:      {_format_duration(summary.elapsed)}")
    for artifact in summary.artifacts:
        kind = "PR" if artifact.kind.value == "pull_request" else "Issue"
        out.print(f"  {kind}: {artifact.url}")
    if summary.failures:
        out.print("[bold red]Failures:[/bold red]")
        for repo, detail in sorted(summary.failures.items()):
            out.print(f"  [red]{repo}[/red]: {detail}")
    if cache_stats:
        out.print(
            f"  Cache: {cache_stats['cache_hits']} hit(s), {cache_stats['cache_misses']} miss(es), "
            f"{cache_stats['cache_hit_rate']}% hit rate, ~{_format_duration(cache_stats['estimated_time_saved'])} saved"
        )


def print_cache_status(cache: Cache, fmt: str = "text", out: Console | None = None) -> None:
    out = out or console
    stats = cache.table_stats()
    if fmt == "json":
        stats["repositories"] = {name: e.to_dict() for name, e in sorted(cache.entries().items())}
        out.print_json(json.dumps(stats))
        return
    if fmt == "table":
        table = Table(title="Cache Status")
        table.add_column("Repository", style="cyan")
        table.add_column("Fingerprint")
        table.add_column("Issues", justify="center")
        table.add_column("Recorded", justify="right")
        for name, entry in sorted(cache.entries().items()):
            table.add_row(
                name,
                entry.commit_fingerprint[:12],
                "[red]yes[/red]" if entry.had_issues else "[green]no[/green]",
                entry.recorded_at.strftime("%Y-%m-%d %H:%M"),
            )
        table.caption = f"Last updated: {stats['last_updated'] or 'never'}"
        out.print(table)
        return
    out.rule("[bold cyan]Cache Status")
    out.print(f"  File:              {stats['cache_file']}")
    out.print(f"  Repositories:      {stats['total_repositories']}")
    out.print(f"  With issues:       {stats['repositories_with_issues']}")
    out.print(f"  Average duration:  {stats['average_processing_duration']}s")
    out.print(f"  Last updated:      {stats['last_updated'] or 'never'}")


def print_repositories(tasks: list[RepositoryTask], fmt: str = "text", out: Console | None = None) -> None:
    out = out or console
    if fmt == "json":
        out.print_json(json.dumps([{"name": t.name, "owner": t.owner, "url": t.clone_url} for t in tasks]))
        return
    if fmt == "table":
        table = Table(title=f"Repositories ({len(tasks)})")
        table.add_column("Name", style="cyan")
        table.add_column("Clone URL")
        for t in tasks:
            table.add_row(t.name, t.clone_url)
        out.print(table)
        return
    for t in tasks:
        out.print(t.name)
    out.print(f"[dim]{len(tasks)} repositories[/dim]")


def print_config(settings: Settings, fmt: str = "text", out: Console | None = None) -> None:
    out = out or console
    data = settings.to_dict()
    if fmt == "json":
        out.print_json(json.dumps(data))
        return
    table = Table(title="Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in data.items():
        shown = ", ".join(value) if isinstance(value, list) else str(value)
        table.add_row(key, shown)
    out.print(table)


def write_report(summary: Summary, path: str | Path, cache_stats: dict | None = None) -> Path:
    """Write the run summary as JSON to *path* and return the path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    document = summary.to_dict()
    if cache_stats is not None:
        document["cache"] = cache_stats
    path.write_text(json.dumps(document, indent=2) + "\n")
    return path
