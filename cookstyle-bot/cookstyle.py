"""Run cookstyle against a working copy and parse its JSON report."""

import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path

from commands import CancelToken, CommandError, run_command

logger = logging.getLogger(__name__)

BASE_COMMAND = ["cookstyle", "--format", "json", "--display-cop-names"]
# cookstyle exits 0 (no offenses) or 1 (offenses found); anything else is a crash.
REPORT_EXIT_CODES = (0, 1)


class CookstyleError(RuntimeError):
    """Raised when cookstyle crashes or emits a report that cannot be parsed."""

    retryable = True


@dataclass(frozen=True)
class Finding:
    path: str
    correctable: bool
    message: str
    cop: str
    severity: str = "convention"
    line: int | None = None
    column: int | None = None

    @classmethod
    def from_offense(cls, path: str, offense: dict) -> "Finding":
        location = offense.get("location") or {}
        return cls(
            path=path,
            correctable=bool(offense.get("correctable")),
            message=" ".join(str(offense.get("message") or "").split()),
            cop=str(offense.get("cop_name") or "Unknown"),
            severity=str(offense.get("severity") or "convention"),
            line=location.get("start_line", location.get("line")),
            column=location.get("start_column", location.get("column")),
        )


@dataclass
class Report:
    findings: list[Finding] = field(default_factory=list)
    inspected_file_count: int = 0

    @property
    def count(self) -> int:
        return len(self.findings)

    @property
    def auto_correctable_count(self) -> int:
        return sum(1 for f in self.findings if f.correctable)

    @property
    def manual_count(self) -> int:
        return self.count - self.auto_correctable_count

    @property
    def manual_findings(self) -> list[Finding]:
        return [f for f in self.findings if not f.correctable]

    def findings_by_file(self) -> dict[str, list[Finding]]:
        grouped: dict[str, list[Finding]] = defaultdict(list)
        for finding in self.findings:
            grouped[finding.path].append(finding)
        return dict(grouped)

    def summary(self) -> str:
        return (
            f"{self.count} offense(s) in {self.inspected_file_count} file(s): "
            f"{self.auto_correctable_count} auto-correctable, {self.manual_count} manual"
        )


def parse_report(output: str) -> Report:
    """Parse cookstyle's ``--format json`` output.

    Raises CookstyleError when *output* is empty, not JSON, or lacks the
    ``files`` list.
    """
    if not output.strip():
        raise CookstyleError("cookstyle produced no output")
    try:
        data = json.loads(output)
    except json.JSONDecodeError as exc:
        raise CookstyleError(f"cookstyle output is not valid JSON: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("files"), list):
        raise CookstyleError("cookstyle output has no 'files' list")

    findings: list[Finding] = []
    for entry in data["files"]:
        path = str(entry.get("path", ""))
        for offense in entry.get("offenses") or []:
            findings.append(Finding.from_offense(path, offense))

    summary = data.get("summary") or {}
    inspected = summary.get("inspected_file_count", len(data["files"]))
    return Report(findings=findings, inspected_file_count=int(inspected))


class Cookstyle:
    def __init__(self, timeout: float | None = 300, executable: str = "cookstyle"):
        self.timeout = timeout
        self.executable = executable

    def _command(self, autocorrect: bool) -> list[str]:
        cmd = [self.executable] + BASE_COMMAND[1:]
        if autocorrect:
            cmd.append("--autocorrect-all")
        return cmd

    def _run(self, repo_dir: Path, autocorrect: bool, token: CancelToken | None) -> Report:
        cmd = self._command(autocorrect)
        logger.debug("Running %s in %s", " ".join(cmd), repo_dir)
        try:
            proc = run_command(cmd, cwd=repo_dir, timeout=self.timeout, token=token)
        except CommandError as exc:
            if not exc.retryable:
                raise
            raise CookstyleError(str(exc)) from exc

        if proc.returncode not in REPORT_EXIT_CODES:
            raise CookstyleError(
                f"cookstyle exited with status {proc.returncode}: {proc.stderr.strip()[:500]}"
            )
        return parse_report(proc.stdout)

    def analyze(self, repo_dir: str | Path, token: CancelToken | None = None) -> Report:
        report = self._run(Path(repo_dir), autocorrect=False, token=token)
        logger.info("cookstyle %s: %s", Path(repo_dir).name, report.summary())
        return report

    def autocorrect(self, repo_dir: str | Path, token: CancelToken | None = None) -> Report:
        """Rewrite correctable offenses in place; returns the report of that run."""
        return self._run(Path(repo_dir), autocorrect=True, token=token)

    def version(self) -> str:
        proc = run_command([self.executable, "--version"], timeout=30)
        if proc.returncode != 0:
            raise CookstyleError(f"cookstyle --version failed: {proc.stderr.strip()}")
        return proc.stdout.strip().splitlines()[0] if proc.stdout.strip() else "unknown"
