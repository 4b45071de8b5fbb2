"""Markdown bodies for the pull requests, issues and changelog entries the runner writes."""

from datetime import date

from cookstyle import Finding, Report
from github_api import branch_marker

COMMIT_MESSAGE = "Cookstyle auto-corrections"
MANUAL_COMMIT_MESSAGE = "Cookstyle: manual fixes required"


def _topic_sentence(topics: list[str]) -> str:
    if not topics:
        return ""
    return f"This repo was selected due to the topics of {', '.join(topics)}."


def _offense_line(finding: Finding) -> str:
    location = f"{finding.path}:{finding.line}" if finding.line else finding.path
    return f"* `{location}` {finding.cop} - {finding.message}"


def summary_section(report: Report, auto_corrected: int) -> str:
    return "\n".join([
        "### Cookstyle Run Summary",
        f"- **Total Offenses Detected:** {report.count}",
        f"- **Auto-corrected:** {auto_corrected}",
        f"- **Manual Review Needed:** {report.count - auto_corrected}",
    ])


def pr_description(header: str, topics: list[str], report: Report, auto_corrected: int) -> str:
    sections = [header.strip(), _topic_sentence(topics), summary_section(report, auto_corrected)]
    by_file = report.findings_by_file()
    if by_file:
        lines = ["### Offenses"]
        for path in sorted(by_file):
            lines.append(f"#### `{path}`")
            lines.extend(_offense_line(f) for f in by_file[path])
        sections.append("\n".join(lines))
    return "\n\n".join(s for s in sections if s) + "\n"


def issue_description(header: str, topics: list[str], report: Report, branch: str) -> str:
    """Issue body listing offenses that need a human, ending with the branch marker."""
    manual = report.manual_findings
    sections = [
        header.strip(),
        _topic_sentence(topics),
        "\n".join([
            "### Cookstyle Manual Review Summary",
            f"- **Total Offenses Detected:** {report.count}",
            f"- **Manual Review Needed:** {len(manual) or report.count}",
        ]),
        "### Manual Intervention Required\n" + "\n".join(_offense_line(f) for f in manual or report.findings),
        branch_marker(branch),
    ]
    return "\n\n".join(s for s in sections if s) + "\n"


def changelog_entry(report: Report, today: date | None = None) -> str:
    today = today or date.today()
    cops = sorted({f.cop for f in report.findings if f.correctable})
    lines = [f"- Cookstyle auto-corrections applied ({today.isoformat()})"]
    lines.extend(f"  - {cop}" for cop in cops)
    return "\n".join(lines)
