"""Tests for changelog updates."""

from pathlib import Path

from changelog import update_changelog

MARKER = "## Unreleased"


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "CHANGELOG.md"
    path.write_text(text)
    return path


def test_entry_inserted_before_next_header(tmp_path: Path) -> None:
    path = write(tmp_path, "# Changelog\n\n## Unreleased\n\n- earlier\n\n## 1.0.0\n\n- initial\n")
    assert update_changelog(tmp_path, "CHANGELOG.md", MARKER, "- Cookstyle fixes")
    lines = path.read_text().splitlines()
    assert lines.index("- Cookstyle fixes") > lines.index("- earlier")
    assert lines.index("- Cookstyle fixes") < lines.index("## 1.0.0")


def test_entry_appended_when_marker_is_last_section(tmp_path: Path) -> None:
    path = write(tmp_path, "# Changelog\n\n## Unreleased")
    assert update_changelog(tmp_path, "CHANGELOG.md", MARKER, "- Cookstyle fixes")
    text = path.read_text()
    assert text.endswith("- Cookstyle fixes\n")
    assert "## Unreleased\n" in text


def test_missing_file_is_noop(tmp_path: Path) -> None:
    assert update_changelog(tmp_path, "CHANGELOG.md", MARKER, "- x") is False
    assert not (tmp_path / "CHANGELOG.md").exists()


def test_missing_marker_is_noop(tmp_path: Path) -> None:
    original = "# Changelog\n\n## 1.0.0\n"
    path = write(tmp_path, original)
    assert update_changelog(tmp_path, "CHANGELOG.md", MARKER, "- x") is False
    assert path.read_text() == original
