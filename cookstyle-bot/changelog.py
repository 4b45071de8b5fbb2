"""Insert an entry into a cookbook's changelog under a marker header."""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def update_changelog(repo_dir: str | Path, location: str, marker: str, entry: str) -> bool:
    """Insert *entry* after the *marker* line of ``repo_dir/location``.

    The entry goes before the next ``## `` header that follows the marker,
    or at the end of the file when there is none. Returns False without
    touching anything when the file or the marker is missing.
    """
    path = Path(repo_dir) / location
    if not path.is_file():
        logger.warning("Changelog %s not found, skipping update", path)
        return False

    lines = path.read_text(encoding="utf-8").splitlines(keepends=True)
    marker = marker.strip()
    marker_index = next((i for i, line in enumerate(lines) if line.strip().startswith(marker)), None)
    if marker_index is None:
        logger.warning("Changelog marker %r not found in %s, skipping update", marker, path)
        return False

    insert_at = next(
        (i for i in range(marker_index + 1, len(lines)) if lines[i].strip().startswith("## ")),
        len(lines),
    )
    if insert_at == len(lines) and lines and not lines[-1].endswith("\n"):
        lines[-1] += "\n"
    lines.insert(insert_at, f"\n{entry.strip()}\n\n" if insert_at < len(lines) else f"\n{entry.strip()}\n")
    path.write_text("".join(lines), encoding="utf-8")
    logger.info("Updated changelog %s", path)
    return True
