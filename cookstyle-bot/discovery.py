"""Find the repositories to process and turn them into tasks."""

import logging
from dataclasses import dataclass
from urllib.parse import urlsplit

from github_api import GitHubClient

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepositoryTask:
    name: str
    owner: str
    clone_url: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def from_url(cls, clone_url: str, owner: str | None = None) -> "RepositoryTask":
        """Build a task from a clone URL; *owner* defaults to the URL's owner segment."""
        return cls(
            name=repo_name_from_url(clone_url),
            owner=owner or repo_owner_from_url(clone_url),
            clone_url=clone_url,
        )


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------


def _path_segments(url: str) -> list[str]:
    if "://" in url:
        path = urlsplit(url).path
    else:
        # scp-like form: git@github.com:owner/name.git
        path = url.split(":", 1)[-1]
    return [segment for segment in path.split("/") if segment]


def repo_name_from_url(url: str) -> str:
    segments = _path_segments(url.rstrip("/"))
    if not segments:
        raise ValueError(f"Cannot derive a repository name from {url!r}")
    name = segments[-1]
    return name[:-4] if name.endswith(".git") else name


def repo_owner_from_url(url: str) -> str:
    segments = _path_segments(url.rstrip("/"))
    return segments[-2] if len(segments) >= 2 else ""


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def filter_repositories(urls: list[str], filters: list[str] | None) -> list[str]:
    """Keep URLs whose repository name contains any of *filters* (case-insensitive).

    An empty filter list keeps everything.
    """
    if not filters:
        return list(urls)
    needles = [f.lower() for f in filters]
    return [url for url in urls if any(n in repo_name_from_url(url).lower() for n in needles)]


def should_skip_repository(name: str, include: list[str] | None, exclude: list[str] | None) -> bool:
    """Return True if *name* must not be processed.

    A non-empty include list is authoritative: only names on it run, and the
    exclude list is not consulted.
    """
    if include:
        return name not in include
    return bool(exclude) and name in exclude


def build_tasks(urls: list[str], owner: str) -> list[RepositoryTask]:
    """Turn clone URLs into tasks, dropping duplicate repository names."""
    tasks: dict[str, RepositoryTask] = {}
    for url in urls:
        task = RepositoryTask.from_url(url, owner=owner)
        if task.name in tasks:
            log.debug("Dropping duplicate repository %s (%s)", task.name, url)
            continue
        tasks[task.name] = task
    return list(tasks.values())


class RepositoryDiscovery:
    def __init__(self, client: GitHubClient):
        self.client = client

    def search(self, owner: str, topics: list[str] | None = None) -> list[str]:
        return self.client.search_repositories(owner, topics or [])

    def discover(self, owner: str, topics: list[str] | None = None, filters: list[str] | None = None) -> list[RepositoryTask]:
        urls = filter_repositories(self.search(owner, topics), filters)
        tasks = build_tasks(urls, owner)
        log.info("Selected %d repositories", len(tasks))
        return tasks
