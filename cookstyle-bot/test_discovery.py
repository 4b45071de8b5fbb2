"""Tests for repository discovery and selection."""

from unittest.mock import MagicMock

import pytest

from discovery import (
    RepositoryDiscovery,
    RepositoryTask,
    build_tasks,
    filter_repositories,
    repo_name_from_url,
    repo_owner_from_url,
    should_skip_repository,
)

URLS = [
    "https://github.com/acme/nginx.git",
    "https://github.com/acme/apache2.git",
    "https://github.com/acme/nginx-proxy.git",
]


@pytest.mark.parametrize(
    "url, name",
    [
        ("https://github.com/acme/nginx.git", "nginx"),
        ("https://github.com/acme/nginx", "nginx"),
        ("https://github.com/acme/nginx/", "nginx"),
        ("git@github.com:acme/nginx.git", "nginx"),
    ],
)
def test_repo_name_from_url(url: str, name: str) -> None:
    assert repo_name_from_url(url) == name


def test_repo_owner_from_url() -> None:
    assert repo_owner_from_url("git@github.com:acme/nginx.git") == "acme"
    assert repo_owner_from_url("https://github.com/acme/nginx.git") == "acme"


def test_repo_name_from_empty_url_raises() -> None:
    with pytest.raises(ValueError):
        repo_name_from_url("https://github.com/")


def test_filter_is_case_insensitive_substring() -> None:
    assert filter_repositories(URLS, ["NGINX"]) == [URLS[0], URLS[2]]


def test_empty_filter_keeps_everything() -> None:
    assert filter_repositories(URLS, []) == URLS
    assert filter_repositories(URLS, None) == URLS


def test_include_list_wins_over_exclude() -> None:
    assert should_skip_repository("nginx", include=["apache2"], exclude=[]) is True
    assert should_skip_repository("nginx", include=["nginx"], exclude=["nginx"]) is False


def test_exclude_list() -> None:
    assert should_skip_repository("nginx", include=[], exclude=["nginx"]) is True
    assert should_skip_repository("apache2", include=[], exclude=["nginx"]) is False
    assert should_skip_repository("apache2", include=None, exclude=None) is False


def test_build_tasks_drops_duplicates() -> None:
    tasks = build_tasks(URLS + ["git@github.com:acme/nginx.git"], owner="acme")
    assert [t.name for t in tasks] == ["nginx", "apache2", "nginx-proxy"]
    assert tasks[0] == RepositoryTask("nginx", "acme", URLS[0])
    assert tasks[0].full_name == "acme/nginx"


def test_discover_searches_then_filters() -> None:
    client = MagicMock()
    client.search_repositories.return_value = URLS
    tasks = RepositoryDiscovery(client).discover("acme", ["chef-cookbook"], ["apache"])
    client.search_repositories.assert_called_once_with("acme", ["chef-cookbook"])
    assert [t.name for t in tasks] == ["apache2"]
