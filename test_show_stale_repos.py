"""
Pytest tests for the stale repository report (show_stale_repos.py and the
common_github/api/*_cached.py resources it uses).

No network: a fake live client answers the members route and the search query.

Run from the repo root:
    pytest test_show_stale_repos.py -v
"""

import copy
import io
import logging
import sys
from datetime import date
from pathlib import Path

import pytest

# Set up path for imports
parent_dir = Path(__file__).parent
if str(parent_dir) not in sys.path:
    sys.path.insert(0, str(parent_dir))

import show_stale_repos
from cache.cache_base import DiskKVCache, InMemoryKVCache
from common_github.api.org_admins_cached import get_repository_admins, validate_org
from common_github.api.stale_repos_cached import (
    STALE_REPOS_QUERY,
    get_stale_repos,
    one_year_ago,
    stale_repo_from_node,
    validate_stale_date,
)
from common_github.cached_client import CachedGitHubClient
from common_github.exceptions import GitHubAPIError, GitHubNotFoundError

REPO_NODE = {
    "name": "old-widgets",
    "description": "Widgets, the old way",
    "updatedAt": "2023-02-01T10:00:00Z",
    "pushedAt": "2023-01-15T09:30:00Z",
    "latestRelease": {"createdAt": "2022-12-24T00:00:00Z"},
    "isArchived": False,
    "isDisabled": False,
    "defaultBranchRef": {
        "target": {
            "history": {
                "nodes": [
                    {"committedDate": "2023-01-15T09:30:00Z", "author": {"name": "Ada", "email": "ada@example.com"}},
                    {
                        "committedDate": "2023-01-10T08:00:00Z",
                        "author": {"name": "Bob", "email": "123+bob@users.noreply.github.com"},
                    },
                ]
            }
        }
    },
    "collaborators": {
        "edges": [
            {
                "permission": "ADMIN",
                "permissionSources": [{"roleName": "admin"}],
                "node": {"login": "ada", "name": "Ada L", "email": "ada@example.com"},
            }
        ]
    },
}


class FakeLiveClient:
    """Answers GET /orgs/{org}/members and the stale repository search."""

    def __init__(self, admins=None, nodes=None, error=None):
        self.admins = admins if admins is not None else [{"login": "octocat"}, {"login": "hubot"}]
        self.nodes = nodes if nodes is not None else [REPO_NODE]
        self.error = error
        self.request_calls = []
        self.graphql_calls = []
        self.token = "tok1"

    def request(self, route, options=None):
        self.request_calls.append((route, dict(options or {})))
        if self.error is not None:
            raise self.error
        per_page = options["per_page"]
        page = options["page"]
        chunk = self.admins[(page - 1) * per_page:page * per_page]
        return {"status": 200, "url": "", "headers": {}, "data": copy.deepcopy(chunk)}

    def graphql(self, query, parameters=None):
        self.graphql_calls.append((query, dict(parameters or {})))
        if self.error is not None:
            raise self.error
        return {"search": {"edges": [{"node": copy.deepcopy(n)} for n in self.nodes]}}

    def get_rest_call_stats(self):
        return {"total": len(self.request_calls) + len(self.graphql_calls)}


def make_gh(store=None, **kwargs):
    live = FakeLiveClient(**kwargs)
    gh = CachedGitHubClient(store if store is not None else InMemoryKVCache(), {"auth": "tok1"}, client=live)
    return gh, live


# ============================================================================
# Organization admins
# ============================================================================

@pytest.mark.parametrize("org", ["", "acme corp", "acme/other", "acme:x"])
def test_invalid_org_names(org):
    with pytest.raises(ValueError):
        validate_org(org)


def test_admins_single_page():
    gh, live = make_gh()
    admins = get_repository_admins(gh, "acme")
    assert [a["login"] for a in admins] == ["octocat", "hubot"]
    assert live.request_calls == [
        ("GET /orgs/{org}/members", {"org": "acme", "role": "admin", "per_page": 100, "page": 1})
    ]


def test_admins_follow_pagination():
    gh, live = make_gh(admins=[{"login": f"user{i}"} for i in range(5)])
    admins = get_repository_admins(gh, "acme", per_page=2)
    assert [a["login"] for a in admins] == ["user0", "user1", "user2", "user3", "user4"]
    assert [opts["page"] for (_route, opts) in live.request_calls] == [1, 2, 3]


def test_admins_exact_page_multiple_fetches_one_empty_page():
    gh, live = make_gh(admins=[{"login": "a"}, {"login": "b"}])
    assert len(get_repository_admins(gh, "acme", per_page=2)) == 2
    assert len(live.request_calls) == 2


def test_admins_too_many_pages():
    gh, _ = make_gh(admins=[{"login": f"user{i}"} for i in range(10)])
    with pytest.raises(RuntimeError):
        get_repository_admins(gh, "acme", per_page=2, max_pages=3)


def test_admins_unexpected_payload():
    class DictMembersClient(FakeLiveClient):
        def request(self, route, options=None):
            return {"status": 200, "url": "", "headers": {}, "data": {"message": "?"}}

    gh = CachedGitHubClient(InMemoryKVCache(), {"auth": "tok1"}, client=DictMembersClient())
    with pytest.raises(GitHubAPIError):
        get_repository_admins(gh, "acme")


def test_admins_error_is_logged_and_reraised(caplog):
    gh, _ = make_gh(error=GitHubNotFoundError(status_code=404, endpoint="/orgs/nope/members", message="not found"))
    with caplog.at_level(logging.ERROR):
        with pytest.raises(GitHubNotFoundError):
            get_repository_admins(gh, "nope")
    assert "Error getting admins for nope" in caplog.text


# ============================================================================
# Stale repositories
# ============================================================================

def test_one_year_ago():
    assert one_year_ago(date(2025, 6, 30)) == "2024-06-30"
    assert one_year_ago(date(2024, 2, 29)) == "2023-02-28"


@pytest.mark.parametrize("value", ["2024-1-1", "01/01/2024", "2024-02-30", "", "2024-01-01 OR org:other"])
def test_invalid_stale_date(value):
    with pytest.raises(ValueError):
        validate_stale_date(value)


def test_stale_repo_from_node():
    repo = stale_repo_from_node(REPO_NODE)
    assert repo.name == "old-widgets"
    assert repo.latest_release == "2022-12-24T00:00:00Z"
    assert [c.author_name for c in repo.last_commits] == ["Ada", "Bob"]
    assert repo.collaborators[0].login == "ada"
    assert repo.collaborators[0].permission == "ADMIN"


def test_stale_repo_from_sparse_node():
    """Empty repositories have no default branch; many have no release."""
    repo = stale_repo_from_node({"name": "empty", "defaultBranchRef": None, "latestRelease": None, "collaborators": None})
    assert repo.name == "empty"
    assert repo.latest_release is None
    assert repo.last_commits == []
    assert repo.collaborators == []


def test_get_stale_repos_query_variables():
    gh, live = make_gh()
    repos = get_stale_repos(gh, "acme", stale_date="2024-01-01", limit=5)

    assert [r.name for r in repos] == ["old-widgets"]
    query, variables = live.graphql_calls[0]
    assert query == STALE_REPOS_QUERY
    assert variables == {"search_query": "org:acme pushed:<2024-01-01", "limit": 5, "commits": 15}


def test_get_stale_repos_skips_archived_disabled_and_empty_nodes():
    archived = dict(REPO_NODE, name="archived", isArchived=True)
    disabled = dict(REPO_NODE, name="disabled", isDisabled=True)
    gh, _ = make_gh(nodes=[archived, {}, REPO_NODE, disabled])
    assert [r.name for r in get_stale_repos(gh, "acme", stale_date="2024-01-01")] == ["old-widgets"]


@pytest.mark.parametrize("limit", [0, 101])
def test_get_stale_repos_limit_range(limit):
    gh, live = make_gh()
    with pytest.raises(ValueError):
        get_stale_repos(gh, "acme", stale_date="2024-01-01", limit=limit)
    assert live.graphql_calls == []


# ============================================================================
# Report output
# ============================================================================

def test_format_commit_line_hides_noreply_addresses():
    assert show_stale_repos.format_commit_line("2023-01-01", "Ada", "ada@example.com") == "* 2023-01-01 - Ada <ada@example.com>"
    assert show_stale_repos.format_commit_line("2023-01-01", "Bob", "1+bob@users.noreply.github.com") == "* 2023-01-01 - Bob"
    assert show_stale_repos.format_commit_line("2023-01-01", "Eve", "") == "* 2023-01-01 - Eve"


def test_generate_report_output():
    gh, _ = make_gh()
    out = io.StringIO()
    count = show_stale_repos.generate_report(gh, "acme", stale_date="2024-01-01", out=out)

    text = out.getvalue()
    assert count == 1
    assert text.startswith("Admins: octocat, hubot\n# old-widgets\n_Widgets, the old way_\n")
    assert "Last pushed: 2023-01-15T09:30:00Z\n" in text
    assert "Latest release: 2022-12-24T00:00:00Z\n" in text
    assert "* 2023-01-15T09:30:00Z - Ada <ada@example.com>\n" in text
    assert "* 2023-01-10T08:00:00Z - Bob\n" in text
    assert "* Ada L <ada, ada@example.com> - ADMIN\n" in text
    assert text.endswith("cache stats:\n  hits: 0\n  misses: 2\n  hit rate: 0.0 %\n")


def test_second_run_is_served_from_disk_cache(tmp_path):
    gh1, live1 = make_gh(store=DiskKVCache(cache_dir=tmp_path, namespace="report"))
    first = io.StringIO()
    show_stale_repos.generate_report(gh1, "acme", stale_date="2024-01-01", out=first)

    gh2, live2 = make_gh(store=DiskKVCache(cache_dir=tmp_path, namespace="report"))
    second = io.StringIO()
    show_stale_repos.generate_report(gh2, "acme", stale_date="2024-01-01", out=second)

    assert live2.request_calls == []
    assert live2.graphql_calls == []
    assert (gh2.hits, gh2.misses) == (2, 0)
    report = lambda s: s.getvalue().split("\ncache stats:")[0]
    assert report(second) == report(first)
    assert second.getvalue().endswith("  hit rate: 100.0 %\n")


# ============================================================================
# CLI
# ============================================================================

@pytest.fixture
def fake_cli(monkeypatch):
    """Patch out logging setup and the live client; returns the list of live clients built."""
    built = []

    def _client(token=None, **kwargs):
        live = FakeLiveClient()
        live.token = token
        built.append(live)
        return live

    monkeypatch.setattr(show_stale_repos, "setup_logging", lambda **kw: logging.getLogger("test_show_stale_repos"))
    monkeypatch.setattr(show_stale_repos, "GitHubAPIClient", _client)
    return built


def test_main_success(tmp_path, capsys, fake_cli):
    rc = show_stale_repos.main(
        ["--org", "acme", "--token", "tok1", "--cache-dir", str(tmp_path), "--stale-date", "2024-01-01"]
    )
    assert rc == 0
    assert "# old-widgets" in capsys.readouterr().out
    assert (tmp_path / "close-stale-repos.json").exists()
    assert fake_cli[0].token == "tok1"


def test_main_no_cache_writes_nothing(tmp_path, capsys, fake_cli):
    rc = show_stale_repos.main(["--org", "acme", "--cache-dir", str(tmp_path), "--no-cache", "--stale-date", "2024-01-01"])
    assert rc == 0
    assert list(tmp_path.iterdir()) == []


def test_main_prune_cache(tmp_path, capsys, fake_cli):
    args = ["--org", "acme", "--cache-dir", str(tmp_path), "--stale-date", "2024-01-01"]
    assert show_stale_repos.main(args) == 0
    assert show_stale_repos.main(args + ["--prune-cache"]) == 0
    # Fresh entries survive pruning, so the second run made no live calls.
    assert fake_cli[1].request_calls == []
    assert fake_cli[1].graphql_calls == []


@pytest.mark.parametrize(
    "argv",
    [
        ["--org", "acme corp"],
        ["--org", "acme", "--stale-date", "last-year"],
        ["--org", "acme", "--ttl", "-5"],
        ["--org", "acme", "--limit", "0"],
    ],
)
def test_main_bad_input_exit_code(tmp_path, capsys, fake_cli, argv):
    assert show_stale_repos.main(argv + ["--cache-dir", str(tmp_path)]) == 1
    assert capsys.readouterr().err.startswith("Error:")


def test_main_api_error_exit_code(tmp_path, capsys, monkeypatch, fake_cli):
    def _failing(token=None, **kwargs):
        return FakeLiveClient(error=GitHubNotFoundError(status_code=404, endpoint="/orgs/acme/members", message="not found"))

    monkeypatch.setattr(show_stale_repos, "GitHubAPIClient", _failing)
    assert show_stale_repos.main(["--org", "acme", "--cache-dir", str(tmp_path)]) == 1
    assert "not found" in capsys.readouterr().err


# ============================================================================
# Logging setup
# ============================================================================

@pytest.fixture
def restore_report_loggers():
    names = ("test_setup_logging", "common", "common_github", "cache")
    saved = {n: (logging.getLogger(n).level, list(logging.getLogger(n).handlers)) for n in names}
    yield
    for n, (level, handlers) in saved.items():
        lg = logging.getLogger(n)
        lg.setLevel(level)
        lg.handlers[:] = handlers


def test_setup_logging_second_call_changes_effective_level(restore_report_loggers):
    from common import setup_logging

    logger = setup_logging(logger_name="test_setup_logging")
    assert logger.level == logging.WARNING

    logger = setup_logging(debug=True, logger_name="test_setup_logging")
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1
    # The handler must not filter what the logger now lets through.
    assert logger.handlers[0].level == logging.NOTSET
    assert logging.getLogger("common_github").level == logging.DEBUG
