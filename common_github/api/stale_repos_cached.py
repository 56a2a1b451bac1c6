# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Stale repositories cached API (GraphQL).

One search query returns everything the report prints per repository:
description, timestamps, latest release, recent commits on the default branch,
and directly-assigned collaborators.

Search:
  org:{org} pushed:<{YYYY-MM-DD}
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from common import DEFAULT_CACHE_TTL_S, DEFAULT_STALE_REPOS_LIMIT

from .org_admins_cached import validate_org

if TYPE_CHECKING:  # pragma: no cover
    from ..cached_client import CachedGitHubClient

_logger = logging.getLogger(__name__)

STALE_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

TTL_POLICY_DESCRIPTION = "retention_in_seconds (default 3600s)"

CACHE_NAME = "stale_repos"
DEFAULT_COMMITS_PER_REPO = 15

STALE_REPOS_QUERY = """
query stale_repos($search_query: String!, $limit: Int!, $commits: Int!) {
  search(query: $search_query, type: REPOSITORY, first: $limit) {
    edges {
      node {
        ... on Repository {
          name
          description
          updatedAt
          pushedAt
          latestRelease {
            createdAt
          }
          isArchived
          isDisabled
          defaultBranchRef {
            target {
              ... on Commit {
                history(first: $commits) {
                  nodes {
                    ... on Commit {
                      committedDate
                      author {
                        name
                        email
                      }
                    }
                  }
                }
              }
            }
          }
          collaborators(affiliation: DIRECT) {
            edges {
              permissionSources {
                roleName
              }
              permission
              node {
                login
                name
                email
              }
            }
          }
        }
      }
    }
  }
}
"""


@dataclass
class CommitInfo:
    committed_date: str
    author_name: str
    author_email: str


@dataclass
class Collaborator:
    login: str
    name: Optional[str]
    email: Optional[str]
    permission: str


@dataclass
class StaleRepo:
    """One repository row of the stale-repository report."""

    name: str
    description: Optional[str]
    updated_at: Optional[str]
    pushed_at: Optional[str]
    latest_release: Optional[str]
    last_commits: List[CommitInfo] = field(default_factory=list)
    collaborators: List[Collaborator] = field(default_factory=list)


def one_year_ago(today: Optional[date] = None) -> str:
    """Same calendar day one year back, as YYYY-MM-DD (Feb 29 maps to Feb 28)."""
    d = today or date.today()
    try:
        return d.replace(year=d.year - 1).isoformat()
    except ValueError:
        return d.replace(year=d.year - 1, day=28).isoformat()


def validate_stale_date(stale_date: str) -> str:
    s = str(stale_date or "")
    if not STALE_DATE_RE.match(s):
        raise ValueError(f"Invalid stale date: {stale_date}")
    try:
        date.fromisoformat(s)
    except ValueError as e:
        raise ValueError(f"Invalid stale date: {stale_date}") from e
    return s


def _dict(x: Any) -> Dict[str, Any]:
    return x if isinstance(x, dict) else {}


def stale_repo_from_node(node: Dict[str, Any]) -> StaleRepo:
    """Normalize one GraphQL `Repository` node (missing branches/releases/collaborators are fine)."""
    history = _dict(_dict(_dict(node.get("defaultBranchRef")).get("target")).get("history"))
    commits: List[CommitInfo] = []
    for c in history.get("nodes") or []:
        c = _dict(c)
        author = _dict(c.get("author"))
        commits.append(
            CommitInfo(
                committed_date=str(c.get("committedDate") or ""),
                author_name=str(author.get("name") or ""),
                author_email=str(author.get("email") or ""),
            )
        )

    collaborators: List[Collaborator] = []
    for edge in _dict(node.get("collaborators")).get("edges") or []:
        edge = _dict(edge)
        user = _dict(edge.get("node"))
        collaborators.append(
            Collaborator(
                login=str(user.get("login") or ""),
                name=user.get("name"),
                email=user.get("email"),
                permission=str(edge.get("permission") or ""),
            )
        )

    return StaleRepo(
        name=str(node.get("name") or ""),
        description=node.get("description"),
        updated_at=node.get("updatedAt"),
        pushed_at=node.get("pushedAt"),
        latest_release=_dict(node.get("latestRelease")).get("createdAt"),
        last_commits=commits,
        collaborators=collaborators,
    )


def get_stale_repos(
    gh: "CachedGitHubClient",
    org: str,
    *,
    stale_date: Optional[str] = None,
    limit: int = DEFAULT_STALE_REPOS_LIMIT,
    commits: int = DEFAULT_COMMITS_PER_REPO,
    retention_in_seconds: int = DEFAULT_CACHE_TTL_S,
) -> List[StaleRepo]:
    """Repositories in `org` with no push since `stale_date` (default: one year ago).

    Archived and disabled repositories are skipped: there is nothing left to close.
    """
    org = validate_org(org)
    stale_date = validate_stale_date(stale_date if stale_date is not None else one_year_ago())
    if int(limit) <= 0 or int(limit) > 100:
        raise ValueError(f"limit must be between 1 and 100, got {limit}")
    if int(commits) <= 0 or int(commits) > 100:
        raise ValueError(f"commits must be between 1 and 100, got {commits}")

    graph = gh.graphql_cached(
        STALE_REPOS_QUERY,
        {"search_query": f"org:{org} pushed:<{stale_date}", "limit": int(limit), "commits": int(commits)},
        retention_in_seconds,
    )

    stale_repos: List[StaleRepo] = []
    for edge in _dict(_dict(graph).get("search")).get("edges") or []:
        node = _dict(_dict(edge).get("node"))
        if not node:
            # Search results that aren't repositories come back as empty objects.
            continue
        if node.get("isArchived") or node.get("isDisabled"):
            _logger.warning(
                "Skipping repository %s (archived=%s, disabled=%s)",
                node.get("name"), bool(node.get("isArchived")), bool(node.get("isDisabled")),
            )
            continue
        stale_repos.append(stale_repo_from_node(node))
    return stale_repos
