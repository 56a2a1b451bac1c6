# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""Organization admins cached API (REST).

Endpoint:
  GET /orgs/{org}/members?role=admin&per_page=100&page=N

The GraphQL API can't filter members by role, the REST API can; admins are
usually a handful of users so one page is the common case.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, TYPE_CHECKING

from common import DEFAULT_CACHE_TTL_S

from ..exceptions import GitHubAPIError

if TYPE_CHECKING:  # pragma: no cover
    from ..cached_client import CachedGitHubClient

_logger = logging.getLogger(__name__)

ORG_NAME_RE = re.compile(r"^[a-zA-Z0-9-]+$")

TTL_POLICY_DESCRIPTION = "retention_in_seconds (default 3600s) per page"

CACHE_NAME = "org_admins"
ROUTE = "GET /orgs/{org}/members"
API_CALL_FORMAT = (
    "REST GET /orgs/{org}/members?role=admin&per_page=<n>&page=<p>\n"
    "Example response fields used (truncated):\n"
    "  [\n"
    "    {\"login\": \"octocat\", \"id\": 583231, \"type\": \"User\", \"site_admin\": false}\n"
    "  ]"
)
DEFAULT_MAX_PAGES = 50


def validate_org(org: str) -> str:
    """Org names go into URLs and search queries; only allow GitHub's login charset."""
    s = str(org or "")
    if not ORG_NAME_RE.match(s):
        raise ValueError(f"Invalid org name: {org}")
    return s


def get_repository_admins(
    gh: "CachedGitHubClient",
    org: str,
    *,
    per_page: int = 100,
    max_pages: int = DEFAULT_MAX_PAGES,
    retention_in_seconds: int = DEFAULT_CACHE_TTL_S,
) -> List[Dict[str, Any]]:
    """Return the admin members of `org` (raw member dicts), following pagination.

    Each page is a separate cached request, so a re-run within the TTL makes no API calls.
    """
    org = validate_org(org)
    if int(per_page) <= 0 or int(per_page) > 100:
        raise ValueError(f"per_page must be between 1 and 100, got {per_page}")

    members: List[Dict[str, Any]] = []
    try:
        for page in range(1, int(max_pages) + 1):
            resp = gh.request_cached(
                ROUTE,
                {"org": org, "role": "admin", "per_page": int(per_page), "page": page},
                retention_in_seconds,
            )
            data = resp.get("data") if isinstance(resp, dict) else None
            if not isinstance(data, list):
                raise GitHubAPIError(
                    status_code=int(resp.get("status", 0) or 0) if isinstance(resp, dict) else 0,
                    endpoint=f"/orgs/{org}/members",
                    message=f"Unexpected members response for {org}: expected a list",
                )
            members.extend(m for m in data if isinstance(m, dict))
            if len(data) < int(per_page):
                return members
        raise RuntimeError(f"More than {max_pages} pages of admins for {org}; raise max_pages to list them all")
    except (GitHubAPIError, RuntimeError) as e:
        _logger.error("Error getting admins for %s: %s", org, e)
        raise
