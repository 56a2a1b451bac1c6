# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""GitHub API error types.

Kept in their own module so cached API modules and the report script can catch
specific error classes (e.g. 404 Not Found) without creating import cycles.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class GitHubAPIError(Exception):
    def __init__(self, *, status_code: int, endpoint: str, message: str):
        super().__init__(message)
        self.status_code = int(status_code)
        self.endpoint = str(endpoint or "")


class GitHubAuthError(GitHubAPIError):
    pass


class GitHubForbiddenError(GitHubAPIError):
    pass


class GitHubRateLimitError(GitHubForbiddenError):
    pass


class GitHubNotFoundError(GitHubAPIError):
    pass


class GitHubRequestError(GitHubAPIError):
    pass


class GitHubGraphQLError(GitHubAPIError):
    """GraphQL responses come back as HTTP 200 with an `errors` array."""

    def __init__(self, *, endpoint: str, errors: Optional[List[Dict[str, Any]]], status_code: int = 200):
        self.errors: List[Dict[str, Any]] = list(errors or [])
        msgs = [str(e.get("message") or e) if isinstance(e, dict) else str(e) for e in self.errors]
        super().__init__(
            status_code=status_code,
            endpoint=endpoint,
            message="GitHub GraphQL query failed: " + ("; ".join(msgs) or "unknown error"),
        )
