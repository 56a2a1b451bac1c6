# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0
"""GitHub API client for the organization report scripts.

Layout:
- `common_github/` defines the live API client (this module) + error types
- `common_github/cached_client.py` wraps a client with a persistent cache-aside layer
- `common_github/api/*_cached.py` contains the per-resource queries used by the report

The client speaks the two call shapes the report needs:

    client.request("GET /orgs/{org}/members", {"org": "acme", "role": "admin"})
      -> {"status": 200, "url": "...", "headers": {...}, "data": [...]}

    client.graphql("query($q: String!) { ... }", {"q": "org:acme"})
      -> {"search": {...}}   (the GraphQL `data` member)
"""

from __future__ import annotations

import logging
import re
import time
import urllib.parse
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import requests
import yaml

from common import DEFAULT_HTTP_TIMEOUT_S, GITHUB_API_BASE_URL

from .exceptions import (
    GitHubAPIError,
    GitHubAuthError,
    GitHubForbiddenError,
    GitHubGraphQLError,
    GitHubNotFoundError,
    GitHubRateLimitError,
    GitHubRequestError,
)

# Module logger
_logger = logging.getLogger(__name__)

_ROUTE_RE = re.compile(r"^(?:(?P<method>[A-Z]+)\s+)?(?P<path>(?:/|https?://)\S*)$")
_PLACEHOLDER_RE = re.compile(r"\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)\}")
# Option keys that configure the request itself rather than being sent as params/body.
_RESERVED_OPTIONS = ("headers", "data")
_BODYLESS_METHODS = ("GET", "HEAD", "DELETE")


def parse_route(route: str) -> Tuple[str, str]:
    """Split an Octokit-style route ("GET /orgs/{org}/members") into (method, path_template).

    The method defaults to GET when omitted ("/user").
    """
    m = _ROUTE_RE.match(str(route or "").strip())
    if not m:
        raise ValueError(f"Invalid route: {route!r}")
    return (m.group("method") or "GET", m.group("path"))


def expand_route(route: str, options: Optional[Mapping[str, Any]] = None) -> Tuple[str, str, Dict[str, Any]]:
    """Fill `{placeholder}`s in a route from options.

    Returns (method, path, remaining_options). Substituted values are URL-quoted and
    removed from the remaining options; reserved keys (headers, data) are left in place.
    """
    method, template = parse_route(route)
    remaining: Dict[str, Any] = dict(options or {})

    def _sub(m: "re.Match[str]") -> str:
        name = m.group("name")
        if name not in remaining or remaining[name] is None:
            raise ValueError(f"Route {route!r} needs a value for {{{name}}}")
        return urllib.parse.quote(str(remaining.pop(name)), safe="")

    path = _PLACEHOLDER_RE.sub(_sub, template)
    return method, path, remaining


class GitHubAPIClient:
    """GitHub REST + GraphQL client with automatic token detection.

    Features:
    - Automatic token detection (explicit token > ~/.config/github-token > GitHub CLI config file)
    - Typed errors (see `common_github.exceptions`)
    - Per-run REST stats (calls by label, errors by status, time spent)

    Example:
        client = GitHubAPIClient()
        members = client.request("GET /orgs/{org}/members", {"org": "acme"})["data"]
    """

    @staticmethod
    def get_github_token_from_file() -> Optional[str]:
        """Get GitHub token from a local config file.

        Currently supported locations (first match wins):
        - ~/.config/github-token   (single line token)
        - ~/.config/gh/hosts.yml   (GitHub CLI login; oauth_token)
        """
        try:
            token_file = Path.home() / ".config" / "github-token"
            if token_file.exists():
                tok = (token_file.read_text() or "").strip()
                if tok:
                    return tok
        except OSError:
            pass
        return GitHubAPIClient.get_github_token_from_cli()

    @staticmethod
    def get_github_token_from_cli() -> Optional[str]:
        """Get GitHub token from GitHub CLI configuration (~/.config/gh/hosts.yml)."""
        try:
            gh_config_path = Path.home() / '.config' / 'gh' / 'hosts.yml'
            if gh_config_path.exists():
                with open(gh_config_path, 'r') as f:
                    config = yaml.safe_load(f)
                if config and 'github.com' in config:
                    github_config = config['github.com'] or {}
                    if 'oauth_token' in github_config:
                        return github_config['oauth_token']
                    for _user, user_config in (github_config.get('users') or {}).items():
                        if isinstance(user_config, dict) and 'oauth_token' in user_config:
                            return user_config['oauth_token']
        except (OSError, yaml.YAMLError):
            pass
        return None

    def __init__(
        self,
        token: Optional[str] = None,
        *,
        base_url: str = GITHUB_API_BASE_URL,
        timeout: int = DEFAULT_HTTP_TIMEOUT_S,
        require_auth: bool = False,
        debug_rest: bool = False,
        session: Optional[requests.Session] = None,
    ):
        """Initialize GitHub API client.

        Args:
            token: GitHub personal access token. If not provided, will try:
                   1. ~/.config/github-token (if present)
                   2. GitHub CLI config (~/.config/gh/hosts.yml)
            require_auth: If True, raise GitHubAuthError when no token can be found.
            session: Optional requests.Session (tests inject a fake one).
        """
        self.token = token or self.get_github_token_from_file()
        self.base_url = str(base_url or GITHUB_API_BASE_URL).rstrip("/")
        self.timeout = int(timeout)
        self.headers: Dict[str, str] = {
            'Accept': 'application/vnd.github+json',
            'User-Agent': 'github-report',
        }
        self.logger = logging.getLogger(self.__class__.__name__)
        self._debug_rest = bool(debug_rest)
        self._session = session if session is not None else requests.Session()

        if require_auth and not self.token:
            raise GitHubAuthError(
                status_code=401,
                endpoint="",
                message=(
                    "GitHub API authentication is required but no token was found. "
                    "Pass --token, or login with gh so ~/.config/gh/hosts.yml exists."
                ),
            )
        if self.token:
            self.headers['Authorization'] = f'token {self.token}'

        # Per-run REST stats (label = route template, or "graphql").
        self._rest_calls_total: int = 0
        self._rest_calls_by_label: Dict[str, int] = {}
        self._rest_success_total: int = 0
        self._rest_errors_total: int = 0
        self._rest_errors_by_status: Dict[int, int] = {}
        self._rest_time_total_s: float = 0.0
        self._rest_time_by_label_s: Dict[str, float] = {}
        self._rest_last_error: Dict[str, Any] = {}

    def has_token(self) -> bool:
        """Check if a GitHub token is configured."""
        return self.token is not None

    def _url_for_path(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}" if path.startswith('/') else f"{self.base_url}/{path}"

    def _rest_record(self, *, label: str, status_code: Optional[int], dt_s: float, url: str = "") -> None:
        """Record one HTTP call in the per-run stats."""
        lbl = str(label or "").strip() or "unknown"
        dt = max(0.0, float(dt_s or 0.0))
        self._rest_calls_total += 1
        self._rest_calls_by_label[lbl] = int(self._rest_calls_by_label.get(lbl, 0)) + 1
        self._rest_time_total_s += dt
        self._rest_time_by_label_s[lbl] = float(self._rest_time_by_label_s.get(lbl, 0.0)) + dt

        if status_code is None:
            self._rest_errors_total += 1
            return
        sc = int(status_code)
        if sc < 400:
            self._rest_success_total += 1
        else:
            self._rest_errors_total += 1
            self._rest_errors_by_status[sc] = int(self._rest_errors_by_status.get(sc, 0)) + 1
            self._rest_last_error = {"status": sc, "url": url, "label": lbl}

    def get_rest_call_stats(self) -> Dict[str, Any]:
        """Return per-run REST call stats for debugging."""
        return {
            "total": int(self._rest_calls_total),
            "success_total": int(self._rest_success_total),
            "error_total": int(self._rest_errors_total),
            "time_total_s": float(self._rest_time_total_s),
            "by_label": dict(sorted(self._rest_calls_by_label.items(), key=lambda kv: (-int(kv[1]), kv[0]))),
            "time_by_label_s": dict(sorted(self._rest_time_by_label_s.items(), key=lambda kv: (-float(kv[1]), kv[0]))),
            "errors_by_status": dict(sorted(self._rest_errors_by_status.items(), key=lambda kv: (-int(kv[1]), int(kv[0])))),
            "last_error": dict(self._rest_last_error),
        }

    def _send(
        self,
        method: str,
        url: str,
        *,
        label: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        extra_headers: Optional[Mapping[str, str]] = None,
    ) -> requests.Response:
        """Perform one HTTP call, record stats, and map HTTP failures to typed errors."""
        headers = dict(self.headers)
        if extra_headers:
            headers.update({str(k): str(v) for (k, v) in extra_headers.items()})

        if self._debug_rest:
            self.logger.debug("GH %s [%s] %s params=%s", method, label, url, params)

        status_code: Optional[int] = None
        t0 = time.monotonic()
        try:
            resp = self._session.request(
                method,
                url,
                headers=headers,
                params=params or None,
                json=json_body,
                timeout=self.timeout,
            )
            status_code = int(resp.status_code)
        except requests.exceptions.RequestException as e:
            raise GitHubRequestError(status_code=0, endpoint=endpoint, message=f"GitHub API request failed for {endpoint}: {e}") from e
        finally:
            self._rest_record(label=label, status_code=status_code, dt_s=time.monotonic() - t0, url=url)

        if self._debug_rest:
            self.logger.debug(
                "GH RESP [%s] status=%s remaining=%s", label, status_code, resp.headers.get("X-RateLimit-Remaining")
            )

        if status_code == 401:
            raise GitHubAuthError(status_code=401, endpoint=endpoint, message="GitHub API returned 401 Unauthorized. Check your token.")
        if status_code == 403:
            if resp.headers.get('X-RateLimit-Remaining') == '0':
                raise GitHubRateLimitError(
                    status_code=403,
                    endpoint=endpoint,
                    message="GitHub API rate limit exceeded. Provide --token (or login with gh so ~/.config/gh/hosts.yml exists).",
                )
            raise GitHubForbiddenError(status_code=403, endpoint=endpoint, message=f"GitHub API returned 403 Forbidden: {resp.text[:300]}")
        if status_code == 404:
            raise GitHubNotFoundError(status_code=404, endpoint=endpoint, message=f"GitHub API returned 404 Not Found for {endpoint}")
        if status_code >= 400:
            raise GitHubRequestError(
                status_code=status_code,
                endpoint=endpoint,
                message=f"GitHub API returned {status_code} for {endpoint}: {resp.text[:300]}",
            )
        return resp

    def request(self, route: str, options: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Perform a REST call described by an Octokit-style route template.

        Args:
            route: e.g. "GET /orgs/{org}/members" (method defaults to GET)
            options: placeholder values, query params (GET/HEAD/DELETE) or JSON body fields
                     (other methods), plus optional "headers" / "data" (explicit body)

        Returns:
            {"status": 200, "url": "https://api.github.com/orgs/acme/members?role=admin",
             "headers": {"etag": "...", ...}, "data": [{"login": "octocat", ...}]}
        """
        method, path, remaining = expand_route(route, options)
        extra_headers = remaining.pop("headers", None)
        explicit_body = remaining.pop("data", None)

        params: Optional[Dict[str, Any]] = None
        body: Any = None
        if method in _BODYLESS_METHODS:
            params = {k: v for (k, v) in remaining.items() if v is not None}
        else:
            body = explicit_body if explicit_body is not None else (remaining or None)

        resp = self._send(
            method,
            self._url_for_path(path),
            label=f"{method} {parse_route(route)[1]}",
            endpoint=path,
            params=params,
            json_body=body,
            extra_headers=extra_headers,
        )

        data: Any = None
        if resp.content:
            try:
                data = resp.json()
            except ValueError:
                data = resp.text
        return {
            "status": int(resp.status_code),
            "url": str(resp.url or ""),
            "headers": {str(k).lower(): str(v) for (k, v) in dict(resp.headers or {}).items()},
            "data": data,
        }

    def graphql(self, query: str, parameters: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """Run a GraphQL query and return its `data` member.

        Raises GitHubGraphQLError when the response carries an `errors` array.
        """
        variables = dict(parameters or {})
        extra_headers = variables.pop("headers", None)
        resp = self._send(
            "POST",
            self._url_for_path("/graphql"),
            label="graphql",
            endpoint="/graphql",
            json_body={"query": query, "variables": variables},
            extra_headers=extra_headers,
        )
        try:
            payload = resp.json()
        except ValueError as e:
            raise GitHubRequestError(
                status_code=int(resp.status_code), endpoint="/graphql", message=f"GitHub GraphQL returned invalid JSON: {e}"
            ) from e
        if not isinstance(payload, dict):
            raise GitHubRequestError(status_code=int(resp.status_code), endpoint="/graphql", message="GitHub GraphQL returned a non-object")
        if payload.get("errors"):
            raise GitHubGraphQLError(endpoint="/graphql", errors=payload.get("errors"), status_code=int(resp.status_code))
        return payload.get("data") or {}


__all__ = [
    "GitHubAPIClient",
    "GitHubAPIError",
    "GitHubAuthError",
    "GitHubForbiddenError",
    "GitHubGraphQLError",
    "GitHubNotFoundError",
    "GitHubRateLimitError",
    "GitHubRequestError",
    "expand_route",
    "parse_route",
]
