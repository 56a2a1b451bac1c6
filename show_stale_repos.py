#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Stale repository report for a GitHub organization.

Prints the organization admins, then every repository with no push in the last
year (or since --stale-date): recent commits on the default branch and the
collaborators assigned directly to it. API responses are cached on disk for
--ttl seconds so re-running the report while iterating costs no rate limit.
"""

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

from common import (
    DEFAULT_CACHE_NAMESPACE,
    DEFAULT_CACHE_TTL_S,
    DEFAULT_STALE_REPOS_LIMIT,
    github_report_cache_dir,
    resolve_cache_path,
    setup_logging,
)
from cache.cache_base import CacheStoreError, DiskKVCache, InMemoryKVCache
from common_github import GitHubAPIClient
from common_github.api.org_admins_cached import get_repository_admins
from common_github.api.stale_repos_cached import StaleRepo, get_stale_repos
from common_github.cached_client import CacheConfigError, CachedGitHubClient
from common_github.exceptions import GitHubAPIError

LOGGER_NAME = "github_report"
NOREPLY_EMAIL_DOMAIN = "noreply.github.com"


def format_commit_line(committed_date: str, author_name: str, author_email: str) -> str:
    """GitHub noreply addresses carry no information; print the name only for those."""
    if author_email and NOREPLY_EMAIL_DOMAIN not in author_email:
        return f"* {committed_date} - {author_name} <{author_email}>"
    return f"* {committed_date} - {author_name}"


def print_admins(admins: List[Dict[str, Any]], out: TextIO) -> None:
    print(f"Admins: {', '.join(str(m.get('login') or '') for m in admins)}", file=out)


def print_stale_repo(repository: StaleRepo, out: TextIO) -> None:
    print(f"# {repository.name}", file=out)
    print(f"_{repository.description}_", file=out)
    print("", file=out)
    print(f"Last updated: {repository.updated_at}", file=out)
    print(f"Last pushed: {repository.pushed_at}", file=out)
    print(f"Latest release: {repository.latest_release}", file=out)
    print("Last Commits:", file=out)
    for commit in repository.last_commits:
        print(format_commit_line(commit.committed_date, commit.author_name, commit.author_email), file=out)

    print("\n", file=out)
    print("Collaborators (assigned directly by name):", file=out)
    for collaborator in repository.collaborators:
        print(
            f"* {collaborator.name} <{collaborator.login}, {collaborator.email}> - {collaborator.permission}",
            file=out,
        )
    print("\n", file=out)
    print("\n\n", file=out)


def build_cached_client(
    *,
    token: Optional[str],
    cache_dir: Path,
    namespace: str,
    no_cache: bool = False,
    debug: bool = False,
) -> CachedGitHubClient:
    """Wire the store, the live client and the cache-aside wrapper together."""
    store = InMemoryKVCache() if no_cache else DiskKVCache(cache_dir=cache_dir, namespace=namespace)
    client = GitHubAPIClient(token, debug_rest=debug)
    return CachedGitHubClient(store, {"auth": client.token, "log": LOGGER_NAME}, client=client)


def generate_report(
    gh: CachedGitHubClient,
    org: str,
    *,
    stale_date: Optional[str] = None,
    limit: int = DEFAULT_STALE_REPOS_LIMIT,
    ttl_s: int = DEFAULT_CACHE_TTL_S,
    out: Optional[TextIO] = None,
) -> int:
    """Print the report for `org`; returns the number of stale repositories."""
    out = out if out is not None else sys.stdout

    admins = get_repository_admins(gh, org, retention_in_seconds=ttl_s)
    print_admins(admins, out)

    stale_repos = get_stale_repos(gh, org, stale_date=stale_date, limit=limit, retention_in_seconds=ttl_s)
    for repository in stale_repos:
        print_stale_repo(repository, out)

    gh.print_cache_stats(out)
    return len(stale_repos)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='Report stale repositories (no push in a year) of a GitHub organization',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Report for an organization (token from ~/.config/github-token or gh CLI login)
  %(prog)s --org SoftwareDefinedVehicle

  # Everything not pushed since 2024-01-01, showing cache hits
  %(prog)s --org SoftwareDefinedVehicle --stale-date 2024-01-01 -v

  # Bypass the on-disk cache
  %(prog)s --org SoftwareDefinedVehicle --no-cache
        """
    )

    parser.add_argument(
        '--org',
        required=True,
        help='GitHub organization login'
    )

    parser.add_argument(
        '--token',
        help='GitHub personal access token (default: ~/.config/github-token, then gh CLI config)'
    )

    parser.add_argument(
        '--cache-dir',
        type=str,
        default=None,
        help='Cache directory (default: $GITHUB_REPORT_CACHE_DIR or ~/.cache/github-report)'
    )

    parser.add_argument(
        '--namespace',
        default=DEFAULT_CACHE_NAMESPACE,
        help=f'Cache file name inside the cache directory (default: {DEFAULT_CACHE_NAMESPACE})'
    )

    parser.add_argument(
        '--ttl',
        type=int,
        default=DEFAULT_CACHE_TTL_S,
        help=f'Seconds to keep API responses cached, 0 = never expire (default: {DEFAULT_CACHE_TTL_S})'
    )

    parser.add_argument(
        '--stale-date',
        help='Report repositories not pushed since this date, YYYY-MM-DD (default: one year ago)'
    )

    parser.add_argument(
        '--limit',
        type=int,
        default=DEFAULT_STALE_REPOS_LIMIT,
        help=f'Maximum number of repositories to report (default: {DEFAULT_STALE_REPOS_LIMIT})'
    )

    parser.add_argument(
        '--no-cache',
        action='store_true',
        help='Do not read or write the on-disk cache (responses are still deduplicated in memory)'
    )

    parser.add_argument(
        '--prune-cache',
        action='store_true',
        help='Drop expired entries from the on-disk cache before running'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output (INFO level logging, shows cache hits)'
    )

    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug output (DEBUG level logging, adds cache misses and API calls)'
    )

    args = parser.parse_args(argv)
    logger = setup_logging(verbose=args.verbose, debug=args.debug, logger_name=LOGGER_NAME)

    if args.ttl < 0:
        print(f"Error: --ttl must be >= 0, got {args.ttl}", file=sys.stderr)
        return 1

    cache_dir = resolve_cache_path(args.cache_dir) if args.cache_dir else github_report_cache_dir()

    try:
        gh = build_cached_client(
            token=args.token,
            cache_dir=cache_dir,
            namespace=args.namespace,
            no_cache=args.no_cache,
            debug=args.debug,
        )
        if args.prune_cache and isinstance(gh.cache, DiskKVCache):
            removed = gh.cache.prune_expired()
            logger.info("Pruned %d expired cache entries from %s", removed, gh.cache.cache_file)

        count = generate_report(gh, args.org, stale_date=args.stale_date, limit=args.limit, ttl_s=args.ttl)
        logger.info("Reported %d stale repositories for %s", count, args.org)
        logger.debug("REST call stats: %s", gh.client.get_rest_call_stats())
    except (GitHubAPIError, CacheStoreError, CacheConfigError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
