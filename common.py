"""
GitHub report utilities.

Shared constants and helpers for the GitHub organization report scripts.
"""

import logging
import os
from pathlib import Path
from typing import Optional

# Global logger for the module
_logger = logging.getLogger(__name__)

#
# Cache policy constants (single source of truth)
#
DEFAULT_CACHE_TTL_S: int = 3600
# ^ Retention (seconds) for cached API responses.
#   One hour keeps repeated runs during development off the rate limit while still
#   picking up organization changes within the same working session.
DEFAULT_CACHE_NAMESPACE: str = "close-stale-repos"
# ^ Cache file name (without .json) under the cache directory.
DEFAULT_HTTP_TIMEOUT_S: int = 30
# ^ Per-request timeout for GitHub REST/GraphQL calls.
DEFAULT_STALE_AFTER_DAYS: int = 365
# ^ A repository with no push in this many days is reported as stale.
DEFAULT_STALE_REPOS_LIMIT: int = 15
# ^ Max repositories returned by the stale-repository search (GraphQL `first:`).

GITHUB_API_BASE_URL: str = "https://api.github.com"


# ======================================================================================
# IMPORTANT: Cache location policy
#
# All *persistent* caches MUST live under:
#   - $GITHUB_REPORT_CACHE_DIR     (explicit override), else
#   - ~/.cache/github-report       (default)
#
# Do NOT write caches into a repo checkout (e.g. `./.cache/...`): it dirties the
# checkout and scatters caches across clones.
#
# `resolve_cache_path()` strips a leading ".cache/" so callers can still pass
# ".cache/foo" and land in the global cache dir.
# ======================================================================================

def github_report_cache_dir() -> Path:
    """Return the cache directory for the report scripts.

    Resolution order:
    - GITHUB_REPORT_CACHE_DIR (explicit override)
    - ~/.cache/github-report
    """
    override = os.environ.get("GITHUB_REPORT_CACHE_DIR")
    if override:
        return Path(override).expanduser()

    return Path.home() / ".cache" / "github-report"


def resolve_cache_path(cache_path: str) -> Path:
    """Resolve a cache path into the global cache directory.

    - Absolute paths are used as-is.
    - Relative paths are rooted under `github_report_cache_dir()`.
    - A leading ".cache/" (or a bare ".cache") is stripped.
    """
    p = Path(cache_path).expanduser()
    if p.is_absolute():
        return p

    # Normalize any leading "./"
    rel = Path(*p.parts[1:]) if p.parts[:1] == (".",) else p

    if rel.parts[:1] == (".cache",):
        rel = Path(*rel.parts[1:])

    return github_report_cache_dir() / rel


def setup_logging(verbose: bool = False, debug: bool = False, logger_name: Optional[str] = None) -> logging.Logger:
    """Configure a stderr handler for the report loggers.

    WARNING by default, INFO with verbose, DEBUG with debug. The `common_github` and
    `cache` package loggers share the handler so cache-hit notices show up under --verbose.

    Levels live on the loggers only (the handler stays at NOTSET), so calling this
    again with other flags takes effect even though the handler is only added once.
    """
    if debug:
        level = logging.DEBUG
    elif verbose:
        level = logging.INFO
    else:
        level = logging.WARNING

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))

    logger = logging.getLogger(logger_name or "github_report")
    for name in (logger.name, "common", "common_github", "cache"):
        lg = logging.getLogger(name)
        lg.setLevel(level)
        if not lg.handlers:
            lg.addHandler(handler)

    return logger
