"""Resource-specific GitHub API wrappers for the organization report.

Each module in this package owns:
- the API call(s) for one resource (through CachedGitHubClient)
- input validation for that resource
- normalizing the raw response into the shape the report prints
"""
