"""GitHub repository path parsing utilities."""

from __future__ import annotations

import re

from repotrack_api.errors import InvalidPathError

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_HOST_RE = re.compile(r"^(?:www\.)?github\.com/", re.IGNORECASE)
_SSH_RE = re.compile(r"^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?/?$")


def parse_repository_path(repo_path: str) -> tuple[str, str]:
    """Parse a repository reference into (owner, repo).

    Supports:
    - owner/repo
    - https://github.com/owner/repo
    - github.com/owner/repo
    - git@github.com:owner/repo

    A trailing ``.git`` suffix and a trailing slash are tolerated.

    Args:
        repo_path: Repository reference as typed by the user.

    Returns:
        Tuple of (owner, repo_name).

    Raises:
        InvalidPathError: If the reference does not name exactly one repository.
    """
    if not repo_path or not repo_path.strip():
        raise InvalidPathError(repo_path or "")

    path = repo_path.strip()

    ssh_match = _SSH_RE.match(path)
    if ssh_match:
        return ssh_match.group(1), ssh_match.group(2)

    path = _SCHEME_RE.sub("", path)
    path = _HOST_RE.sub("", path)
    path = path.rstrip("/")
    if path.lower().endswith(".git"):
        path = path[: -len(".git")]
    path = path.rstrip("/")

    parts = path.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise InvalidPathError(repo_path)
    return parts[0], parts[1]


def canonical_repo_url(owner: str, repo: str) -> str:
    """Browser URL stored on the project row."""
    return f"https://github.com/{owner}/{repo}"
