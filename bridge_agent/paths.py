"""
Path Resolver
Relative paths are resolved against a connection's working directory,
never against the agent process's own cwd.
"""

import os
from typing import Optional


def resolve(base: str, path: str) -> str:
    """Expand ~, join onto `base` when relative, and normalise."""
    expanded = os.path.expanduser(path)
    if not os.path.isabs(expanded):
        expanded = os.path.join(base, expanded)
    return os.path.normpath(expanded)


def change_directory(base: str, target: str) -> Optional[str]:
    """
    Resolve a cd target.

    Returns the new absolute directory, or None when it does not exist or is
    not a directory.
    """
    resolved = resolve(base, target)
    if not os.path.isdir(resolved):
        return None
    return resolved
