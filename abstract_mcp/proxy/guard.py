"""
Directory allow-list enforcement.

The boolean checks never raise so they can be chained; the ``require_*``
helpers turn a failed check into a ValidationError for the tool surface.
"""

import logging
import os
from typing import Optional, Sequence

from .errors import DirectoryNotWritableError, PathNotAllowedError

logger = logging.getLogger(__name__)

WRITE_TEST_NAME = ".write-test"


def _resolve(path: str) -> str:
    return os.path.realpath(os.path.abspath(os.path.expanduser(path)))


def is_within_allowed(path: Optional[str], allowed_dirs: Sequence[str]) -> bool:
    """
    Check that ``path`` is an allowed directory or lies beneath one.

    Both sides are resolved first, so ``..`` segments and symlinks cannot
    escape the allow-list, and the comparison appends a separator so that a
    sibling such as ``/data-evil`` never matches ``/data``.
    """
    if not path:
        return False
    try:
        resolved = _resolve(path)
        for directory in allowed_dirs:
            if not directory:
                continue
            allowed = _resolve(directory)
            if resolved == allowed:
                return True
            prefix = allowed if allowed.endswith(os.sep) else allowed + os.sep
            if resolved.startswith(prefix):
                return True
    except (OSError, TypeError, ValueError) as e:
        logger.debug(f"Could not resolve path {path!r}: {e}")
    return False


async def is_writable_directory(path: Optional[str]) -> bool:
    """Check that ``path`` is an existing directory we can create files in."""
    if not path:
        return False
    try:
        if not os.path.isdir(path):
            return False
        marker = os.path.join(path, WRITE_TEST_NAME)
        with open(marker, "w"):
            pass
        os.remove(marker)
        return True
    except OSError as e:
        logger.debug(f"Directory {path} is not writable: {e}")
        return False


def require_within_allowed(
    path: str, allowed_dirs: Sequence[str], what: str = "Path"
) -> None:
    """Raise PathNotAllowedError unless ``path`` is inside the allow-list."""
    if not is_within_allowed(path, allowed_dirs):
        raise PathNotAllowedError(path, allowed_dirs, what=what)


async def require_writable_directory(path: str) -> None:
    """Raise DirectoryNotWritableError unless ``path`` is a writable directory."""
    if not await is_writable_directory(path):
        raise DirectoryNotWritableError(path)
