import logging
import re

import git
from git.exc import GitError

logger = logging.getLogger(__name__)

FALLBACK_IDENTITY = "default_user"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_identity(name: str) -> str:
    return _UNSAFE_CHARS.sub("_", name)


def resolve_identity() -> str:
    """Return the directory namespace for the current git user.

    Reads the global ``user.name``; falls back to ``default_user`` when it is
    unset or git cannot be run. The value only namespaces storage, it is never
    used for authentication.
    """
    try:
        name = git.Git().config("--global", "user.name").strip()
    except (GitError, OSError) as e:
        logger.debug(f"Could not read git user.name: {e}")
        return FALLBACK_IDENTITY
    if not name:
        return FALLBACK_IDENTITY
    return sanitize_identity(name)
