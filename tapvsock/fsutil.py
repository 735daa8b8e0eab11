"""File-system helpers."""

import os


def umask(mask: int) -> int:
    """Set the process umask and return the previous one; a no-op returning 0 on Windows."""
    if os.name == "nt":
        return 0
    return os.umask(mask)