"""Path-prefix exclusion filter applied during test synchronization."""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import PurePath


def is_excluded(
    exclusions: Iterable[str] | None,
    base_path: str | os.PathLike[str] | None,
    file: str | PurePath = "",
) -> bool:
    """Check whether a path falls under any excluded prefix.

    A path object is taken as-is. A bare name is joined onto ``base_path``.
    With no ``file`` the base path itself is checked.
    """
    if isinstance(file, PurePath):
        path = str(file)
    elif file:
        path = os.path.join(os.fspath(base_path or ""), file)
    else:
        path = os.fspath(base_path or "")

    return any(path.startswith(prefix) for prefix in exclusions or () if prefix)
