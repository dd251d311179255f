"""Decide whether a discovered file holds runnable test cases.

Every file is testable unless its source convention marks it as an abstract
base: a PHP ``abstract class`` or a Python module whose classes are ABCs and
that defines no test functions.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from pathlib import Path

import structlog

logger = structlog.get_logger()

SkipPredicate = Callable[[str], bool]

_PHP_ABSTRACT = re.compile(
    r"^abstract\s+class[A-Za-z0-9_\s]{1,100}\{", re.IGNORECASE | re.MULTILINE
)
_PY_ABSTRACT = re.compile(
    r"^class\s+\w+\s*\([^)]*\b(?:ABC|metaclass\s*=\s*ABCMeta)\b", re.MULTILINE
)
_PY_TEST_CASE = re.compile(r"^\s*(?:async\s+)?def\s+test", re.MULTILINE)


def is_abstract_php(source: str) -> bool:
    return bool(_PHP_ABSTRACT.search(source))


def is_abstract_python(source: str) -> bool:
    return bool(_PY_ABSTRACT.search(source)) and not _PY_TEST_CASE.search(source)


SKIP_PREDICATES: dict[str, SkipPredicate] = {
    ".php": is_abstract_php,
    ".py": is_abstract_python,
}


def is_testable(path: Path, predicates: dict[str, SkipPredicate] | None = None) -> bool:
    """True unless the file's suffix has a predicate that flags it as skippable."""
    predicate = (predicates if predicates is not None else SKIP_PREDICATES).get(
        path.suffix.lower()
    )
    if predicate is None:
        return True
    try:
        source = path.read_text(errors="replace")
    except OSError as e:
        logger.warning("testability_read_failed", path=str(path), error=str(e))
        return False
    return not predicate(source)
