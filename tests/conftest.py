"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages and
provides the shared database fixtures.
"""

from __future__ import annotations

import sys
from collections.abc import Generator
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

# Insert local src directory at the beginning of sys.path
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

# Force reimport of testplane modules if already imported
for module_name in list(sys.modules.keys()):
    if module_name.startswith("testplane"):
        del sys.modules[module_name]

if TYPE_CHECKING:
    from testplane.store.database import Database
    from testplane.store.repository import Store


@pytest.fixture
def temp_db(tmp_path: Path) -> Generator[Database, None, None]:
    """Fresh SQLite database with schema."""
    from testplane.store.database import Database

    db = Database(tmp_path / "state.db")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def store(temp_db: Database) -> Store:
    from testplane.store.repository import Store

    return Store(temp_db)
