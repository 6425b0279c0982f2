"""Pytest configuration for project-service tests.

Puts the service's src directory (and the services root, for `shared`) first
on sys.path and points the database at a throwaway SQLite file before any
persistence module creates its engine.
"""

import os
import sys
import tempfile
from pathlib import Path

SERVICE_SRC = Path(__file__).resolve().parents[1] / "src"
SERVICES_ROOT = Path(__file__).resolve().parents[2]
for path in (SERVICES_ROOT, SERVICE_SRC):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

_TEST_DB_DIR = tempfile.mkdtemp(prefix="project-service-tests-")
os.environ["PROJECT_DB_URL"] = f"sqlite:///{Path(_TEST_DB_DIR) / 'projects.db'}"
os.environ.setdefault("CATEGORIZER_PROVIDER", "deterministic")

from persistence.database import init_db  # noqa: E402

init_db()
