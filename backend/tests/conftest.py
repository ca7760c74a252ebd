import os
import sys

import pytest


# Allow running pytest from either the repo root or from within `backend/`.
# Tests import `backend.*`, which requires the repo root on sys.path.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


@pytest.fixture
def store(tmp_path):
    # Each test gets its own terminal-local sqlite file.
    from backend.app.local_store import LocalStore

    return LocalStore(str(tmp_path / "pos-local.sqlite"))
