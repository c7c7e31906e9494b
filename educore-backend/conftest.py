import os
import tempfile

import pytest

# main.py builds its store at import time; keep it away from the working tree
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="educore-test-"))
os.environ["DB_TYPE"] = "file"
os.environ.setdefault("APP_ENV", "development")

from auth_utils import encrypt_password  # noqa: E402
from db_manager import DatabaseManager  # noqa: E402


@pytest.fixture
def db(tmp_path):
    return DatabaseManager(base_dir=str(tmp_path / "data"))


@pytest.fixture
def make_user(db):
    """Create a user with a known plaintext password"""

    def _make_user(name, email, role, password="Secret123!", **fields):
        return db.create_user({"name": name, "email": email, "role": role, **fields}, encrypt_password(password))

    return _make_user
