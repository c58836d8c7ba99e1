# conftest.py

import os
import tempfile
import uuid

import pytest

# FLASK_ENV must be set before app.py is imported so it loads TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from sophie_hub.cache import get_cache  # noqa: E402
from sophie_hub.models import User, db  # noqa: E402
from sophie_hub.utils.logging_config import setup_logging  # noqa: E402

TEST_SETTINGS = {
    "TESTING": True,
    "SECRET_KEY": "test-secret-key-for-testing-only",
    "MONITORING_ENABLED": True,
    "ENABLE_FILE_LOGGING": False,
    "ENABLE_CONSOLE_LOGGING": False,
    "LOG_LEVEL": "DEBUG",
    "SYNC_ENABLED": True,
    "SYNC_WORKER_ENABLED": False,
    "CRON_SECRET": "test-cron-secret",
    "ENCRYPTION_KEY": "0" * 64,
    "GOOGLE_SHEETS_ACCESS_TOKEN": None,
    "GOOGLE_SERVICE_ACCOUNT_FILE": None,
}


def _remove_quietly(fd, path):
    try:
        os.close(fd)
    except OSError:
        pass
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass


@pytest.fixture(scope="function")
def app():
    """Flask app with fresh tables and an empty settings cache for each test"""
    db_fd, temp_db = tempfile.mkstemp(prefix="sophie_hub_", suffix=f"_{uuid.uuid4().hex[:8]}.db")
    flask_app.config.update(TEST_SETTINGS, SQLALCHEMY_DATABASE_URI=f"sqlite:///{temp_db}")
    setup_logging(flask_app)

    try:
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            get_cache(flask_app).clear()
            yield flask_app
            db.session.remove()
            db.drop_all()
    finally:
        _remove_quietly(db_fd, temp_db)


@pytest.fixture(autouse=True)
def app_context(app):
    """Every test runs inside an app context"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def runner(app):
    return app.test_cli_runner()


def _make_user(email, name, role):
    user = User(email=email, name=name, role=role, is_active=True)
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def admin_user(app):
    return _make_user("admin@example.com", "Admin User", "admin")


@pytest.fixture
def staff_user(app):
    return _make_user("staff@example.com", "Staff User", "staff")


def _login(client, user):
    with client.session_transaction() as session:
        session["_user_id"] = str(user.id)
        session["_fresh"] = True


@pytest.fixture
def logged_in_admin(client, admin_user):
    """(client, user) with an admin session"""
    _login(client, admin_user)
    return client, admin_user


@pytest.fixture
def logged_in_staff(client, staff_user):
    """(client, user) with a non-admin session"""
    _login(client, staff_user)
    return client, staff_user
