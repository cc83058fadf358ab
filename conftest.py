# conftest.py

import os
import tempfile
import uuid
from unittest.mock import patch

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig
os.environ["FLASK_ENV"] = "testing"

from app import app as flask_app  # noqa: E402
from revops_app.models import CanonicalClient, LifecycleStage, SyncRun, SyncRunStatus, db  # noqa: E402

ADMIN_KEY = "test-admin-key"


@pytest.fixture(scope="function")
def app(tmp_path):
    """Create and configure a test Flask application"""

    # Each test gets its own temporary database file
    db_fd, temp_db = tempfile.mkstemp(suffix=f"_{uuid.uuid4().hex[:8]}.db")

    try:
        flask_app.config.update(
            {
                "TESTING": True,
                "SQLALCHEMY_DATABASE_URI": f"sqlite:///{temp_db}",
                "SQLALCHEMY_ECHO": False,
                "SECRET_KEY": "test-secret-key-for-testing-only",
                "MONITORING_ENABLED": False,
                "ENABLE_FILE_LOGGING": False,
                "ENABLE_CONSOLE_LOGGING": True,
                "LOG_LEVEL": "DEBUG",
                "ENABLE_EMAIL_ALERTS": False,
                "ENABLE_SLACK_ALERTS": False,
                "ENABLE_WEBHOOK_ALERTS": False,
                "SYNC_ENABLED": True,
                "SYNC_SOURCES": ("ghl", "manychat", "stripe", "paypal", "smart_recovery"),
                "SYNC_ADMIN_API_KEY": ADMIN_KEY,
                "SYNC_WORKER_ENABLED": False,
                "SYNC_MERGE_POLICY_PATH": None,
                "STRIPE_SECRET_KEY": "sk_test_123",
                "MANYCHAT_API_KEY": "mc-test-key",
                "GHL_API_KEY": "ghl-test-key",
                "GHL_LOCATION_ID": "loc-1",
                "PAYPAL_CLIENT_ID": "pp-client",
                "PAYPAL_CLIENT_SECRET": "pp-secret",
                "RECOVERY_API_DELAY_MS": 0,
                "RECOVERY_INTER_BATCH_DELAY_SECONDS": 0.0,
                "RECOVERY_STATE_PATH": str(tmp_path / "recovery_state.json"),
            }
        )

        # Re-initialize logging with updated config
        from revops_app.utils.logging_config import setup_logging

        setup_logging(flask_app)

        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            yield flask_app
            db.session.remove()
            db.session.close()
            db.drop_all()
    finally:
        try:
            os.close(db_fd)
        except OSError:
            pass
        try:
            if os.path.exists(temp_db):
                os.unlink(temp_db)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


@pytest.fixture
def admin_headers():
    """Headers carrying the configured admin key"""
    return {"X-ADMIN-KEY": ADMIN_KEY}


@pytest.fixture
def client_factory(app):
    """Create canonical clients with sensible defaults"""

    def _factory(**overrides) -> CanonicalClient:
        values = {"lifecycle_stage": LifecycleStage.LEAD}
        values.update(overrides)
        client = CanonicalClient(**values)
        db.session.add(client)
        db.session.commit()
        return client

    return _factory


@pytest.fixture
def run_factory(app):
    """Create sync runs directly, bypassing the controller"""

    def _factory(*, source: str = "manychat", status: SyncRunStatus = SyncRunStatus.COMPLETED, **overrides) -> SyncRun:
        run = SyncRun(source=source, status=status, **overrides)
        db.session.add(run)
        db.session.commit()
        return run

    return _factory


@pytest.fixture
def mock_alert():
    """Capture sync failure alerts"""
    with patch("revops_app.utils.error_handler.ErrorAlertingSystem.send_error_alert") as mock_send:
        yield mock_send


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
