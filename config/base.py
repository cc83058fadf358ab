# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_source_list(value):
    """
    Parse a comma-separated source list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized source identifiers.
    """
    if not value:
        return ()

    seen = set()
    sources = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        sources.append(item)
    return tuple(sources)


def _parse_int(value, default, *, minimum=None):
    """Parse an integer setting, falling back to ``default`` on bad input."""
    try:
        number = int(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        number = minimum
    return number


def _parse_float(value, default, *, minimum=None):
    try:
        number = float(value) if value not in (None, "") else default
    except (TypeError, ValueError):
        number = default
    if minimum is not None and number < minimum:
        number = minimum
    return number


class Config:
    # SECRET_KEY must be set via environment variable in production
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY environment variable before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Sync configuration
    SYNC_ENABLED = _coerce_bool(os.environ.get("SYNC_ENABLED"), default=False)
    SYNC_SOURCES = _parse_source_list(os.environ.get("SYNC_SOURCES", ""))

    if SYNC_ENABLED and not SYNC_SOURCES:
        raise ValueError("SYNC_ENABLED is true but SYNC_SOURCES is empty. Provide at least one source name.")

    SYNC_ADMIN_API_KEY = os.environ.get("SYNC_ADMIN_API_KEY")
    SYNC_WORKER_ENABLED = _coerce_bool(os.environ.get("SYNC_WORKER_ENABLED"), default=False)
    SYNC_STALE_TIMEOUT_MINUTES = _parse_int(os.environ.get("SYNC_STALE_TIMEOUT_MINUTES"), 30, minimum=1)
    SYNC_MAX_PAGES = _parse_int(os.environ.get("SYNC_MAX_PAGES"), 5000, minimum=1)
    SYNC_RESOLVE_BATCH_SIZE = _parse_int(os.environ.get("SYNC_RESOLVE_BATCH_SIZE"), 10, minimum=1)
    SYNC_HTTP_TIMEOUT_SECONDS = _parse_float(os.environ.get("SYNC_HTTP_TIMEOUT_SECONDS"), 30.0, minimum=1.0)
    SYNC_MERGE_POLICY_PATH = os.environ.get("SYNC_MERGE_POLICY_PATH")

    # Source credentials
    GHL_API_KEY = os.environ.get("GHL_API_KEY")
    GHL_LOCATION_ID = os.environ.get("GHL_LOCATION_ID")
    GHL_PAGE_SIZE = _parse_int(os.environ.get("GHL_PAGE_SIZE"), 100, minimum=1)
    MANYCHAT_API_KEY = os.environ.get("MANYCHAT_API_KEY")
    MANYCHAT_PAGE_SIZE = _parse_int(os.environ.get("MANYCHAT_PAGE_SIZE"), 100, minimum=1)
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")

    # Payment recovery
    RECOVERY_BATCH_SIZE = _parse_int(os.environ.get("RECOVERY_BATCH_SIZE"), 15, minimum=1)
    RECOVERY_API_DELAY_MS = _parse_int(os.environ.get("RECOVERY_API_DELAY_MS"), 150, minimum=0)
    RECOVERY_MAX_BATCHES = _parse_int(os.environ.get("RECOVERY_MAX_BATCHES"), 500, minimum=1)
    RECOVERY_INTER_BATCH_DELAY_SECONDS = _parse_float(
        os.environ.get("RECOVERY_INTER_BATCH_DELAY_SECONDS"), 1.0, minimum=0.0
    )
    RECOVERY_STATE_PATH = os.environ.get(
        "RECOVERY_STATE_PATH",
        os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "instance", "recovery_state.json"),
    )

    # Celery worker
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI needs forward slashes on Windows
    db_path = os.path.join(instance_path, "revops_sync_dev.db")
    db_path_normalized = db_path.replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = False
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    SYNC_ENABLED = True
    SYNC_SOURCES = ("ghl", "manychat", "stripe", "paypal", "smart_recovery")
    SYNC_ADMIN_API_KEY = "test-admin-key"
    RECOVERY_API_DELAY_MS = 0
    RECOVERY_INTER_BATCH_DELAY_SECONDS = 0.0
    CELERY_BROKER_URL = "memory://"
    CELERY_RESULT_BACKEND = "cache+memory://"
    CELERY_CONFIG = {"task_always_eager": True, "task_eager_propagates": True}


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
