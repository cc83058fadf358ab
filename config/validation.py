# config/validation.py

"""
Environment variable validation for the revops sync service.
Validates required environment variables at startup.
"""

import os
import sys
from typing import List, Tuple

SOURCE_CREDENTIALS = {
    "ghl": ("GHL_API_KEY", "GHL_LOCATION_ID"),
    "manychat": ("MANYCHAT_API_KEY",),
    "stripe": ("STRIPE_SECRET_KEY",),
    "paypal": ("PAYPAL_CLIENT_ID", "PAYPAL_CLIENT_SECRET"),
    "smart_recovery": ("STRIPE_SECRET_KEY",),
}


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    secret_key = os.environ.get("SECRET_KEY", "")
    if not secret_key or secret_key in {"your-secret-key", "your_secret_key"}:
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to your PostgreSQL connection string.")

    if os.environ.get("SYNC_ENABLED", "false").lower() == "true":
        if not os.environ.get("SYNC_ADMIN_API_KEY"):
            errors.append("SYNC_ADMIN_API_KEY is required when SYNC_ENABLED=true")
        sources = [item.strip().lower() for item in os.environ.get("SYNC_SOURCES", "").split(",") if item.strip()]
        for source in sources:
            for key in SOURCE_CREDENTIALS.get(source, ()):
                if not os.environ.get(key):
                    errors.append(f"{key} is required when '{source}' is listed in SYNC_SOURCES")

    if os.environ.get("SYNC_WORKER_ENABLED", "false").lower() == "true":
        if not os.environ.get("CELERY_BROKER_URL") and not os.environ.get("CELERY_SQLITE_PATH"):
            errors.append("CELERY_BROKER_URL or CELERY_SQLITE_PATH is required when SYNC_WORKER_ENABLED=true")

    if os.environ.get("ENABLE_EMAIL_ALERTS", "false").lower() == "true":
        for key in ("MAIL_SERVER", "MAIL_USERNAME", "MAIL_PASSWORD"):
            if not os.environ.get(key):
                errors.append(f"{key} is required when ENABLE_EMAIL_ALERTS=true")

    if os.environ.get("ENABLE_SLACK_ALERTS", "false").lower() == "true":
        if not os.environ.get("SLACK_WEBHOOK_URL"):
            errors.append("SLACK_WEBHOOK_URL is required when ENABLE_SLACK_ALERTS=true")

    if os.environ.get("ENABLE_WEBHOOK_ALERTS", "false").lower() == "true":
        if not os.environ.get("WEBHOOK_URL"):
            errors.append("WEBHOOK_URL is required when ENABLE_WEBHOOK_ALERTS=true")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
