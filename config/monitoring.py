# config/monitoring.py

import json
import os

try:  # pragma: no cover - optional dependency at runtime
    from prometheus_client import Counter, Histogram
except ImportError:  # pragma: no cover
    Counter = None
    Histogram = None


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() == "true"


def _env_csv(name: str) -> list:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_json_dict(name: str) -> dict:
    raw = os.environ.get(name)
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class MonitoringConfig:
    """Health, metrics, logging and alert settings for the sync service."""

    MONITORING_ENABLED = _env_flag("MONITORING_ENABLED")
    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")
    HEALTH_CHECK_ENDPOINT = os.environ.get("HEALTH_CHECK_ENDPOINT", "/health")
    # Sync API calls slower than this are logged as warnings
    SLOW_REQUEST_THRESHOLD_SECONDS = float(os.environ.get("SLOW_REQUEST_THRESHOLD_SECONDS", 10))

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))
    ENABLE_FILE_LOGGING = _env_flag("ENABLE_FILE_LOGGING", "true")
    ENABLE_CONSOLE_LOGGING = _env_flag("ENABLE_CONSOLE_LOGGING", "true")

    ENABLE_EMAIL_ALERTS = _env_flag("ENABLE_EMAIL_ALERTS")
    MAIL_SERVER = os.environ.get("MAIL_SERVER")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", 587))
    MAIL_USE_TLS = _env_flag("MAIL_USE_TLS", "true")
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM = os.environ.get("MAIL_FROM", "revops-sync@example.com")
    ADMIN_EMAILS = _env_csv("ADMIN_EMAILS")

    ENABLE_SLACK_ALERTS = _env_flag("ENABLE_SLACK_ALERTS")
    SLACK_WEBHOOK_URL = os.environ.get("SLACK_WEBHOOK_URL")

    ENABLE_WEBHOOK_ALERTS = _env_flag("ENABLE_WEBHOOK_ALERTS")
    WEBHOOK_URL = os.environ.get("WEBHOOK_URL")
    WEBHOOK_HEADERS = _env_json_dict("WEBHOOK_HEADERS")

    # Alerts allowed per error key per rolling hour
    EMAIL_ALERT_RATE_LIMIT = int(os.environ.get("EMAIL_ALERT_RATE_LIMIT", 5))
    SLACK_ALERT_RATE_LIMIT = int(os.environ.get("SLACK_ALERT_RATE_LIMIT", 10))
    WEBHOOK_ALERT_RATE_LIMIT = int(os.environ.get("WEBHOOK_ALERT_RATE_LIMIT", 20))

    # Sources whose failed runs raise alerts; empty means every source
    SYNC_ALERT_SOURCES = _env_csv("SYNC_ALERT_SOURCES")

    APP_NAME = os.environ.get("APP_NAME", "revops-sync")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"
    ENABLE_EMAIL_ALERTS = False
    ENABLE_SLACK_ALERTS = False
    ENABLE_WEBHOOK_ALERTS = False


class ProductionMonitoringConfig(MonitoringConfig):
    LOG_FORMAT = "json"
    ENABLE_CONSOLE_LOGGING = False  # container runtime captures stdout

    EMAIL_ALERT_RATE_LIMIT = 3
    SLACK_ALERT_RATE_LIMIT = 5
    WEBHOOK_ALERT_RATE_LIMIT = 10


class TestingMonitoringConfig(MonitoringConfig):
    MONITORING_ENABLED = False
    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False
    ENABLE_EMAIL_ALERTS = False
    ENABLE_SLACK_ALERTS = False
    ENABLE_WEBHOOK_ALERTS = False
    SYNC_ALERT_SOURCES: list = []


class SyncMonitoring:
    """Prometheus metric helpers for the sync JSON API."""

    API_REQUEST_COUNTER = (
        Counter(
            "sync_api_requests_total",
            "Total sync API requests.",
            labelnames=("endpoint", "method", "status"),
        )
        if Counter
        else None
    )
    API_REQUEST_LATENCY = (
        Histogram(
            "sync_api_request_seconds",
            "Latency histogram for sync API requests.",
            labelnames=("endpoint", "method"),
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 15, 60),
        )
        if Histogram
        else None
    )
    UNIFY_BATCH_SIZE = (
        Histogram(
            "sync_unify_batch_size",
            "Number of contacts submitted per unify-identity batch request.",
            buckets=(1, 5, 10, 25, 50, 100, 250, 500),
        )
        if Histogram
        else None
    )

    @classmethod
    def record_api_request(cls, *, endpoint: str, method: str, status_code: int, duration_seconds: float):
        if cls.API_REQUEST_COUNTER:
            cls.API_REQUEST_COUNTER.labels(endpoint=endpoint, method=method, status=str(status_code)).inc()
        if cls.API_REQUEST_LATENCY:
            cls.API_REQUEST_LATENCY.labels(endpoint=endpoint, method=method).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_unify_batch(cls, *, contact_count: int):
        if cls.UNIFY_BATCH_SIZE:
            cls.UNIFY_BATCH_SIZE.observe(float(max(contact_count, 0)))
