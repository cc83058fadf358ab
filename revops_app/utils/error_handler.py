"""
Error alerting for sync failures and unhandled request errors.

Alerts go out by email (smtplib), Slack incoming webhook, or a generic JSON
webhook, each rate limited per error key over a rolling hour. Delivery
problems are logged and never propagate to the caller.
"""

from __future__ import annotations

import smtplib
import traceback
from datetime import datetime, timedelta, timezone
from email.mime.text import MIMEText
from typing import Any, Mapping

import requests
from flask import current_app, has_app_context, has_request_context, request

RATE_WINDOW = timedelta(hours=1)
DEFAULT_RATE_LIMIT = 5


class ErrorAlertingSystem:
    """Fan an error out to the alert channels enabled in app config."""

    def __init__(self, app=None):
        self.app = app
        self.alert_methods: list[str] = []
        self.rate_limits: dict[str, int] = {}
        self.error_counts: dict[str, list[datetime]] = {}
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        self.app = app
        config = app.config
        self.alert_methods = []
        if config.get("ENABLE_EMAIL_ALERTS"):
            self.alert_methods.append("email")
        if config.get("ENABLE_SLACK_ALERTS"):
            self.alert_methods.append("slack")
        if config.get("ENABLE_WEBHOOK_ALERTS"):
            self.alert_methods.append("webhook")
        self.rate_limits = {
            "email": int(config.get("EMAIL_ALERT_RATE_LIMIT", 5)),
            "slack": int(config.get("SLACK_ALERT_RATE_LIMIT", 10)),
            "webhook": int(config.get("WEBHOOK_ALERT_RATE_LIMIT", 20)),
        }

    @property
    def logger(self):
        return self.app.logger

    def should_send_alert(self, alert_type: str, error_key: str) -> bool:
        """Return True and record the attempt when ``error_key`` is under its limit."""

        now = datetime.now(timezone.utc)
        recent = [stamp for stamp in self.error_counts.get(error_key, []) if now - stamp < RATE_WINDOW]
        limit = self.rate_limits.get(alert_type, DEFAULT_RATE_LIMIT)
        if len(recent) >= limit:
            self.error_counts[error_key] = recent
            return False
        recent.append(now)
        self.error_counts[error_key] = recent
        return True

    def _build_payload(self, error: BaseException, context: Mapping[str, Any] | None) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "app": self.app.config.get("APP_NAME", "revops-sync"),
            "version": self.app.config.get("APP_VERSION", "1.0.0"),
            "error_type": type(error).__name__,
            "error_message": str(error),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "context": dict(context or {}),
        }
        if error.__traceback__ is not None:
            payload["traceback"] = "".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            )[-4000:]
        return payload

    def send_error_alert(self, error: BaseException, context: Mapping[str, Any] | None = None) -> None:
        payload = self._build_payload(error, context)
        error_key = f"{payload['error_type']}_{payload['context'].get('endpoint') or payload['context'].get('sync_source', '')}"
        for method in self.alert_methods:
            if not self.should_send_alert(method, error_key):
                self.logger.info("Alert rate limited", extra={"alert_method": method, "error_key": error_key})
                continue
            sender = getattr(self, f"_send_{method}_alert")
            try:
                sender(payload)
            except Exception:
                self.logger.exception("Failed to deliver %s alert", method)

    def _send_email_alert(self, payload: Mapping[str, Any]) -> None:
        config = self.app.config
        server = config.get("MAIL_SERVER")
        recipients = [addr for addr in (config.get("ADMIN_EMAILS") or []) if addr]
        if not server or not recipients:
            self.logger.warning("Email alerts enabled but MAIL_SERVER or ADMIN_EMAILS missing")
            return
        body = "\n".join(f"{key}: {value}" for key, value in payload.items() if key != "traceback")
        if payload.get("traceback"):
            body += f"\n\n{payload['traceback']}"
        message = MIMEText(body)
        message["Subject"] = f"[{payload['app']}] {payload['error_type']}: {payload['error_message'][:120]}"
        message["From"] = config.get("MAIL_FROM", "noreply@example.com")
        message["To"] = ", ".join(recipients)

        smtp = smtplib.SMTP(server, int(config.get("MAIL_PORT", 587)), timeout=10)
        try:
            if config.get("MAIL_USE_TLS", True):
                smtp.starttls()
            if config.get("MAIL_USERNAME"):
                smtp.login(config["MAIL_USERNAME"], config.get("MAIL_PASSWORD") or "")
            smtp.sendmail(message["From"], recipients, message.as_string())
        finally:
            smtp.quit()

    def _send_slack_alert(self, payload: Mapping[str, Any]) -> None:
        url = self.app.config.get("SLACK_WEBHOOK_URL")
        if not url:
            self.logger.warning("Slack alerts enabled but SLACK_WEBHOOK_URL missing")
            return
        context = payload.get("context") or {}
        fields = [{"title": key, "value": str(value), "short": True} for key, value in context.items()]
        response = requests.post(
            url,
            json={
                "text": f"{payload['app']}: {payload['error_type']}",
                "attachments": [{"color": "danger", "text": payload["error_message"], "fields": fields}],
            },
            timeout=10,
        )
        response.raise_for_status()

    def _send_webhook_alert(self, payload: Mapping[str, Any]) -> None:
        url = self.app.config.get("WEBHOOK_URL")
        if not url:
            self.logger.warning("Webhook alerts enabled but WEBHOOK_URL missing")
            return
        headers = {"Content-Type": "application/json", **dict(self.app.config.get("WEBHOOK_HEADERS") or {})}
        response = requests.post(url, json=dict(payload), headers=headers, timeout=10)
        response.raise_for_status()


error_alerter = ErrorAlertingSystem()


def init_error_alerting(app) -> ErrorAlertingSystem:
    """Configure the shared alerter and report unhandled request errors."""

    error_alerter.init_app(app)
    app.extensions["error_alerter"] = error_alerter

    @app.errorhandler(500)
    def _handle_internal_error(error):  # pragma: no cover - exercised through the app
        original = getattr(error, "original_exception", None) or error
        context: dict[str, Any] = {}
        if has_request_context():
            context = {"endpoint": request.path, "method": request.method}
        error_alerter.send_error_alert(original, context)
        from revops_app.models import db

        db.session.rollback()
        return {"error": "Internal server error"}, 500

    return error_alerter


def alert_sync_failure(run, exc: BaseException) -> None:
    """Send an alert for a sync run that just moved to failed."""

    if not has_app_context():
        return
    alerter = current_app.extensions.get("error_alerter")
    if alerter is None or not alerter.alert_methods:
        return
    watched = current_app.config.get("SYNC_ALERT_SOURCES") or ()
    if watched and getattr(run, "source", None) not in watched:
        return
    alerter.send_error_alert(
        exc,
        {
            "sync_run_id": getattr(run, "id", None),
            "sync_source": getattr(run, "source", None),
            "error_code": getattr(exc, "code", None),
        },
    )
