"""
Admin API-key authentication for the sync JSON API.

Requests carry the key in ``X-ADMIN-KEY`` or ``Authorization: Bearer <key>``.
Flask-Login's request loader turns a matching key into an ``AdminPrincipal``
so views can rely on ``current_user.is_authenticated``.
"""

from __future__ import annotations

import hmac

from flask import Flask, current_app
from flask_login import LoginManager, UserMixin

ADMIN_HEADER = "X-ADMIN-KEY"

login_manager = LoginManager()


class AdminPrincipal(UserMixin):
    """The caller holding the configured admin key."""

    id = "sync-admin"

    def get_id(self) -> str:
        return self.id


def extract_api_key(request) -> str | None:
    key = request.headers.get(ADMIN_HEADER)
    if key:
        return key.strip()
    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def is_admin_key_configured(app: Flask | None = None) -> bool:
    config = (app or current_app).config
    return bool(config.get("SYNC_ADMIN_API_KEY"))


@login_manager.request_loader
def load_admin_from_request(request):
    expected = current_app.config.get("SYNC_ADMIN_API_KEY")
    provided = extract_api_key(request)
    if not expected or not provided:
        return None
    if hmac.compare_digest(provided.encode("utf-8"), str(expected).encode("utf-8")):
        return AdminPrincipal()
    return None


@login_manager.user_loader
def load_admin_from_session(user_id):
    # API-only; sessions never carry an authenticated principal
    return None


def init_auth(app: Flask) -> LoginManager:
    login_manager.init_app(app)
    app.extensions["login_manager"] = login_manager
    return login_manager
