"""Shared application helpers: logging, alerting, monitoring, feature flags."""
