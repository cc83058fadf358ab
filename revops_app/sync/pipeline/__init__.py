"""Sync pipeline: normalization, staging, identity resolution, and run control."""
