from __future__ import annotations

from typing import Callable

import pytest
from sync_fakes import FakeSession

from revops_app.sync.adapters.base import SourceAdapter
from revops_app.sync.pipeline.controller import SyncRunController


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def scripted_controller(app) -> Callable[..., SyncRunController]:
    """Build a controller whose adapter factory always returns ``adapter``."""

    def _factory(adapter: SourceAdapter, **kwargs) -> SyncRunController:
        return SyncRunController(adapter_factory=lambda run: adapter, **kwargs)

    return _factory
