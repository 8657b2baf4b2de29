from __future__ import annotations

import logging

import pytest

from tests.fakes import FakeRuntimeClient


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("dockwatch.tests")


@pytest.fixture
def fake_client() -> FakeRuntimeClient:
    return FakeRuntimeClient()
