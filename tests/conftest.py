"""
Shared fixtures for the test-suite.
"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from cost_governor.core.pricing import DEFAULT_PRICING
from cost_governor.storage.models import ModelPricing
from cost_governor.storage.repository import LedgerRepository, initialize_schema

# One test token costs exactly one cent, so 1000 prompt tokens cost $1.00
FLAT_PRICING = ModelPricing("test", "flat", 1.0, 1.0)


class FakeClock:
    """Controllable replacement for ``datetime.now``."""

    def __init__(self, start: datetime = datetime(2026, 3, 10, 12, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingTransport:
    """Alert transport that keeps every message it is asked to send."""

    def __init__(self):
        self.messages = []

    def send(self, message, config):
        self.messages.append((message, config))

    @property
    def titles(self):
        return [m.title for m, _ in self.messages]


class FailingTransport:
    def send(self, message, config):
        raise RuntimeError("channel down")


def usage_response(prompt_tokens: int, completion_tokens: int = 0) -> dict:
    return {"usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens}}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "test.db")


@pytest.fixture
def repository(db_path):
    initialize_schema(db_path, seed_pricing=DEFAULT_PRICING + [FLAT_PRICING])
    return LedgerRepository(db_path)
