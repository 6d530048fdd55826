"""Pytest configuration and shared fixtures."""

import pytest

from fakes import FakeStream


@pytest.fixture
def stream() -> FakeStream:
    """A fresh in-memory transport per test."""
    return FakeStream()
