"""Shared test fixtures for taskroulette."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskroulette.auth import Credentials, StaticAuth
from taskroulette.store import GraphStore
from taskroulette.sync.remote import LocalStore


class FakeClock:
    """Epoch-ms clock that advances by one tick per call."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        self.now += 1
        return self.now


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary TaskRoulette home directory."""
    home = tmp_path / ".taskroulette"
    home.mkdir()
    return home


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock):
    """An in-memory graph with a deterministic clock."""
    s = GraphStore(":memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def other_store(clock):
    """A second device sharing the same clock."""
    s = GraphStore(":memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def remote(tmp_path: Path) -> LocalStore:
    """A directory-backed remote echo."""
    return LocalStore(tmp_path / "remote", page_size=2)


@pytest.fixture
def creds() -> Credentials:
    return Credentials("user-1", "token")


@pytest.fixture
def static_auth() -> StaticAuth:
    return StaticAuth("user-1")
