"""Shared pytest fixtures for relay tests."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator

import pytest

from tests.mocks import FakeCancellationToken, StubTokenClient


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    """Undo the handlers and levels installed by setup_logging."""
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    logging.getLogger("m365relay").setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory) -> None:
    """Keep RELAY_* variables and a stray .env out of every test."""
    for name in list(os.environ):
        if name.startswith("RELAY_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path_factory.mktemp("cwd"))


@pytest.fixture
def cancel_token() -> FakeCancellationToken:
    return FakeCancellationToken()


@pytest.fixture
def token_client() -> StubTokenClient:
    return StubTokenClient()
