"""
tests/conftest.py
"""
from __future__ import annotations

import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

from myhub.feed import AssetStore, NoteLog
from myhub.hub import app

_ip_counter = itertools.count(1)


@pytest.fixture(scope="session", autouse=True)
def _configure_app() -> None:
    app.config.update(
        TESTING=True,
        SECRET_KEY="test-secret-key",
        ADMIN_USER="admin",
        ADMIN_PASS="password",
    )


@pytest.fixture(autouse=True)
def hub_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the app at a fresh note log + asset dir for every test."""
    monkeypatch.setitem(app.config, "NOTES_FILE", str(tmp_path / "data.txt"))
    monkeypatch.setitem(app.config, "ASSETS_DIR", str(tmp_path / "assets"))
    (tmp_path / "assets").mkdir()
    return tmp_path


@pytest.fixture
def notes(hub_dir: Path) -> NoteLog:
    return NoteLog(hub_dir / "data.txt")


@pytest.fixture
def assets(hub_dir: Path) -> AssetStore:
    return AssetStore(hub_dir / "assets")


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Test client with its own REMOTE_ADDR, so the login rate limit
    never bleeds between tests.
    """
    with app.test_client() as c:
        c.environ_base["REMOTE_ADDR"] = f"127.0.0.{next(_ip_counter)}"
        yield c
