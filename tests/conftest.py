"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from inkwell.blog import (
    BlogConfig,
    Role,
    app,
    configure,
    create_user,
    get_db,
    init_db,
    insert_post,
    login,
)

BASE_URL = "https://blog.example"
ADMIN = ("editor", "correct horse battery staple")
READER = ("reader", "hunter2hunter2")


@pytest.fixture(scope="session")
def _tmp_root(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """One temp dir for the whole test session (faster than per-test)."""
    return tmp_path_factory.mktemp("data")


@pytest.fixture(scope="session", autouse=True)
def _configure_app(_tmp_root: Path) -> None:
    """
    Configure the Flask app *once* before the first test runs and seed
    one admin plus one ordinary commenter.
    """
    configure(
        app,
        BlogConfig(
            database=str(_tmp_root / "test.sqlite3"),
            secret_key="test-secret",
            base_url=BASE_URL,
            site_name="Test Blog",
            author="Ada Author",
            upload_dir=str(_tmp_root / "uploads"),
            login_rate_limit=1000,
        ),
    )
    app.config.update(TESTING=True)
    with app.app_context():
        init_db()
        db = get_db()
        create_user(db, name=ADMIN[0], password=ADMIN[1], role=Role.ADMIN)
        create_user(db, name=READER[0], password=READER[1], role=Role.USER)


@pytest.fixture(autouse=True)
def _clean_slate() -> None:
    """Every test starts without posts, comments, files or sessions."""
    with app.app_context():
        db = get_db()
        db.executescript(
            """
            DELETE FROM comment;
            DELETE FROM post;
            DELETE FROM file;
            DELETE FROM sqlite_sequence WHERE name IN ('comment', 'post', 'file');
            """
        )
    app.extensions["inkwell"].sessions.clear()
    login.hits.clear()


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an isolated application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


def sign_in(client: FlaskClient, name: str, password: str):
    return client.post("/login", data={"login": name, "password": password})


def csrf_of(client: FlaskClient) -> str:
    """CSRF token bound to the session the client currently holds."""
    state = app.extensions["inkwell"]
    cookie = client.get_cookie("session")
    assert cookie is not None, "client is not logged in"
    token = state.signer.unsign(cookie.value).decode()
    return state.sessions.lookup(token).csrf


@pytest.fixture
def admin(client: FlaskClient) -> FlaskClient:
    assert sign_in(client, *ADMIN).status_code == 302
    return client


@pytest.fixture
def reader(client: FlaskClient) -> FlaskClient:
    assert sign_in(client, *READER).status_code == 302
    return client


@pytest.fixture
def make_post():
    """Insert a post directly; returns ``(id, slug)``."""

    def _make(title: str = "Hello World", body: str = "Some *markdown* body.", **kw):
        with app.app_context():
            return insert_post(get_db(), title=title, body=body, **kw)

    return _make


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch inkwell.blog.utc_now for the whole test session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from inkwell import blog  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)

    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(blog, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end
