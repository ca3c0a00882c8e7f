"""
tests/test_errors.py
"""
from __future__ import annotations

import logging
import sqlite3

from inkwell.blog import ClientInputError, NotFound, StorageError, Unauthorized, app


# ─────────────────────────■  tests  ■────────────────────────────────
def test_error_codes():
    assert ClientInputError().code == 400
    assert NotFound().code == 404
    assert Unauthorized().code == 401
    assert StorageError().code == 500
    assert str(NotFound("Post not found")) == "Post not found"


def test_404_custom_page(client):
    """
    Any unknown URL yields the themed “Page not found” template.
    """
    resp = client.get("/this/route/does/not/exist")
    assert resp.status_code == 404
    # sanity-check that we really rendered *our* template, not Werkzeug’s
    assert b"Page not found" in resp.data
    # site title appears in the footer
    assert b"Test Blog" in resp.data


def test_400_page_carries_message(client):
    resp = client.get("/post?id=not-a-number")
    assert resp.status_code == 400
    assert b"Invalid post id" in resp.data


def test_storage_failure_is_logged_and_hidden(client, monkeypatch, caplog):
    def _boom():
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setitem(app.view_functions, "page", _boom)
    with caplog.at_level(logging.ERROR, logger=app.logger.name):
        resp = client.get("/page?p=0")
    assert resp.status_code == 500
    assert b"database is locked" not in resp.data
    assert b"could not reach its storage" in resp.data
    assert any("storage failure" in r.getMessage() for r in caplog.records)


def test_storage_error_maps_to_500(client, monkeypatch):
    def _boom():
        raise StorageError("No free slug")

    monkeypatch.setitem(app.view_functions, "robots", _boom)
    assert client.get("/robots.txt").status_code == 500


def test_500_handler_renders_friendly_page(client, monkeypatch):
    """
    Temporarily replace ``page`` with a view that crashes, but disable
    exception propagation so the global 500-handler can render the page.
    """
    def _boom():
        raise RuntimeError("kaboom!")

    # ➊ monkey-patch the failing view
    monkeypatch.setitem(app.view_functions, "page", _boom)

    # ➋ turn *off* propagation just for this test
    monkeypatch.setitem(app.config, "PROPAGATE_EXCEPTIONS", False)

    resp = client.get("/page")             # handled by our 500-handler
    assert resp.status_code == 500
    assert b"Internal Server Error" in resp.data
    assert b"kaboom" not in resp.data
