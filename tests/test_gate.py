"""
tests/test_gate.py
"""
from __future__ import annotations

import pytest

from inkwell.blog import ROUTE_ROLES, Role, app

ADMIN_ROUTES = [
    ("GET", "/create"),
    ("POST", "/create"),
    ("GET", "/update?id=1"),
    ("POST", "/update"),
    ("GET", "/delete?id=1"),
    ("POST", "/delete"),
    ("GET", "/delete-comment?id=1"),
    ("POST", "/upload-file"),
    ("GET", "/api/files"),
    ("POST", "/api/files/alt-text"),
]


def test_every_protected_endpoint_exists():
    endpoints = {rule.endpoint for rule in app.url_map.iter_rules()}
    assert set(ROUTE_ROLES) <= endpoints


@pytest.mark.parametrize("method, url", ADMIN_ROUTES)
def test_anonymous_is_denied(client, method, url):
    assert client.open(url, method=method).status_code == 401


@pytest.mark.parametrize("method, url", ADMIN_ROUTES)
def test_user_is_denied_admin_routes(reader, method, url):
    assert reader.open(url, method=method).status_code == 401


def test_denial_renders_without_redirect(client):
    rv = client.get("/create")
    assert rv.status_code == 401
    assert "Location" not in rv.headers
    assert "Not authorized" in rv.get_data(as_text=True)


@pytest.mark.parametrize(
    "url", ["/page?p=0", "/about", "/sitemap.xml", "/robots.txt", "/login", "/logout"]
)
def test_public_routes_need_no_session(client, url):
    assert client.get(url).status_code in (200, 302)


def test_admin_outranks_user_for_comments(admin, make_post):
    from conftest import csrf_of

    post_id, _ = make_post("Admin Comments")
    rv = admin.post(
        "/create-comment",
        data={"id": post_id, "name": "boss", "comment": "hi", "csrf": csrf_of(admin)},
    )
    assert rv.status_code == 302


def test_route_table_roles():
    assert ROUTE_ROLES["create_comment"] is Role.USER
    for endpoint in (
        "create_post",
        "update_post",
        "delete_post",
        "delete_comment",
        "upload_file",
        "list_files",
        "update_alt_text",
    ):
        assert ROUTE_ROLES[endpoint] is Role.ADMIN
