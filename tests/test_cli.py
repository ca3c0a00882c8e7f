"""
tests/test_cli.py
"""
from __future__ import annotations

from inkwell.blog import Role, app, get_db, verify_credentials


def _runner():
    return app.test_cli_runner()


def test_add_user(client):
    result = _runner().invoke(
        args=["add-user", "newbie", "--password", "pw123456"],
    )
    assert result.exit_code == 0, result.output
    assert "Added user newbie" in result.output
    assert verify_credentials(get_db(), "newbie", "pw123456") == ("newbie", Role.USER)

    again = _runner().invoke(args=["add-user", "newbie", "--password", "pw123456"])
    assert again.exit_code != 0
    assert "already exists" in again.output


def test_init_creates_admin(client):
    result = _runner().invoke(args=["init", "--username", "chief", "--password", "topsecret"])
    assert result.exit_code == 0, result.output
    assert verify_credentials(get_db(), "chief", "topsecret")[1] is Role.ADMIN


def test_backfill_slugs(client, make_post):
    make_post("Already Slugged")
    db = get_db()
    db.executemany(
        "INSERT INTO post (title, body, slug, created_at) VALUES (?, 'x', NULL, '2020-01-01')",
        [("Already Slugged",), ("Fresh Import",)],
    )
    db.commit()

    result = _runner().invoke(args=["backfill-slugs"])
    assert result.exit_code == 0, result.output
    assert "Assigned slugs to 2 post(s)." in result.output
    slugs = {r["slug"] for r in db.execute("SELECT slug FROM post")}
    assert slugs == {"already-slugged", "already-slugged-2", "fresh-import"}


def test_backfill_seo(client, make_post):
    post_id, _ = make_post("Search Engines", "Search engines index everything searchable.")
    make_post("Curated", "body", meta_description="Given", keywords="given")

    result = _runner().invoke(args=["backfill-seo"])
    assert result.exit_code == 0, result.output
    assert "Updated SEO fields on 1 post(s)." in result.output
    row = get_db().execute("SELECT * FROM post WHERE id=?", (post_id,)).fetchone()
    assert row["meta_description"] == "Search engines index everything searchable."
    assert "search" in row["keywords"]
