"""
tests/test_slugs.py
"""
from __future__ import annotations

import re
import threading

import pytest

from inkwell import blog
from inkwell.blog import (
    MAX_SLUG_ATTEMPTS,
    SLUG_MAX_LEN,
    StorageError,
    app,
    ensure_unique_slug,
    generate_slug,
    get_db,
    insert_post,
    soft_delete_post,
    update_post_row,
)

SLUG_SHAPE = re.compile(r"^[a-z0-9]+(-[a-z0-9]+)*$")


@pytest.mark.parametrize(
    "title, expected",
    [
        ("My Awesome New Post", "my-awesome-new-post"),
        ("  Hello,   World!  ", "hello-world"),
        ("Café crème brûlée", "cafe-creme-brulee"),
        ("snake_case_title", "snake-case-title"),
        ("C++ -- vs -- Rust", "c-vs-rust"),
        ("2024 in review", "2024-in-review"),
        ("!!!", "untitled"),
        ("", "untitled"),
        (None, "untitled"),
    ],
)
def test_generate_slug(title, expected):
    assert generate_slug(title) == expected


def test_generate_slug_is_deterministic_and_well_formed():
    titles = ["Ünïcödé ☃ snowman", "-leading and trailing-", "tabs\tand\nnewlines", "日本語のタイトル"]
    for title in titles:
        slug = generate_slug(title)
        assert slug == generate_slug(title)
        assert SLUG_SHAPE.match(slug), slug


def test_generate_slug_caps_length_without_trailing_hyphen():
    slug = generate_slug("word " * 60)
    assert len(slug) <= SLUG_MAX_LEN
    assert not slug.endswith("-")


def test_unique_slug_suffixes_start_at_two(make_post):
    assert make_post("My Post")[1] == "my-post"
    assert make_post("My Post")[1] == "my-post-2"
    assert make_post("my post!")[1] == "my-post-3"


def test_owner_keeps_its_own_slug(client, make_post):
    post_id, slug = make_post("Keep Me")
    assert ensure_unique_slug("keep-me", post_id, db=get_db()) == "keep-me"
    assert ensure_unique_slug("keep-me", 0, db=get_db()) == "keep-me-2"


def test_literal_numbered_titles_do_not_collide(make_post):
    assert make_post("Post 2")[1] == "post-2"
    assert make_post("Post")[1] == "post"
    # "post-2" is already taken by the first post
    assert make_post("Post")[1] == "post-3"


def test_soft_deleted_post_frees_its_slug(client, make_post):
    post_id, _ = make_post("Recycled")
    soft_delete_post(get_db(), post_id)
    assert make_post("Recycled")[1] == "recycled"


def test_title_edit_regenerates_slug_and_keeps_id(client, make_post):
    post_id, _ = make_post("Old Title")
    make_post("New Title")
    db = get_db()
    post = db.execute("SELECT * FROM post WHERE id=?", (post_id,)).fetchone()
    slug = update_post_row(db, post, title="New Title", body="changed")
    assert slug == "new-title-2"
    row = db.execute("SELECT id, slug, body FROM post WHERE id=?", (post_id,)).fetchone()
    assert (row["id"], row["slug"], row["body"]) == (post_id, "new-title-2", "changed")


def test_body_only_edit_keeps_slug(client, make_post):
    post_id, slug = make_post("Stable")
    db = get_db()
    post = db.execute("SELECT * FROM post WHERE id=?", (post_id,)).fetchone()
    assert update_post_row(db, post, title="Stable", body="new body") == slug


def test_exhausted_suffixes_raise_storage_error(client, monkeypatch):
    monkeypatch.setattr(blog, "MAX_SLUG_ATTEMPTS", 3)
    db = get_db()
    for _ in range(4):
        insert_post(db, title="Crowded", body="x")
    with pytest.raises(StorageError):
        insert_post(db, title="Crowded", body="x")


def test_concurrent_creates_get_distinct_slugs():
    results: list[str] = []
    errors: list[BaseException] = []

    def worker():
        try:
            with app.app_context():
                _, slug = insert_post(get_db(), title="Race Condition", body="body")
                results.append(slug)
        except BaseException as exc:  # pragma: no cover - reported below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert not errors
    assert len(results) == 8
    assert len(set(results)) == 8
    assert "race-condition" in results
    assert all(s == "race-condition" or s.startswith("race-condition-") for s in results)


def test_unique_index_rejects_duplicate_live_slug(client, make_post):
    import sqlite3

    make_post("Indexed")
    db = get_db()
    with pytest.raises(sqlite3.IntegrityError):
        db.execute(
            "INSERT INTO post (title, body, slug, created_at) VALUES ('x', 'y', 'indexed', '2099-01-01')"
        )
    db.rollback()


def test_max_attempts_constant_is_bounded():
    assert 1 < MAX_SLUG_ATTEMPTS <= 1000
