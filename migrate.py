#!/usr/bin/env python3
"""
migrate.py  –  import a legacy blog database into inkwell.

• Expects:
      legacy.sqlite3        ← the *old* DB (ro): posts / comments / files
      DBURI or blog.sqlite3 ← the inkwell DB (created if missing)

• Posts keep their numeric ids, so old ``/post?id=N`` links keep
  working and 301 to the new slug URLs.  Slugs missing in the old
  data are generated afterwards, exactly like ``flask backfill-slugs``.

• Password hashes are not portable; re-create accounts with
  ``flask init`` / ``flask add-user``.

Usage:  python migrate.py path/to/legacy.sqlite3
"""

import sqlite3
import sys
from pathlib import Path

import inkwell.blog as blog

# ----------------------------------------------------------------------
# 0.  locations + sanity checks
# ----------------------------------------------------------------------
if len(sys.argv) != 2:
    sys.exit(__doc__)

LEGACY = Path(sys.argv[1])
if not LEGACY.exists():
    sys.exit(f"❌  {LEGACY} not found – aborting.")

src = sqlite3.connect(f"file:{LEGACY}?mode=ro", uri=True)
src.row_factory = sqlite3.Row


def src_cols(table: str) -> set[str]:
    """Set of column names that exist in the *legacy* DB."""
    return {c["name"] for c in src.execute(f"PRAGMA table_info({table})")}


def pick(row: sqlite3.Row, *names: str, default=None):
    """First non-empty value among *names* (columns may be absent)."""
    keys = row.keys()
    for name in names:
        if name in keys and row[name] not in (None, ""):
            return row[name]
    return default


with blog.app.app_context():
    dst = blog.get_db()  # schema is created on first use
    if dst.execute("SELECT 1 FROM post LIMIT 1").fetchone():
        sys.exit("❌  target database already has posts – move it away first.")
    dst.execute("PRAGMA foreign_keys=OFF;")  # easier while bulk-copying
    now = blog.now_iso()

    # ------------------------------------------------------------------
    # 1.  posts – slug kept only when it is free among the copied rows
    # ------------------------------------------------------------------
    print("→ copying posts")
    seen: set[str] = set()
    n_posts = 0
    if src_cols("posts"):
        for r in src.execute("SELECT * FROM posts ORDER BY id"):
            slug = pick(r, "slug")
            if slug in seen:
                slug = None
            if slug:
                seen.add(slug)
            created = pick(r, "created_at", "datepost", default=now)
            dst.execute(
                """INSERT INTO post (id, title, body, slug, meta_description,
                                     keywords, created_at, updated_at)
                   VALUES (?,?,?,?,?,?,?,?)""",
                (
                    r["id"],
                    pick(r, "title", default=""),
                    pick(r, "body", default=""),
                    slug,
                    pick(r, "meta_description"),
                    pick(r, "keywords"),
                    created,
                    pick(r, "updated_at"),
                ),
            )
            n_posts += 1
    print(f"  • post          ({n_posts} rows)")

    # ------------------------------------------------------------------
    # 2.  comments
    # ------------------------------------------------------------------
    print("→ copying comments")
    n_comments = 0
    if src_cols("comments"):
        for r in src.execute("SELECT * FROM comments ORDER BY commentid"):
            dst.execute(
                "INSERT INTO comment (post_id, author, body, created_at) VALUES (?,?,?,?)",
                (
                    r["postid"],
                    pick(r, "name", default="anonymous"),
                    pick(r, "comment", default=""),
                    pick(r, "date", default=now),
                ),
            )
            n_comments += 1
    print(f"  • comment       ({n_comments} rows)")

    # ------------------------------------------------------------------
    # 3.  file metadata (the blobs themselves must be copied to UPLOAD_DIR)
    # ------------------------------------------------------------------
    print("→ copying file records")
    n_files = 0
    if src_cols("files"):
        for r in src.execute("SELECT * FROM files ORDER BY id"):
            mime = pick(r, "mime_type", default="application/octet-stream")
            dst.execute(
                """INSERT INTO file (uuid, original_name, stored_name, mime_type,
                                     size, is_image, created_at)
                   VALUES (?,?,?,?,?,?,?)""",
                (
                    r["uuid"],
                    r["original_name"],
                    r["stored_name"],
                    mime,
                    pick(r, "size", default=0),
                    int(mime in blog.IMAGE_MIMES),
                    pick(r, "created_at", default=now),
                ),
            )
            n_files += 1
    print(f"  • file          ({n_files} rows)")

    dst.execute("PRAGMA foreign_keys=ON;")
    dst.commit()

    # ------------------------------------------------------------------
    # 4.  slugs for everything that came over without one
    # ------------------------------------------------------------------
    filled = blog.backfill_slugs(dst)
    print(f"→ generated {filled} slug(s)")
    described = blog.backfill_seo(dst)
    print(f"→ filled SEO fields on {described} post(s)")

print("\n✔  Migration finished – start the app with the new database.")
