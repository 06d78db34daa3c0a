#!/usr/bin/env python3
"""
migrate.py  –  move the site record from the old flat JSON file into SQLite.

• Expects:
      linkpage/site.json         ← the JSON-file store (ro)
      linkpage/linkpage.sqlite3  ← may exist, but its site record must
                                   still be empty (no links, no images)

• Paths can be overridden:  python migrate.py [SRC_JSON] [DST_DB]

Run once, then start the server with SITE_STORE=sqlite (the default).
"""

import sys
from pathlib import Path

import linkpage.page as page

# ----------------------------------------------------------------------
# 0.  locations + sanity checks
# ----------------------------------------------------------------------
ROOT = Path(__file__).parent
SOURCE = Path(sys.argv[1]) if len(sys.argv) > 1 else ROOT / "linkpage/site.json"
TARGET = Path(sys.argv[2]) if len(sys.argv) > 2 else ROOT / "linkpage/linkpage.sqlite3"

if not SOURCE.exists():
    sys.exit(f"❌  {SOURCE} not found – aborting.")

# ----------------------------------------------------------------------
# 1.  read the JSON record
# ----------------------------------------------------------------------
record = page.JsonSiteStore(SOURCE).read()
print(f"• source → {SOURCE}")
print(f"  tagline {record['tagline']!r}, {record['views']} views, "
      f"{len(record['links'])} links, {len(record['images'])} images")

# ----------------------------------------------------------------------
# 2.  write it as one transaction into the SQLite store
# ----------------------------------------------------------------------
page.app.config["DATABASE"] = str(TARGET)
with page.app.app_context():
    page.init_db()
    dst = page.SqliteSiteStore(page.get_db())
    current = dst.read()
    if current["links"] or current["images"]:
        sys.exit(f"❌  {TARGET} already holds links or images – move it away first.")
    dst.save(record)
    print(f"• target → {TARGET}")

print("\n✔  Migration finished – start the app with SITE_STORE=sqlite.")
