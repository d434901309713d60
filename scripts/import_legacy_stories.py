#!/usr/bin/env python3
"""
One-shot legacy import — loads a JSON export of the old document store into
the stories table.

Each document's counters are mapped onto the canonical columns (see
storystats.stats.legacy); documents without a usable id are skipped. Existing
stories have their counters overwritten, new ones are created unpublished
unless the document says otherwise.

The next recompute rebuilds the counters from event rows anyway; the import
only gives the listing pages sensible numbers until then.

  python scripts/import_legacy_stories.py export.json [--dry-run]
"""
import argparse
import asyncio
import json
import logging

from storystats.database import Database
from storystats.models import Story
from storystats.stats.legacy import canonicalize_legacy_counters, legacy_story_id

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger("import_legacy_stories")


def load_documents(path: str) -> list[dict]:
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    # Exports come either as a bare list or wrapped as {"stories": [...]}
    if isinstance(data, dict):
        data = data.get("stories", [])
    return [doc for doc in data if isinstance(doc, dict)]


async def import_documents(db: Database, docs: list[dict], dry_run: bool = False) -> dict:
    totals = {"created": 0, "updated": 0, "skipped": 0}

    async with db.session() as session:
        for doc in docs:
            story_id = legacy_story_id(doc)
            if story_id is None:
                totals["skipped"] += 1
                logger.warning("Skipping document without an id: %s", sorted(doc)[:8])
                continue

            counters = canonicalize_legacy_counters(doc).as_dict()
            story = await session.get(Story, story_id)
            if story is None:
                story = Story(
                    story_id=story_id,
                    title=str(doc.get("title") or "Untitled"),
                    author=doc.get("author"),
                    category=doc.get("category"),
                    access_level=str(doc.get("access_level") or doc.get("accessLevel") or "free"),
                    published=bool(doc.get("published", False)),
                )
                session.add(story)
                totals["created"] += 1
            else:
                totals["updated"] += 1

            for name, value in counters.items():
                setattr(story, name, value)

        if dry_run:
            await session.rollback()

    return totals


async def main(path: str, dry_run: bool) -> None:
    docs = load_documents(path)
    logger.info("Loaded %d legacy documents from %s", len(docs), path)

    db = Database()
    await db.init_schema()
    try:
        totals = await import_documents(db, docs, dry_run=dry_run)
    finally:
        await db.dispose()

    logger.info(
        "Import %s: created=%d updated=%d skipped=%d",
        "simulated (dry run)" if dry_run else "complete",
        totals["created"], totals["updated"], totals["skipped"],
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Import legacy story counters")
    parser.add_argument("path", help="JSON export of legacy story documents")
    parser.add_argument("--dry-run", action="store_true", help="Roll back instead of committing")
    args = parser.parse_args()
    asyncio.run(main(args.path, args.dry_run))
