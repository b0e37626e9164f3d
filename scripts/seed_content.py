#!/usr/bin/env python3
"""Load the bundled UI strings (English and Bengali) into the content table.

Existing keys are overwritten with the bundled values; other keys are left alone.

Usage:
    python scripts/seed_content.py
    python scripts/seed_content.py --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (the file-backed memory store is used if unset)
    SUPPORTED_LANGUAGES: Comma separated language codes to seed (default: EN,BN)
"""
from __future__ import annotations

import argparse
import os
import sys


def seed_content(dry_run: bool = False) -> dict:
    """Upsert the default strings.

    Returns:
        dict with the languages seeded and the number of entries written
        (or that would be written with ``dry_run``)
    """
    from fraudwatch.service.content import DEFAULT_CONTENT
    from fraudwatch.service.runtime import get_runtime

    runtime = get_runtime()
    languages = [
        lang for lang in DEFAULT_CONTENT if lang in runtime.content.supported_languages
    ]
    if dry_run:
        count = sum(len(DEFAULT_CONTENT[lang]) for lang in languages)
        print(f"[DRY RUN] Would write {count} entries for {', '.join(languages)}")
        return {"languages": languages, "count": count, "status": "dry_run"}
    count = runtime.content.seed_defaults()
    runtime.store.close()
    return {"languages": languages, "count": count, "status": "seeded"}


def main():
    parser = argparse.ArgumentParser(
        description="Seed localised UI content for FraudWatch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for PostgreSQL)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = seed_content(args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "seeded":
        print(f"\nSeeded {result['count']} entries for {', '.join(result['languages'])}.")


if __name__ == "__main__":
    main()
