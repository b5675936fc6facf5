#!/usr/bin/env python3
"""Regenerate template fingerprints in a template store snapshot.

Run after the fingerprint algorithm changes so that stored templates keep
matching their suppliers' invoices. Learnt structure and layout hints are
preserved; identity keywords are rebuilt from each supplier record.

Usage:
    python scripts/regenerate_fingerprints.py --store data/templates.json
    python scripts/regenerate_fingerprints.py --store data/templates.json --dry-run
"""

import argparse
import logging
from pathlib import Path

from docengine.shared.config import get_settings
from docengine.shared.log import configure_logging
from docengine.templates.learning import TemplateLearner
from docengine.templates.store import InMemoryTemplateStore

logger = logging.getLogger(__name__)


def regenerate_all(store: InMemoryTemplateStore, learner: TemplateLearner) -> tuple[int, int]:
    """Regenerate every template fingerprint in the store.

    Returns:
        Tuple of (updated, skipped) template counts
    """
    updated = skipped = 0
    for template in store.list_templates():
        if learner.regenerate_fingerprint(template) is None:
            skipped += 1
        else:
            updated += 1
    return updated, skipped


def main() -> None:
    parser = argparse.ArgumentParser(description="Regenerate template fingerprints")
    parser.add_argument(
        "--store",
        type=Path,
        default=None,
        help="Template store JSON snapshot (default: APP_TEMPLATE_STORE_PATH)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Regenerate in memory without saving",
    )
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings)

    path = args.store
    if path is None and settings.template_store_path:
        path = Path(settings.template_store_path)
    if path is None:
        parser.error("no store given and APP_TEMPLATE_STORE_PATH is not set")

    store = InMemoryTemplateStore.load(path)
    learner = TemplateLearner(store, settings)
    updated, skipped = regenerate_all(store, learner)
    logger.info(f"Regenerated {updated} fingerprints ({skipped} skipped)")

    if args.dry_run:
        logger.info("Dry run, store not saved")
        return
    store.save(path)
    logger.info(f"Saved store to {path}")


if __name__ == "__main__":
    main()
