"""Daily fetch: turn the current month's folder configs into work items."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from ecm_harvest.dispatch.models import WorkItem
from ecm_harvest.importer.configs import FolderConfig

logger = logging.getLogger(__name__)

LAST_AUTO_FETCH_KEY = "last_auto_fetch"
MISSED_FETCH_NOTICE_KEY = "missed_fetch_notified"


def build_items_for_month(
    configs: Iterable[FolderConfig],
    year: int,
    month: int,
) -> list[WorkItem]:
    """One work item per URL of every config scheduled for ``year``/``month``."""

    items: list[WorkItem] = []
    for config in configs:
        if config.year != year or config.month != month:
            continue
        for url in config.urls:
            items.append(
                WorkItem(
                    target=url,
                    label=config.name,
                    task_type=config.script,
                    year=config.year,
                    month=config.month,
                ),
            )
    logger.info("Daily fetch for %s-%02d: %s items", year, month, len(items))
    return items
