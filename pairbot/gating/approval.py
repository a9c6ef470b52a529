from __future__ import annotations

import logging

from pairbot.models import Category
from pairbot.signals.commands import ApprovalUpdate

LOGGER = logging.getLogger(__name__)

APPROVAL_TIMEFRAMES = ("3M", "5M")


class ApprovalRegistry:
    """Per-category zone approvals pushed by side-channel signals.

    An entry in a category is allowed only while both the 3M and 5M zones of
    that category are approved. Everything starts unapproved.
    """

    def __init__(self) -> None:
        self._zones: dict[Category, dict[str, bool]] = {
            category: {timeframe: False for timeframe in APPROVAL_TIMEFRAMES}
            for category in Category
        }

    def apply(self, update: ApprovalUpdate) -> None:
        timeframe = update.timeframe.strip().upper()
        if timeframe not in APPROVAL_TIMEFRAMES:
            raise ValueError(f"Unsupported approval timeframe {update.timeframe}")
        category = update.category
        previous = self._zones[category][timeframe]
        self._zones[category][timeframe] = bool(update.approval)
        if previous != bool(update.approval):
            LOGGER.info("Zone approval %s %s: %s -> %s", category.value, timeframe, previous, update.approval)

    def is_approved(self, category: Category) -> bool:
        zones = self._zones[category]
        return all(zones[timeframe] for timeframe in APPROVAL_TIMEFRAMES)

    def zone(self, category: Category, timeframe: str) -> bool:
        return self._zones[category][timeframe.strip().upper()]

    def snapshot(self) -> dict[str, dict[str, bool]]:
        return {category.value: dict(zones) for category, zones in self._zones.items()}
