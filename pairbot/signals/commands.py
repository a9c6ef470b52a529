from __future__ import annotations

from dataclasses import dataclass

from pairbot.models import Category, Side, SignalType


@dataclass(slots=True)
class EntryCmd:
    type: SignalType
    side: Side
    signal_id: str | None = None

    @property
    def category(self) -> Category:
        return Category.of(self.type, self.side)


@dataclass(slots=True)
class CloseCmd:
    side: Side
    category: Category | None = None
    signal_id: str | None = None


@dataclass(slots=True)
class ApprovalUpdate:
    timeframe: str
    type: SignalType
    side: Side
    approval: bool
    signal_id: str | None = None

    @property
    def category(self) -> Category:
        return Category.of(self.type, self.side)
