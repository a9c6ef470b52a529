"""FreezeDetector: suspend pair management while the price feed is stuck.

A feed is considered frozen once the polled price has been identical for
more than ``freeze_ticks`` consecutive polls (60 polls at a 2 s interval is
about two minutes). The first changed price resumes it.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FreezeTransition(str, Enum):
    FROZEN = "FROZEN"
    RESUMED = "RESUMED"


@dataclass(slots=True)
class FreezeState:
    frozen: bool
    stagnant_count: int
    last_price: float | None


class FreezeDetector:
    """Counts stagnant polls and reports frozen/resumed edges."""

    def __init__(self, freeze_ticks: int = 60) -> None:
        if freeze_ticks <= 0:
            raise ValueError("freeze_ticks must be > 0")
        self._freeze_ticks = freeze_ticks
        self._last_price: float | None = None
        self._stagnant_count = 0
        self._frozen = False

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    @property
    def frozen(self) -> bool:
        return self._frozen

    def observe(self, price: float) -> FreezeTransition | None:
        """Record one polled price; return the transition it caused, if any."""
        if self._last_price is None:
            self._last_price = price
            return None

        if price != self._last_price:
            self._last_price = price
            self._stagnant_count = 0
            if self._frozen:
                self._frozen = False
                return FreezeTransition.RESUMED
            return None

        self._stagnant_count += 1
        if self._stagnant_count > self._freeze_ticks and not self._frozen:
            self._frozen = True
            return FreezeTransition.FROZEN
        return None

    def state(self) -> FreezeState:
        return FreezeState(
            frozen=self._frozen,
            stagnant_count=self._stagnant_count,
            last_price=self._last_price,
        )
