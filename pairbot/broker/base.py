from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic, TypeVar

from pairbot.models import Fill, Position, Quote, Side

T = TypeVar("T")

_ALREADY_CLOSED_PATTERNS = (
    re.compile(r"position not found", re.IGNORECASE),
    re.compile(r"not[ _.-]found", re.IGNORECASE),
    re.compile(r"invalid ticket", re.IGNORECASE),
)


class BrokerError(RuntimeError):
    """Broker call failed."""


class TransientBrokerError(BrokerError):
    """Retryable broker/network failure; the caller retries on the next cycle."""


class BrokerAuthError(BrokerError):
    """Credentials rejected by the broker."""


def is_already_closed_error(text: str | None) -> bool:
    if not text:
        return False
    return any(pattern.search(text) for pattern in _ALREADY_CLOSED_PATTERNS)


@dataclass(slots=True)
class BrokerResult(Generic[T]):
    ok: bool
    value: T | None = None
    already_closed: bool = False
    error: str | None = None

    @classmethod
    def success(cls, value: T | None = None) -> "BrokerResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "BrokerResult[T]":
        return cls(ok=False, error=error)

    @classmethod
    def closed_already(cls) -> "BrokerResult[T]":
        return cls(ok=True, already_closed=True)


class BrokerAdapter(ABC):
    """Operations the engine consumes from a broker.

    Implementations never raise out of these methods. Failures come back as
    ``BrokerResult(ok=False)`` and closing a position the broker no longer
    knows about is reported as success with ``already_closed=True``.
    """

    symbol: str

    @abstractmethod
    async def get_price(self, symbol: str) -> Quote | None:
        ...

    @abstractmethod
    async def get_positions(self) -> BrokerResult[list[Position]]:
        ...

    @abstractmethod
    async def get_balance(self) -> BrokerResult[float]:
        ...

    @abstractmethod
    async def place_market(
        self,
        side: Side,
        lot: float,
        sl: float | None = None,
        tp: float | None = None,
    ) -> BrokerResult[Fill]:
        ...

    @abstractmethod
    async def close_position(self, position_id: str, volume: float | None = None) -> BrokerResult[None]:
        ...

    async def modify_position(
        self,
        position_id: str,
        *,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> BrokerResult[None]:
        return BrokerResult.failure("modify_position not supported")

    async def subscribe(self, symbol: str) -> BrokerResult[None]:
        return BrokerResult.success()

    async def close(self) -> None:
        return None
