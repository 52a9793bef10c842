"""
Exit Engine: External Collaborator Interfaces

The engine only depends on these abstract contracts. Production adapters live
in infra/http_sources.py and infra/alerting.py; tests use in-memory fakes.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from core.models import Candle, PriceQuote, SellResult


class PriceOracle(ABC):
    """Current price for a position's asset."""

    @abstractmethod
    async def get_price(self, asset_id: str) -> PriceQuote:
        """
        Return the current quote.

        Raises:
            ExternalDataUnavailable: when no usable price could be obtained
        """


class CandleSource(ABC):
    """OHLCV bars, freshest last, always current as of call time."""

    @abstractmethod
    async def get_candles(self, asset_id: str, timeframe: str, limit: int) -> Optional[List[Candle]]:
        """Return up to `limit` bars or None when the source has nothing for the asset."""


class ConcentrationSource(ABC):
    """Share of supply held by the largest holder."""

    @abstractmethod
    async def get_top_holder_pct(self, asset_id: str) -> float:
        """Return a percentage in [0, 100]; raises ExternalDataUnavailable on failure."""


class SellBroker(ABC):
    """Executes and confirms a liquidation."""

    @abstractmethod
    async def sell(self, asset_id: str, amount_spec: str) -> SellResult:
        pass


class NotificationSink(ABC):
    """Best-effort human alerting. Implementations must never raise."""

    @abstractmethod
    def notify(self, text: str) -> None:
        pass


class NullNotificationSink(NotificationSink):
    def notify(self, text: str) -> None:
        return None
