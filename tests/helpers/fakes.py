"""
In-memory collaborators for exit engine tests.

Each fake records its calls so tests can assert on exactly what the engine or
a guard asked for. Values configured as exceptions are raised on lookup.
"""

from typing import Any, Dict, List, Optional, Tuple, Union

from core.exceptions import ExternalDataUnavailable
from core.interfaces import CandleSource, ConcentrationSource, NotificationSink, PriceOracle, SellBroker
from core.models import Candle, PriceQuote, SellResult


class FakePriceOracle(PriceOracle):

    def __init__(self, prices: Optional[Dict[str, Any]] = None):
        self.prices: Dict[str, Any] = dict(prices or {})
        self.calls: List[str] = []

    def set(self, asset_id: str, price: Any, liquidity: Optional[float] = None, supply: Optional[float] = None) -> None:
        if liquidity is None and supply is None:
            self.prices[asset_id] = price
        else:
            self.prices[asset_id] = PriceQuote(price=price, source="fake", liquidity=liquidity, supply=supply)

    async def get_price(self, asset_id: str) -> PriceQuote:
        self.calls.append(asset_id)
        value = self.prices.get(asset_id)
        if value is None:
            raise ExternalDataUnavailable("fake_oracle")
        if isinstance(value, Exception):
            raise ExternalDataUnavailable("fake_oracle", value)
        if isinstance(value, PriceQuote):
            return value
        return PriceQuote(price=float(value), source="fake")


class FakeCandleSource(CandleSource):

    def __init__(self):
        self.series: Dict[Tuple[str, str], Union[List[Candle], Exception, None]] = {}
        self.calls: List[Tuple[str, str, int]] = []

    def set(self, asset_id: str, timeframe: str, candles: Union[List[Candle], Exception, None]) -> None:
        self.series[(asset_id, timeframe)] = candles

    async def get_candles(self, asset_id: str, timeframe: str, limit: int) -> Optional[List[Candle]]:
        self.calls.append((asset_id, timeframe, limit))
        value = self.series.get((asset_id, timeframe))
        if isinstance(value, Exception):
            raise ExternalDataUnavailable("fake_candles", value)
        if value is None:
            return None
        return list(value)[-limit:]


class FakeConcentrationSource(ConcentrationSource):

    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self.values: Dict[str, Any] = dict(values or {})
        self.calls: List[str] = []

    async def get_top_holder_pct(self, asset_id: str) -> Any:
        self.calls.append(asset_id)
        value = self.values.get(asset_id)
        if value is None or isinstance(value, Exception):
            raise ExternalDataUnavailable("fake_concentration", value if isinstance(value, Exception) else None)
        return value


class FakeBroker(SellBroker):
    """
    Returns a scripted result per asset (or `default`). A scripted list is
    consumed one entry per call; the last entry repeats.
    """

    def __init__(self, default: Optional[Union[SellResult, Exception]] = None):
        self.default = default if default is not None else SellResult(ok=True, signature="sig-default")
        self.scripts: Dict[str, List[Union[SellResult, Exception]]] = {}
        self.calls: List[Tuple[str, str]] = []

    def script(self, asset_id: str, *results: Union[SellResult, Exception]) -> None:
        self.scripts[asset_id] = list(results)

    def calls_for(self, asset_id: str) -> List[Tuple[str, str]]:
        return [c for c in self.calls if c[0] == asset_id]

    async def sell(self, asset_id: str, amount_spec: str) -> SellResult:
        self.calls.append((asset_id, amount_spec))
        script = self.scripts.get(asset_id)
        if script:
            result = script.pop(0) if len(script) > 1 else script[0]
        else:
            result = self.default
        if isinstance(result, Exception):
            raise result
        return result


class RecordingNotifier(NotificationSink):

    def __init__(self):
        self.messages: List[str] = []

    def notify(self, text: str) -> None:
        self.messages.append(text)

    def matching(self, needle: str) -> List[str]:
        return [m for m in self.messages if needle in m]
