"""
Exit Engine Domain Types

Positions and their embedded per-signal state, market data records, broker
results and guard signals. Positions round-trip through plain dicts so the
durable store can stay a flat JSON file.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from infra.symbols import normalize_asset_id

# Legacy field aliases accepted when reading an existing positions file.
_ASSET_ID_KEYS = ("asset_id", "mintAddress", "mint")
_ENTRY_PRICE_KEYS = ("entry_price", "entryPrice", "buyPriceSOL", "buyPrice", "buy_price")
_OPENED_AT_KEYS = ("opened_at", "openedAt", "timestamp", "boughtAt", "createdAt")
_KNOWN_KEYS = set(_ASSET_ID_KEYS + _ENTRY_PRICE_KEYS + _OPENED_AT_KEYS) | {
    "trailing_state",
    "trailing",
    "collapse_state",
    "rug",
    "last_price",
    "lastPriceSOL",
    "last_checked_at",
    "lastCheckedAt",
    "sell_failures",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def compute_profit_pct(entry_price: float, current_price: float) -> float:
    """Percentage change of current over entry; 0.0 when entry is not positive."""
    try:
        entry = float(entry_price)
        price = float(current_price)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(entry) or not math.isfinite(price) or entry <= 0:
        return 0.0
    return (price - entry) / entry * 100.0


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings or epoch seconds/milliseconds into aware UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value) / 1000.0 if float(value) > 1e12 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _as_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _first(raw: Dict[str, Any], keys) -> Any:
    for key in keys:
        if raw.get(key) not in (None, ""):
            return raw[key]
    return None


@dataclass
class TrailingState:
    """Gap-trailing ratchet plus the high-profit lock ladder."""
    active: bool = False
    locked_profit_pct: float = 0.0
    next_step_trigger_pct: Optional[float] = None
    steps: int = 0
    last_profit_pct: Optional[float] = None
    lock_active: bool = False
    lock_profit_pct: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "locked_profit_pct": self.locked_profit_pct,
            "next_step_trigger_pct": self.next_step_trigger_pct,
            "steps": self.steps,
            "last_profit_pct": self.last_profit_pct,
            "lock_active": self.lock_active,
            "lock_profit_pct": self.lock_profit_pct,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["TrailingState"]:
        if not isinstance(raw, dict):
            return None
        lock = raw.get("lock") if isinstance(raw.get("lock"), dict) else {}
        return cls(
            active=bool(raw.get("active", False)),
            locked_profit_pct=_as_float(raw.get("locked_profit_pct", raw.get("lockedProfitPct"))) or 0.0,
            next_step_trigger_pct=_as_float(raw.get("next_step_trigger_pct", raw.get("nextStepTriggerPct"))),
            steps=int(raw.get("steps") or 0),
            last_profit_pct=_as_float(raw.get("last_profit_pct", raw.get("lastProfitPct"))),
            lock_active=bool(raw.get("lock_active", lock.get("active", False))),
            lock_profit_pct=_as_float(raw.get("lock_profit_pct", lock.get("lockedProfitPct"))) or 0.0,
        )


@dataclass
class CollapseState:
    """Reference readings for peak-based drop detection."""
    last_price: float
    peak_price: float
    peak_liquidity: Optional[float] = None
    supply_floor: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_price": self.last_price,
            "peak_price": self.peak_price,
            "peak_liquidity": self.peak_liquidity,
            "supply_floor": self.supply_floor,
        }

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> Optional["CollapseState"]:
        if not isinstance(raw, dict):
            return None
        last = _as_float(raw.get("last_price", raw.get("lastPrice")))
        if last is None or last <= 0:
            return None
        peak = _as_float(raw.get("peak_price")) or last
        return cls(
            last_price=last,
            peak_price=max(peak, last),
            peak_liquidity=_as_float(raw.get("peak_liquidity")),
            supply_floor=_as_float(raw.get("supply_floor")),
        )


@dataclass
class Position:
    """One open speculative holding."""
    asset_id: str
    entry_price: float
    opened_at: Optional[datetime] = None
    trailing_state: Optional[TrailingState] = None
    collapse_state: Optional[CollapseState] = None
    last_price: Optional[float] = None
    last_checked_at: Optional[datetime] = None
    sell_failures: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def profit_pct(self, current_price: float) -> float:
        return compute_profit_pct(self.entry_price, current_price)

    def age_hours(self, now: Optional[datetime] = None) -> Optional[float]:
        if self.opened_at is None:
            return None
        now = now or utcnow()
        return (now - self.opened_at).total_seconds() / 3600.0

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = dict(self.extra)
        record.update({
            "asset_id": self.asset_id,
            "entry_price": self.entry_price,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "trailing_state": self.trailing_state.to_dict() if self.trailing_state else None,
            "collapse_state": self.collapse_state.to_dict() if self.collapse_state else None,
            "last_price": self.last_price,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "sell_failures": self.sell_failures,
        })
        return record

    @classmethod
    def from_record(cls, raw: Any) -> Optional["Position"]:
        """Build a Position from a stored dict; None when key fields are unusable."""
        if not isinstance(raw, dict):
            return None
        asset_id = normalize_asset_id(_first(raw, _ASSET_ID_KEYS))
        entry_price = _as_float(_first(raw, _ENTRY_PRICE_KEYS))
        if not asset_id or entry_price is None or entry_price <= 0:
            return None
        return cls(
            asset_id=asset_id,
            entry_price=entry_price,
            opened_at=parse_timestamp(_first(raw, _OPENED_AT_KEYS)),
            trailing_state=TrailingState.from_dict(raw.get("trailing_state") or raw.get("trailing")),
            collapse_state=CollapseState.from_dict(raw.get("collapse_state") or raw.get("rug")),
            last_price=_as_float(raw.get("last_price", raw.get("lastPriceSOL"))),
            last_checked_at=parse_timestamp(raw.get("last_checked_at", raw.get("lastCheckedAt"))),
            sell_failures=int(_as_float(raw.get("sell_failures")) or 0),
            extra={k: v for k, v in raw.items() if k not in _KNOWN_KEYS},
        )


@dataclass
class Candle:
    """OHLCV bar; `t` is the bar open time in epoch milliseconds."""
    t: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def is_red(self) -> bool:
        return self.close < self.open

    @property
    def is_bullish(self) -> bool:
        return self.close > self.open


@dataclass
class PriceQuote:
    """Current price plus optional secondary readings used by the collapse detector."""
    price: float
    source: str
    liquidity: Optional[float] = None
    supply: Optional[float] = None


@dataclass
class SellResult:
    """Broker response for one liquidation attempt."""
    ok: bool
    signature: Optional[str] = None
    dry_run: bool = False
    reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def is_confirmed(self, accept_dry_run: bool = False) -> bool:
        """Strict success: ok plus a signature, or an approved dry run."""
        if self.ok is not True:
            return False
        if isinstance(self.signature, str) and self.signature.strip():
            return True
        return bool(accept_dry_run and self.dry_run is True)

    @classmethod
    def from_response(cls, payload: Any) -> "SellResult":
        """Interpret a broker JSON body; anything malformed becomes a failure."""
        if not isinstance(payload, dict):
            return cls(ok=False, reason="malformed_broker_response")
        signature = payload.get("signature")
        return cls(
            ok=payload.get("ok") is True,
            signature=signature if isinstance(signature, str) else None,
            dry_run=payload.get("dry_run", payload.get("dryRun")) is True,
            reason=payload.get("reason"),
            raw=payload,
        )


class SignalAction(Enum):
    SELL = "SELL"
    HOLD = "HOLD"
    CLEAR = "CLEAR"


class SignalSource(Enum):
    PATTERN = "pattern"
    CONCENTRATION = "concentration"


@dataclass
class GuardSignal:
    """Verdict published by an asynchronous guard for one asset."""
    asset_id: str
    source: SignalSource
    action: SignalAction
    reason: str = ""
    emitted_at: datetime = field(default_factory=utcnow)
    context: Dict[str, Any] = field(default_factory=dict)
