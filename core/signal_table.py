"""
Guard Signal Plumbing

- SignalBus: bounded asyncio queue from the guard loops to the engine. When
  full, publishers wait (guards slow to the engine's pace, nothing is dropped).
- SignalTable: latest verdict per (asset, guard source), last write wins;
  CLEAR drops the entry.
- GuardContext: every piece of per-asset guard memory (pattern phases,
  cooldowns, dedup flags) owned by the engine and handed to each guard.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from core.models import GuardSignal, SignalAction, SignalSource

logger = logging.getLogger(__name__)


class SignalBus:

    def __init__(self, maxsize: int = 256):
        self._queue: "asyncio.Queue[GuardSignal]" = asyncio.Queue(maxsize=max(1, int(maxsize)))

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def publish(self, signal: GuardSignal) -> None:
        if self._queue.full():
            logger.warning(
                f"Signal bus full ({self._queue.maxsize}); {signal.source.value} guard waiting for engine tick"
            )
        await self._queue.put(signal)

    def drain(self) -> List[GuardSignal]:
        """Take everything currently queued without waiting."""
        drained: List[GuardSignal] = []
        while True:
            try:
                drained.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
        return drained


class SignalTable:

    def __init__(self):
        self._signals: Dict[Tuple[str, SignalSource], GuardSignal] = {}

    def __len__(self) -> int:
        return len(self._signals)

    def apply(self, signal: GuardSignal) -> None:
        key = (signal.asset_id, signal.source)
        if signal.action is SignalAction.CLEAR:
            self._signals.pop(key, None)
            return
        self._signals[key] = signal

    def get(self, asset_id: str, source: SignalSource) -> Optional[GuardSignal]:
        return self._signals.get((asset_id, source))

    def sell_signal(self, asset_id: str, source: SignalSource) -> Optional[GuardSignal]:
        signal = self.get(asset_id, source)
        if signal is not None and signal.action is SignalAction.SELL:
            return signal
        return None

    def clear_asset(self, asset_id: str) -> None:
        for key in [k for k in self._signals if k[0] == asset_id]:
            del self._signals[key]

    def retain_only(self, asset_ids: Set[str]) -> None:
        for key in [k for k in self._signals if k[0] not in asset_ids]:
            del self._signals[key]

    def snapshot(self) -> Dict[str, Dict[str, str]]:
        out: Dict[str, Dict[str, str]] = {}
        for (asset_id, source), signal in self._signals.items():
            out.setdefault(asset_id, {})[source.value] = signal.action.value
        return out


@dataclass
class GuardContext:
    """Per-asset memory shared by the engine and the guard loops."""
    pattern_states: Dict[str, "object"] = field(default_factory=dict)
    pattern_cooldowns: Dict[str, float] = field(default_factory=dict)
    pattern_hold_alerted: Set[str] = field(default_factory=set)
    # Pattern SELLs published and not yet executed
    pattern_sell_pending: Set[str] = field(default_factory=set)
    concentration_sold: Set[str] = field(default_factory=set)
    concentration_held: Set[str] = field(default_factory=set)

    def forget(self, asset_id: str) -> None:
        self.pattern_states.pop(asset_id, None)
        self.pattern_cooldowns.pop(asset_id, None)
        self.pattern_hold_alerted.discard(asset_id)
        self.pattern_sell_pending.discard(asset_id)
        self.concentration_sold.discard(asset_id)
        self.concentration_held.discard(asset_id)

    def retain_only(self, asset_ids: Set[str]) -> None:
        known = (
            set(self.pattern_states)
            | set(self.pattern_cooldowns)
            | self.pattern_hold_alerted
            | self.pattern_sell_pending
            | self.concentration_sold
            | self.concentration_held
        )
        for asset_id in known - set(asset_ids):
            self.forget(asset_id)
