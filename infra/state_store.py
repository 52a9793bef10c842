"""
Exit Engine Infrastructure: Position Store

Durable registry of open positions backed by a single JSON file.

- Full snapshot read at the start of a tick, full snapshot written at the end
- Atomic writes (temp file in the same directory + fsync + os.replace)
- Corrupt or missing files load as an empty registry, never an exception

Single writer: exactly one engine process may own a positions file. The runner
enforces this with infra.instance_lock; concurrent writers would need file
locking and are not supported.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional
import logging

from core.exceptions import StateWriteError
from core.models import Position

logger = logging.getLogger(__name__)

DEFAULT_POSITIONS_FILE = "data/active_positions.json"


class PositionStore:
    """
    Persistent position registry using a JSON array file.

    Features:
    - Atomic replace-on-write (a crash mid-write leaves the previous snapshot)
    - Tolerant load (bad records skipped, duplicates collapsed, legacy keys accepted)
    - Unknown record keys preserved across rewrites
    """

    def __init__(self, positions_file: Optional[str] = None):
        """
        Initialize position store.

        Args:
            positions_file: Path to positions JSON file
                (default: $ACTIVE_POSITIONS_FILE or data/active_positions.json)
        """
        if positions_file:
            self.positions_file = Path(positions_file)
        else:
            self.positions_file = Path(os.getenv("ACTIVE_POSITIONS_FILE", DEFAULT_POSITIONS_FILE))

        # Ensure directory exists
        self.positions_file.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized PositionStore at {self.positions_file}")

    def describe(self) -> str:
        return f"json:{self.positions_file}"

    def _read_raw(self) -> List[Any]:
        if not self.positions_file.exists():
            logger.debug("No positions file found, starting empty")
            return []

        try:
            with open(self.positions_file, "r", encoding="utf-8") as f:
                text = f.read()
            if not text.strip():
                return []
            data = json.loads(text)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load positions from {self.positions_file}: {e}")
            return []

        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            # Tolerate a single position object
            return [data]
        logger.warning("Invalid positions file format (%s), using empty registry", type(data).__name__)
        return []

    def load(self) -> List[Position]:
        """
        Load all positions in file order.

        Returns:
            List of Position; empty on missing or corrupt data
        """
        positions: List[Position] = []
        seen = set()

        for idx, raw in enumerate(self._read_raw()):
            position = Position.from_record(raw)
            if position is None:
                logger.warning(f"Skipping unusable position record #{idx}: {str(raw)[:200]}")
                continue
            if position.asset_id in seen:
                logger.warning(f"Duplicate position for {position.asset_id}, keeping first occurrence")
                continue
            seen.add(position.asset_id)
            positions.append(position)

        logger.debug(f"Loaded {len(positions)} position(s)")
        return positions

    def save(self, positions: List[Position]) -> None:
        """
        Save the full snapshot atomically.

        Args:
            positions: Complete ordered list of open positions

        Raises:
            StateWriteError: if the snapshot could not be written; the previous
                file is left untouched
        """
        records: List[Dict[str, Any]] = [p.to_record() for p in positions]
        temp_path = None
        try:
            # Write to temp file first (same directory so os.replace stays atomic)
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.positions_file.parent,
                prefix=".positions_",
                suffix=".json.tmp",
            )

            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(temp_path, self.positions_file)
            temp_path = None
            logger.debug(f"Saved {len(records)} position(s)")

        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save positions: {e}")
            raise StateWriteError(f"failed to write {self.positions_file}: {e}") from e
        finally:
            if temp_path and os.path.exists(temp_path):
                try:
                    os.unlink(temp_path)
                except OSError:
                    logger.warning(f"Could not remove temp file {temp_path}")


def create_position_store_from_config(state_cfg: Optional[Dict[str, Any]]) -> PositionStore:
    """Build the store from the `state` section of app.yaml."""
    state_cfg = state_cfg or {}
    return PositionStore(positions_file=state_cfg.get("positions_file"))
