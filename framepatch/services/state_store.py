"""
State Store - single JSON document holding patch layers, render plans and
motion jobs.

Layout:
    {
        "version": 1,
        "ingest_runs": [...],
        "patch_layers": [...],
        "motion_jobs": [...],
        "render_plans": [...]
    }

Each area is kept most-recent-first and capped. Writes go to a temp file in
the same directory and are renamed into place, so readers never observe a
partially written document. A missing or corrupt file reads as the default
document.
"""

import asyncio
import json
import logging
import os
import tempfile
from typing import Any, Optional

from framepatch.config import get_settings
from framepatch.errors import InvalidInput

logger = logging.getLogger(__name__)


STATE_VERSION = 1

AREAS = ("ingest_runs", "patch_layers", "motion_jobs", "render_plans")

# Record counts returned by snapshot(), per area
SNAPSHOT_SLICES = {
    "ingest_runs": 10,
    "patch_layers": 30,
    "motion_jobs": 30,
    "render_plans": 30,
}


def default_state() -> dict[str, Any]:
    state: dict[str, Any] = {"version": STATE_VERSION}
    for area in AREAS:
        state[area] = []
    return state


class JsonStateStore:
    """
    Async-safe JSON ledger.

    All mutations are serialized through one asyncio.Lock; file I/O runs in
    the default executor.
    """

    def __init__(self, path: Optional[str] = None, limits: Optional[dict[str, int]] = None):
        settings = get_settings()
        self.path = path or settings.state_file_path
        self.limits = dict(settings.history_limits)
        if limits:
            self.limits.update(limits)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # File I/O
    # ------------------------------------------------------------------

    def _read_sync(self) -> dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return default_state()
        except (OSError, ValueError) as e:
            logger.warning(f"State file unreadable, starting from defaults: {e}")
            return default_state()

        if not isinstance(data, dict):
            logger.warning("State file is not a JSON object, starting from defaults")
            return default_state()

        state = default_state()
        for area in AREAS:
            if isinstance(data.get(area), list):
                state[area] = data[area]
        return state

    def _write_sync(self, state: dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(dir=directory, prefix=".state-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(state, f, indent=2)
            os.replace(temp_path, self.path)
        except OSError:
            if os.path.exists(temp_path):
                os.remove(temp_path)
            raise

    async def load(self) -> dict[str, Any]:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._read_sync)

    async def _save(self, state: dict[str, Any]) -> None:
        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, lambda: self._write_sync(state))

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    def _check_area(self, area: str) -> None:
        if area not in AREAS:
            raise InvalidInput(f"Unknown state area: {area}")

    async def get(self, area: str, record_id: str, id_field: str = "id") -> Optional[dict[str, Any]]:
        """Return the record with the given id, or None."""
        self._check_area(area)
        state = await self.load()
        for record in state[area]:
            if isinstance(record, dict) and record.get(id_field) == record_id:
                return record
        return None

    async def put(self, area: str, record: dict[str, Any], id_field: str = "id") -> dict[str, Any]:
        """
        Insert or update a record.

        An existing record with the same id is replaced in place, keeping its
        position. New records are prepended and the area is trimmed to its cap.
        """
        self._check_area(area)
        record_id = record.get(id_field)
        if not record_id:
            raise InvalidInput(f"Record for {area} has no {id_field}")

        async with self._lock:
            state = await self.load()
            records = state[area]

            for index, existing in enumerate(records):
                if isinstance(existing, dict) and existing.get(id_field) == record_id:
                    records[index] = record
                    break
            else:
                records.insert(0, record)
                limit = self.limits.get(area)
                if limit is not None:
                    del records[limit:]

            await self._save(state)

        logger.debug(f"Stored {area} record {record_id}")
        return record

    async def list_recent(self, area: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        self._check_area(area)
        state = await self.load()
        records = state[area]
        return records[:limit] if limit is not None else records

    async def snapshot(self) -> dict[str, Any]:
        """Recent slice of every area plus totals."""
        state = await self.load()
        snapshot: dict[str, Any] = {"version": state["version"]}
        for area in AREAS:
            snapshot[area] = state[area][:SNAPSHOT_SLICES[area]]
        snapshot["totals"] = {area: len(state[area]) for area in AREAS}
        return snapshot
