"""Live progress feed for reconciliation runs"""

import asyncio
import logging
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from recon_gateway.domain.models import ProgressEvent
from recon_gateway.infrastructure.database.repositories import RunRepository
from recon_gateway.utils.date_utils import epoch_ms

logger = logging.getLogger(__name__)


class DatabaseProgressSink:
    """Persists run feeds to reconciliation_runs, one short session per write"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def _write(self, action: Callable[[RunRepository], None]) -> None:
        db = self.session_factory()
        try:
            action(RunRepository(db))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def start(self, run_id: str, owner_id: str, totals: Dict[str, int]) -> None:
        self._write(lambda runs: runs.create(run_id, owner_id, totals))

    def append(self, run_id: str, events: List[Dict[str, Any]]) -> None:
        self._write(lambda runs: runs.append_events(run_id, events))

    def finish(self, run_id: str, status: str, stats: Optional[Dict[str, Any]] = None, error: Optional[str] = None) -> None:
        self._write(lambda runs: runs.finish(run_id, status, stats, error))


class ProgressStream:
    """
    Append-only event log for one run.

    Events are always kept in memory. With a run id and a sink they are also
    persisted through a single writer task draining one queue, so parallel
    batch workers never interleave writes. Sink failures are logged and
    never abort the run.
    """

    def __init__(self, run_id: Optional[str], owner_id: str, sink=None, clock: Callable[[], float] = epoch_ms):
        self.run_id = run_id
        self.owner_id = owner_id
        self.sink = sink if run_id else None
        self.clock = clock
        self.step = "init"
        self.status = "running"
        self.events: List[ProgressEvent] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    async def start(self, totals: Dict[str, int]) -> None:
        if self.sink is None:
            return
        self._call_sink("start", self.run_id, self.owner_id, totals)
        self._writer = asyncio.create_task(self._drain())

    def set_step(self, step: str) -> None:
        self.step = step

    async def emit(self, event_type: str, text: str) -> None:
        await self.emit_batch([(event_type, text)])

    async def emit_batch(self, entries: Sequence[Tuple[str, str]]) -> None:
        batch = [ProgressEvent(ts=self.clock(), type=event_type, text=text, step=self.step) for event_type, text in entries]
        self.events.extend(batch)
        if self._writer is not None:
            await self._queue.put(batch)

    async def complete(self, stats: Dict[str, Any]) -> None:
        await self._close()
        self.status = "completed"
        if self.sink is not None:
            self._call_sink("finish", self.run_id, "completed", stats)

    async def error(self, message: str) -> None:
        await self._close()
        self.status = "error"
        if self.sink is not None:
            self._call_sink("finish", self.run_id, "error", None, message)

    async def _close(self) -> None:
        if self._writer is None:
            return
        await self._queue.put(None)
        await self._writer
        self._writer = None

    async def _drain(self) -> None:
        while True:
            batch = await self._queue.get()
            if batch is None:
                return
            pending = list(batch)
            # Coalesce whatever else is already queued into one write
            closing = False
            while not self._queue.empty():
                more = self._queue.get_nowait()
                if more is None:
                    closing = True
                    break
                pending.extend(more)
            self._call_sink("append", self.run_id, [asdict(event) for event in pending])
            if closing:
                return

    def _call_sink(self, method: str, *args: Any) -> None:
        try:
            getattr(self.sink, method)(*args)
        except Exception as e:
            logger.warning(
                f"Progress sink {method} failed: {e}",
                extra={"run_id": self.run_id, "owner_id": self.owner_id},
            )
