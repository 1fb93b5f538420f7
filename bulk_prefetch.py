from __future__ import annotations

import asyncio
import json
import logging
import os
import queue
import threading
from typing import Awaitable, Callable, Dict, Iterable, Iterator, List, Tuple

from modes import VisualizationMode, mode_config, parse_mode
from tile_broker import BrokerError, Priority, TileBroker

BULK_UNIT_DELAY_SECONDS = float(os.getenv("BULK_UNIT_DELAY_SECONDS", "0.5"))
BULK_QUEUE_POLL_SECONDS = 0.25
UNIT_PENDING = "pending"
UNIT_CACHED = "cached"
UNIT_COMPLETED = "completed"
UNIT_ERROR = "error"
LOGGER = logging.getLogger("climate_timelapse.bulk_prefetch")

_END_OF_STREAM = object()


def format_sse(payload: Dict[str, object]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def clamp_year_span(
    start_year: int, end_year: int, modes: Iterable[str | VisualizationMode]
) -> Tuple[int, int]:
    """Narrow a requested span to the years any of the modes can serve.

    Raises ValueError when the span is inverted or misses every supported year.
    """
    configs = [mode_config(mode) for mode in modes]
    if not configs:
        raise ValueError("Bulk job needs at least one visualization mode")
    if start_year > end_year:
        raise ValueError("startYear must not be greater than endYear")
    lo = max(start_year, min(cfg.min_year for cfg in configs))
    hi = min(end_year, max(cfg.max_year for cfg in configs))
    if lo > hi:
        raise ValueError(
            f"No supported years between {start_year} and {end_year} for the requested modes"
        )
    return lo, hi


class BulkPrefetchJob:
    """Sequential warm-up of the broker cache over years x modes.

    Units run one at a time with a fixed pause between upstream calls so a
    single job never floods the compute service. Per-unit failures are recorded
    and skipped; cancel() stops the loop before the next unit.
    """

    def __init__(
        self,
        broker: TileBroker,
        years: Iterable[int],
        modes: Iterable[str | VisualizationMode],
        region: str,
        unit_delay_seconds: float = BULK_UNIT_DELAY_SECONDS,
    ) -> None:
        self._broker = broker
        self.years: List[int] = sorted({int(y) for y in years})
        self.modes: List[VisualizationMode] = []
        for mode in modes:
            parsed = parse_mode(mode)
            if parsed not in self.modes:
                self.modes.append(parsed)
        if not self.years:
            raise ValueError("Bulk job needs at least one year")
        if not self.modes:
            raise ValueError("Bulk job needs at least one visualization mode")
        self.region = region
        self._unit_delay_seconds = max(0.0, float(unit_delay_seconds))
        self.total_units = len(self.years) * len(self.modes)
        self.completed_units = 0
        self.unit_status: Dict[Tuple[int, VisualizationMode], str] = {
            (year, mode): UNIT_PENDING for year in self.years for mode in self.modes
        }
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        if not self._cancel.is_set():
            LOGGER.info("Bulk job cancel requested done=%d/%d", self.completed_units, self.total_units)
        self._cancel.set()

    def progress(self) -> int:
        return round(self.completed_units / self.total_units * 100)

    def events(self) -> Iterator[Dict[str, object]]:
        LOGGER.info(
            "Bulk job start years=%s..%s modes=%s region=%s units=%d",
            self.years[0],
            self.years[-1],
            ",".join(m.value for m in self.modes),
            self.region,
            self.total_units,
        )
        try:
            for year in self.years:
                for mode in self.modes:
                    if self._cancel.is_set():
                        LOGGER.info("Bulk job stopped at year=%s mode=%s", year, mode.value)
                        return
                    cached = self._broker.cached_descriptor(mode, year, self.region)
                    if cached is not None:
                        self._finish_unit(year, mode, UNIT_CACHED)
                        yield {
                            "progress": self.progress(),
                            "year": year,
                            "mode": mode.value,
                            "status": UNIT_CACHED,
                            "cached": True,
                            "descriptor": cached.to_payload(),
                        }
                        continue

                    yield self._run_unit(year, mode)
                    if self.completed_units < self.total_units and self._cancel.wait(self._unit_delay_seconds):
                        LOGGER.info("Bulk job cancelled during delay after year=%s mode=%s", year, mode.value)
                        return
        except Exception as exc:
            LOGGER.exception("Bulk job aborted")
            yield {"error": str(exc), "progress": self.progress()}
            return

        yield {"completed": True, "totalYears": self.successful_years(), "progress": 100}
        LOGGER.info("Bulk job finished units=%d years_ok=%d", self.total_units, self.successful_years())

    def successful_years(self) -> int:
        ok = 0
        for year in self.years:
            if all(self.unit_status[(year, mode)] in (UNIT_CACHED, UNIT_COMPLETED) for mode in self.modes):
                ok += 1
        return ok

    def snapshot(self) -> Dict[str, object]:
        return {
            "years": list(self.years),
            "modes": [m.value for m in self.modes],
            "totalUnits": self.total_units,
            "completedUnits": self.completed_units,
            "progress": self.progress(),
            "cancelled": self.cancelled,
            "units": [
                {"year": year, "mode": mode.value, "status": status}
                for (year, mode), status in self.unit_status.items()
            ],
        }

    def start(self) -> "queue.Queue":
        """Run events() on a worker thread; the queue ends with an end-of-stream marker."""
        sink: queue.Queue = queue.Queue()

        def _worker() -> None:
            try:
                for event in self.events():
                    sink.put(event)
            finally:
                sink.put(_END_OF_STREAM)

        self._thread = threading.Thread(target=_worker, name="bulk-prefetch", daemon=True)
        self._thread.start()
        return sink

    async def aiter_events(self, is_disconnected: Callable[[], Awaitable[bool]] | None = None):
        """Drain the worker queue from the event loop, cancelling on disconnect."""
        sink = self.start()
        try:
            while True:
                try:
                    event = await asyncio.to_thread(sink.get, True, BULK_QUEUE_POLL_SECONDS)
                except queue.Empty:
                    if is_disconnected is not None and await is_disconnected():
                        LOGGER.info("Bulk stream client disconnected")
                        return
                    continue
                if event is _END_OF_STREAM:
                    return
                yield event
                if is_disconnected is not None and await is_disconnected():
                    LOGGER.info("Bulk stream client disconnected")
                    return
        finally:
            self.cancel()

    def _run_unit(self, year: int, mode: VisualizationMode) -> Dict[str, object]:
        try:
            descriptor = self._broker.resolve(mode, year, self.region, priority=Priority.bulk)
        except BrokerError as exc:
            self._finish_unit(year, mode, UNIT_ERROR)
            LOGGER.warning("Bulk unit failed year=%s mode=%s: %s", year, mode.value, exc)
            return {
                "progress": self.progress(),
                "year": year,
                "mode": mode.value,
                "status": UNIT_ERROR,
                "cached": False,
                "error": str(exc),
            }
        self._finish_unit(year, mode, UNIT_COMPLETED)
        return {
            "progress": self.progress(),
            "year": year,
            "mode": mode.value,
            "status": UNIT_COMPLETED,
            "cached": False,
            "descriptor": descriptor.to_payload(),
        }

    def _finish_unit(self, year: int, mode: VisualizationMode, status: str) -> None:
        self.unit_status[(year, mode)] = status
        self.completed_units += 1
