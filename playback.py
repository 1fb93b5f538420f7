from __future__ import annotations

import asyncio
from enum import Enum
import logging
from typing import Awaitable, Callable, Iterable, List

FIRST_REQUEST_TIMEOUT_SECONDS = 3.0
OVERALL_TIMEOUT_SECONDS = 10.0
DEFAULT_AUTOPLAY_INTERVAL_MS = 1000
LOGGER = logging.getLogger("climate_timelapse.playback")


class BarrierOutcome(str, Enum):
    SETTLED = "settled"
    NO_TILES = "no_tiles"
    TIMED_OUT = "timed_out"
    MISSING = "missing"


class PlaybackState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    PLAYING = "playing"
    PAUSED = "paused"
    EXITED = "exited"


class PlaybackStateError(RuntimeError):
    """Raised for transitions the playback session does not allow."""


class TileLoadTracker:
    """Counts tile requests and completions for one displayed frame.

    The overlay's tile URL function calls tile_requested(); the rendering
    surface reports tile_loaded() / tile_errored(). Every change wakes any
    barrier waiting on the tracker.
    """

    def __init__(self) -> None:
        self.requested = 0
        self.loaded = 0
        self.errored = 0
        self._changed = asyncio.Event()

    def tile_requested(self) -> None:
        self.requested += 1
        self._changed.set()

    def tile_loaded(self) -> None:
        self.loaded += 1
        self._changed.set()

    def tile_errored(self) -> None:
        self.errored += 1
        self._changed.set()

    @property
    def settled(self) -> bool:
        return self.requested > 0 and self.loaded + self.errored >= self.requested

    async def wait_changed(self) -> None:
        await self._changed.wait()

    def reset_changed(self) -> None:
        self._changed.clear()


async def await_with_soft_timeout(
    tracker: TileLoadTracker,
    first_request_timeout: float = FIRST_REQUEST_TIMEOUT_SECONDS,
    overall_timeout: float = OVERALL_TIMEOUT_SECONDS,
) -> BarrierOutcome:
    """Wait until the frame's tiles settle, no tile is requested, or time runs out.

    A single event wait is re-armed after every counter change with the time
    left until the nearest applicable deadline. Timeouts are outcomes, not errors.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    while True:
        tracker.reset_changed()
        if tracker.settled:
            return BarrierOutcome.SETTLED
        elapsed = loop.time() - started
        if tracker.requested == 0 and elapsed >= first_request_timeout:
            return BarrierOutcome.NO_TILES
        if elapsed >= overall_timeout:
            return BarrierOutcome.TIMED_OUT

        deadline = overall_timeout
        if tracker.requested == 0:
            deadline = min(deadline, first_request_timeout)
        try:
            await asyncio.wait_for(tracker.wait_changed(), timeout=deadline - elapsed)
        except asyncio.TimeoutError:
            pass


class PlaybackStateMachine:
    """Year-by-year playback over a fixed, pre-fetched set of years.

    Each shown year goes through ``display_year`` (normally
    ModeController.display_cached_year), which returns once the frame barrier
    resolves. Autoplay runs in a single task; pause/stop/exit wake its interval
    wait, and an in-flight frame never advances once the state left Playing.
    """

    def __init__(
        self,
        display_year: Callable[[int], Awaitable[object]],
        autoplay_interval_ms: int = DEFAULT_AUTOPLAY_INTERVAL_MS,
        on_exit: Callable[[int | None], None] | None = None,
    ) -> None:
        self._display_year = display_year
        self.autoplay_interval_ms = int(autoplay_interval_ms)
        self._on_exit = on_exit
        self.state = PlaybackState.UNINITIALIZED
        self.years: List[int] = []
        self.index = 0
        self.last_outcome: object = None
        self._run_task: asyncio.Task | None = None
        self._run_id = 0
        self._stop = asyncio.Event()

    @property
    def current_year(self) -> int | None:
        if not self.years:
            return None
        return self.years[self.index]

    @property
    def is_playing(self) -> bool:
        return self.state == PlaybackState.PLAYING

    async def initialize(self, years: Iterable[int]) -> None:
        session_years = sorted({int(y) for y in years})
        if not session_years:
            raise PlaybackStateError("Timelapse needs at least one cached year")
        self.stop()
        await self._wait_run_task()
        self.years = session_years
        self.index = 0
        self.state = PlaybackState.READY
        LOGGER.info("Playback initialized years=%s..%s frames=%d", session_years[0], session_years[-1], len(session_years))
        await self._show()

    async def first(self) -> bool:
        return await self._navigate(0)

    async def prev(self) -> bool:
        return await self._navigate(self.index - 1)

    async def next(self) -> bool:
        return await self._navigate(self.index + 1)

    async def last(self) -> bool:
        return await self._navigate(len(self.years) - 1)

    async def jump(self, year: int) -> bool:
        self._require_session()
        try:
            target = self.years.index(int(year))
        except ValueError:
            LOGGER.debug("Jump ignored, year %s not in session", year)
            return False
        return await self._navigate(target)

    async def start_autoplay(self) -> bool:
        self._require_session()
        if self.state == PlaybackState.PLAYING:
            return False
        if self.index >= len(self.years) - 1:
            return False
        await self._wait_run_task()
        self.state = PlaybackState.PLAYING
        self._stop = asyncio.Event()
        self._run_id += 1
        self._run_task = asyncio.create_task(self._run(self._run_id, self._stop))
        LOGGER.info("Autoplay started at year=%s", self.current_year)
        return True

    async def resume(self) -> bool:
        return await self.start_autoplay()

    def pause(self) -> bool:
        if self.state != PlaybackState.PLAYING:
            return False
        self.state = PlaybackState.PAUSED
        self._stop.set()
        LOGGER.info("Autoplay paused at year=%s", self.current_year)
        return True

    def stop(self) -> bool:
        if self.state not in (PlaybackState.PLAYING, PlaybackState.PAUSED):
            return False
        self.state = PlaybackState.READY
        self._stop.set()
        return True

    def exit(self) -> None:
        self.state = PlaybackState.EXITED
        self._stop.set()
        LOGGER.info("Playback exited at year=%s", self.current_year)
        if self._on_exit is not None:
            self._on_exit(self.current_year)

    async def wait_idle(self) -> None:
        await self._wait_run_task()

    async def _navigate(self, target_index: int) -> bool:
        self._require_session()
        if self.state == PlaybackState.PLAYING:
            self.pause()
        target = max(0, min(target_index, len(self.years) - 1))
        if target == self.index:
            return False
        await self._wait_run_task()
        self.index = target
        await self._show()
        return True

    async def _run(self, run_id: int, stop: asyncio.Event) -> None:
        interval = self.autoplay_interval_ms / 1000.0
        while True:
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if not self._owns(run_id):
                return
            self.index += 1
            try:
                await self._show()
            except Exception:
                LOGGER.exception("Autoplay frame failed year=%s", self.current_year)
                if self._owns(run_id):
                    self.state = PlaybackState.PAUSED
                return
            if not self._owns(run_id):
                return
            if self.index >= len(self.years) - 1:
                self.state = PlaybackState.READY
                LOGGER.info("Autoplay reached last year=%s", self.current_year)
                return

    def _owns(self, run_id: int) -> bool:
        return self.state == PlaybackState.PLAYING and run_id == self._run_id

    async def _show(self) -> None:
        year = self.current_year
        self.last_outcome = await self._display_year(year)
        LOGGER.debug("Frame year=%s outcome=%s", year, self.last_outcome)

    async def _wait_run_task(self) -> None:
        task = self._run_task
        if task is None or task is asyncio.current_task():
            return
        if not task.done():
            await task
        if self._run_task is task:
            self._run_task = None

    def _require_session(self) -> None:
        if self.state in (PlaybackState.UNINITIALIZED, PlaybackState.EXITED):
            raise PlaybackStateError(f"Playback is {self.state.value}")
