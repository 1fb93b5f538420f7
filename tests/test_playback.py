import asyncio
import inspect
import time
import unittest

from playback import (
    FIRST_REQUEST_TIMEOUT_SECONDS,
    OVERALL_TIMEOUT_SECONDS,
    BarrierOutcome,
    PlaybackState,
    PlaybackStateError,
    PlaybackStateMachine,
    TileLoadTracker,
    await_with_soft_timeout,
)


class _Display:
    """Records shown years; optionally holds a year until released."""

    def __init__(self, hold_year=None) -> None:
        self.shown = []
        self.hold_year = hold_year
        self.release = asyncio.Event()
        self.holding = asyncio.Event()

    async def __call__(self, year):
        self.shown.append(year)
        if year == self.hold_year:
            self.holding.set()
            await self.release.wait()
        return BarrierOutcome.SETTLED


class FrameBarrierTests(unittest.IsolatedAsyncioTestCase):
    def test_default_timeouts(self):
        self.assertEqual(FIRST_REQUEST_TIMEOUT_SECONDS, 3.0)
        self.assertEqual(OVERALL_TIMEOUT_SECONDS, 10.0)
        params = inspect.signature(await_with_soft_timeout).parameters
        self.assertEqual(params["first_request_timeout"].default, 3.0)
        self.assertEqual(params["overall_timeout"].default, 10.0)

    async def test_no_tiles_requested_resolves_after_first_request_timeout(self):
        tracker = TileLoadTracker()
        started = time.monotonic()
        outcome = await await_with_soft_timeout(tracker, first_request_timeout=0.05, overall_timeout=1.0)
        elapsed = time.monotonic() - started
        self.assertEqual(outcome, BarrierOutcome.NO_TILES)
        self.assertGreaterEqual(elapsed, 0.04)
        self.assertLess(elapsed, 0.5)

    async def test_settles_promptly_when_all_tiles_finish(self):
        tracker = TileLoadTracker()
        loop = asyncio.get_running_loop()
        for _ in range(3):
            loop.call_later(0.01, tracker.tile_requested)
        loop.call_later(0.02, tracker.tile_loaded)
        loop.call_later(0.02, tracker.tile_loaded)
        loop.call_later(0.03, tracker.tile_errored)

        started = time.monotonic()
        outcome = await await_with_soft_timeout(tracker, first_request_timeout=0.5, overall_timeout=1.0)
        self.assertEqual(outcome, BarrierOutcome.SETTLED)
        self.assertLess(time.monotonic() - started, 0.4)

    async def test_pending_tiles_time_out_at_overall_limit(self):
        tracker = TileLoadTracker()
        tracker.tile_requested()
        tracker.tile_requested()
        tracker.tile_loaded()
        started = time.monotonic()
        outcome = await await_with_soft_timeout(tracker, first_request_timeout=0.02, overall_timeout=0.15)
        self.assertEqual(outcome, BarrierOutcome.TIMED_OUT)
        self.assertGreaterEqual(time.monotonic() - started, 0.14)

    async def test_already_settled_tracker_returns_immediately(self):
        tracker = TileLoadTracker()
        tracker.tile_requested()
        tracker.tile_errored()
        self.assertTrue(tracker.settled)
        outcome = await await_with_soft_timeout(tracker, first_request_timeout=5.0, overall_timeout=5.0)
        self.assertEqual(outcome, BarrierOutcome.SETTLED)


class PlaybackNavigationTests(unittest.IsolatedAsyncioTestCase):
    async def test_initialize_sorts_years_and_shows_first_frame(self):
        display = _Display()
        machine = PlaybackStateMachine(display)
        await machine.initialize([2000, 1980, 1990, 1990])
        self.assertEqual(machine.years, [1980, 1990, 2000])
        self.assertEqual(machine.state, PlaybackState.READY)
        self.assertEqual(machine.current_year, 1980)
        self.assertEqual(display.shown, [1980])
        self.assertEqual(machine.last_outcome, BarrierOutcome.SETTLED)

    async def test_initialize_rejects_empty_session(self):
        machine = PlaybackStateMachine(_Display())
        with self.assertRaises(PlaybackStateError):
            await machine.initialize([])
        self.assertEqual(machine.state, PlaybackState.UNINITIALIZED)

    async def test_navigation_requires_session(self):
        machine = PlaybackStateMachine(_Display())
        with self.assertRaises(PlaybackStateError):
            await machine.next()
        with self.assertRaises(PlaybackStateError):
            await machine.start_autoplay()

    async def test_navigation_is_clamped_and_noops_skip_the_barrier(self):
        display = _Display()
        machine = PlaybackStateMachine(display)
        await machine.initialize([1980, 1990, 2000])

        self.assertFalse(await machine.first())
        self.assertFalse(await machine.prev())
        self.assertTrue(await machine.last())
        self.assertEqual(machine.index, 2)
        self.assertFalse(await machine.next())
        self.assertFalse(await machine.jump(1995))
        self.assertTrue(await machine.jump(1990))
        self.assertTrue(await machine.prev())
        self.assertEqual(display.shown, [1980, 2000, 1990, 1980])
        self.assertEqual(machine.state, PlaybackState.READY)


class PlaybackAutoplayTests(unittest.IsolatedAsyncioTestCase):
    async def test_autoplay_runs_to_last_year_and_becomes_ready(self):
        display = _Display()
        machine = PlaybackStateMachine(display, autoplay_interval_ms=10)
        await machine.initialize([1980, 1990, 2000])

        self.assertTrue(await machine.start_autoplay())
        self.assertEqual(machine.state, PlaybackState.PLAYING)
        await machine.wait_idle()

        self.assertEqual(machine.state, PlaybackState.READY)
        self.assertEqual(machine.index, 2)
        self.assertEqual(display.shown, [1980, 1990, 2000])

    async def test_autoplay_after_jump_continues_from_jumped_year(self):
        display = _Display()
        machine = PlaybackStateMachine(display, autoplay_interval_ms=50)
        await machine.initialize([1980, 1990, 2000])
        self.assertTrue(await machine.jump(1990))

        self.assertTrue(await machine.start_autoplay())
        await machine.wait_idle()

        self.assertEqual(machine.state, PlaybackState.READY)
        self.assertEqual(machine.index, 2)
        self.assertEqual(machine.current_year, 2000)
        self.assertEqual(display.shown, [1980, 1990, 2000])

    async def test_autoplay_at_last_year_does_not_wrap(self):
        display = _Display()
        machine = PlaybackStateMachine(display, autoplay_interval_ms=10)
        await machine.initialize([1980, 1990])
        await machine.last()
        self.assertFalse(await machine.start_autoplay())
        self.assertEqual(machine.state, PlaybackState.READY)
        self.assertEqual(display.shown, [1980, 1990])

    async def test_pause_before_tick_prevents_advance(self):
        display = _Display()
        machine = PlaybackStateMachine(display, autoplay_interval_ms=50)
        await machine.initialize([1980, 1990, 2000])
        await machine.start_autoplay()
        self.assertTrue(machine.pause())
        await machine.wait_idle()
        await asyncio.sleep(0.1)
        self.assertEqual(machine.state, PlaybackState.PAUSED)
        self.assertEqual(display.shown, [1980])

    async def test_pause_during_frame_lets_it_finish_without_further_advance(self):
        display = _Display(hold_year=1990)
        machine = PlaybackStateMachine(display, autoplay_interval_ms=10)
        await machine.initialize([1980, 1990, 2000])
        await machine.start_autoplay()
        await asyncio.wait_for(display.holding.wait(), 1.0)

        machine.pause()
        display.release.set()
        await machine.wait_idle()
        await asyncio.sleep(0.05)
        self.assertEqual(display.shown, [1980, 1990])
        self.assertEqual(machine.index, 1)
        self.assertEqual(machine.state, PlaybackState.PAUSED)

        self.assertTrue(await machine.resume())
        await machine.wait_idle()
        self.assertEqual(display.shown, [1980, 1990, 2000])
        self.assertEqual(machine.state, PlaybackState.READY)

    async def test_manual_navigation_while_playing_pauses_first(self):
        display = _Display()
        machine = PlaybackStateMachine(display, autoplay_interval_ms=10_000)
        await machine.initialize([1980, 1990, 2000])
        await machine.start_autoplay()

        self.assertTrue(await machine.next())
        self.assertEqual(machine.state, PlaybackState.PAUSED)
        self.assertEqual(machine.current_year, 1990)
        self.assertEqual(display.shown, [1980, 1990])

    async def test_stop_returns_to_ready(self):
        machine = PlaybackStateMachine(_Display(), autoplay_interval_ms=10_000)
        await machine.initialize([1980, 1990, 2000])
        await machine.start_autoplay()
        self.assertTrue(machine.stop())
        await machine.wait_idle()
        self.assertEqual(machine.state, PlaybackState.READY)
        self.assertFalse(machine.stop())

    async def test_exit_hands_back_current_year(self):
        exited = []
        display = _Display()
        machine = PlaybackStateMachine(display, autoplay_interval_ms=10_000, on_exit=exited.append)
        await machine.initialize([1980, 1990, 2000])
        await machine.jump(1990)
        await machine.start_autoplay()

        machine.exit()
        await machine.wait_idle()
        self.assertEqual(machine.state, PlaybackState.EXITED)
        self.assertEqual(exited, [1990])
        self.assertEqual(display.shown, [1980, 1990])
        with self.assertRaises(PlaybackStateError):
            await machine.next()

        await machine.initialize([2001, 2002])
        self.assertEqual(machine.state, PlaybackState.READY)
        self.assertEqual(machine.current_year, 2001)


if __name__ == "__main__":
    unittest.main()
