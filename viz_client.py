from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
from typing import Callable, Dict, Iterable, Iterator, List, Protocol, Tuple

import requests

from modes import DEFAULT_REGION, TileDescriptor, VisualizationMode, parse_mode
from playback import (
    FIRST_REQUEST_TIMEOUT_SECONDS,
    OVERALL_TIMEOUT_SECONDS,
    BarrierOutcome,
    TileLoadTracker,
    await_with_soft_timeout,
)

BROKER_BASE_URL = os.getenv("CLIMATE_BROKER_URL", "http://127.0.0.1:8000")
REQUEST_TIMEOUT_SECONDS = float(os.getenv("CLIMATE_REQUEST_TIMEOUT_SECONDS", "60"))
LOGGER = logging.getLogger("climate_timelapse.viz_client")

_END_OF_STREAM = object()


class VisualizationClientError(RuntimeError):
    """Base class for failures talking to the tile broker."""


class NetworkError(VisualizationClientError):
    pass


class BrokerRequestError(VisualizationClientError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BrokerClient:
    """Thin requests wrapper around the broker's /tiles and /bulk endpoints."""

    def __init__(
        self,
        base_url: str = BROKER_BASE_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def fetch_tiles(
        self,
        mode: str | VisualizationMode,
        year: int,
        region: str = DEFAULT_REGION,
        bypass_cache: bool = False,
    ) -> TileDescriptor:
        params: Dict[str, object] = {"mode": parse_mode(mode).value, "year": int(year), "region": region}
        if bypass_cache:
            params["bypassCache"] = "true"
        try:
            resp = self._session.get(f"{self.base_url}/tiles", params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"Tile request failed for {params['mode']} {year}: {exc}") from exc

        payload = _json_body(resp)
        if resp.status_code >= 400 or not payload.get("success", False):
            message = payload.get("error") or f"HTTP {resp.status_code}"
            raise BrokerRequestError(str(message), status_code=resp.status_code)
        try:
            return TileDescriptor.from_payload(self._absolute_templates(payload))
        except (KeyError, TypeError, ValueError) as exc:
            raise BrokerRequestError(f"Malformed tile descriptor: {exc}", status_code=resp.status_code) from exc

    def stream_bulk(
        self,
        start_year: int,
        end_year: int,
        modes: Iterable[str | VisualizationMode] = (VisualizationMode.base,),
        region: str = DEFAULT_REGION,
    ) -> Iterator[Dict[str, object]]:
        params = {
            "startYear": int(start_year),
            "endYear": int(end_year),
            "modes": ",".join(parse_mode(m).value for m in modes),
            "region": region,
        }
        try:
            with self._session.get(f"{self.base_url}/bulk", params=params, stream=True, timeout=self.timeout) as resp:
                if resp.status_code >= 400:
                    payload = _json_body(resp)
                    raise BrokerRequestError(
                        str(payload.get("error") or f"HTTP {resp.status_code}"), status_code=resp.status_code
                    )
                for line in resp.iter_lines(decode_unicode=True):
                    if not line or not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[len("data:"):].strip())
                    except ValueError as exc:
                        raise BrokerRequestError(f"Malformed progress event: {exc}") from exc
                    if isinstance(event.get("descriptor"), dict):
                        event["descriptor"] = self._absolute_templates(event["descriptor"])
                    yield event
        except requests.RequestException as exc:
            raise NetworkError(f"Bulk stream interrupted: {exc}") from exc

    def _absolute_templates(self, payload: Dict[str, object]) -> Dict[str, object]:
        # Fallback tiles are served by the broker itself under a relative path.
        out = dict(payload)
        for key in ("urlTemplate", "auxiliaryUrlTemplate"):
            value = out.get(key)
            if isinstance(value, str) and value.startswith("/"):
                out[key] = self.base_url + value
        return out


def _json_body(resp: requests.Response) -> Dict[str, object]:
    try:
        payload = resp.json()
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


class ClientCache:
    """Descriptors already fetched by this client, keyed by (mode, year)."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[VisualizationMode, int], TileDescriptor] = {}

    def get(self, mode: str | VisualizationMode, year: int) -> TileDescriptor | None:
        return self._entries.get((parse_mode(mode), int(year)))

    def put(self, descriptor: TileDescriptor) -> None:
        self._entries[(descriptor.mode, descriptor.year)] = descriptor

    def contains(self, mode: str | VisualizationMode, year: int) -> bool:
        return self.get(mode, year) is not None

    def years(self, mode: str | VisualizationMode) -> List[int]:
        wanted = parse_mode(mode)
        return sorted(year for (m, year) in self._entries if m == wanted)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RenderingSurface(Protocol):
    def install_overlay(
        self,
        tile_url_fn: Callable[[int, int, int], str],
        opacity: float,
        listener: object | None = None,
    ) -> object:
        ...

    def remove_overlay(self, handle: object) -> None:
        ...


class ModeController:
    """Client-side mode switching, year loading and overlay rendering.

    Only one tile fetch is in flight at a time. Requests made meanwhile are
    folded into ``pending_year`` and the latest one is issued when the fetch
    completes. A failed fetch in a non-base mode falls back to the base mode.
    """

    def __init__(
        self,
        client: BrokerClient,
        surface: RenderingSurface,
        region: str = DEFAULT_REGION,
        cache: ClientCache | None = None,
        on_error: Callable[[VisualizationClientError], None] | None = None,
    ) -> None:
        self.client = client
        self.surface = surface
        self.region = region
        self.cache = cache if cache is not None else ClientCache()
        self.on_error = on_error
        self.current_mode = VisualizationMode.base
        self.current_year: int | None = None
        self.current_descriptor: TileDescriptor | None = None
        self.is_loading = False
        self.pending_year: int | None = None
        self.requested_year: int | None = None
        self.last_error: VisualizationClientError | None = None
        self._overlays: List[object] = []

    @property
    def overlay_count(self) -> int:
        return len(self._overlays)

    async def set_mode(self, mode: str | VisualizationMode) -> TileDescriptor | None:
        mode = parse_mode(mode)
        if mode == self.current_mode:
            return self.current_descriptor
        LOGGER.info("Mode switch %s -> %s", self.current_mode.value, mode.value)
        self.current_mode = mode
        year = self.requested_year if self.requested_year is not None else self.current_year
        if year is None:
            return None
        return await self.load_visualization(year)

    async def load_visualization(self, year: int) -> TileDescriptor | None:
        year = int(year)
        self.requested_year = year
        if self.is_loading:
            self.pending_year = year
            LOGGER.debug("Load in flight, queued year=%s", year)
            return None

        mode = self.current_mode
        cached = self.cache.get(mode, year)
        if cached is not None:
            self._show(cached, year)
            return cached

        self.is_loading = True
        descriptor: TileDescriptor | None = None
        error: VisualizationClientError | None = None
        try:
            descriptor = await asyncio.to_thread(self.client.fetch_tiles, mode, year, self.region)
        except VisualizationClientError as exc:
            error = exc
        finally:
            self.is_loading = False

        queued, self.pending_year = self.pending_year, None
        if error is not None:
            self._report_error(mode, year, error)
            if mode != VisualizationMode.base:
                LOGGER.info("Falling back to base mode after %s failure", mode.value)
                self.current_mode = VisualizationMode.base
                return await self.load_visualization(queued if queued is not None else year)
            if queued is not None and queued != year:
                return await self.load_visualization(queued)
            return None

        self.cache.put(descriptor)
        if self.current_mode != mode or (queued is not None and queued != year):
            # Superseded while in flight.
            return await self.load_visualization(queued if queued is not None else year)
        self._show(descriptor, year)
        return descriptor

    def render(self, descriptor: TileDescriptor, listener: TileLoadTracker | None = None) -> None:
        for handle in self._overlays:
            self.surface.remove_overlay(handle)
        self._overlays = []

        primary = _tracked(descriptor.tile_url, listener)
        self._overlays.append(self.surface.install_overlay(primary, descriptor.opacity, listener))
        if descriptor.has_auxiliary:
            auxiliary = _tracked(descriptor.auxiliary_tile_url, listener)
            opacity = descriptor.auxiliary_opacity if descriptor.auxiliary_opacity is not None else descriptor.opacity
            self._overlays.append(self.surface.install_overlay(auxiliary, opacity, listener))
        self.current_descriptor = descriptor

    async def prefetch(
        self,
        start_year: int,
        end_year: int,
        modes: Iterable[str | VisualizationMode] | None = None,
        on_progress: Callable[[Dict[str, object]], None] | None = None,
    ) -> Dict[str, object] | None:
        """Warm the server and local caches over a year range; returns the final event."""
        requested = list(modes) if modes is not None else [self.current_mode]
        loop = asyncio.get_running_loop()
        events: asyncio.Queue = asyncio.Queue()

        def _pump() -> None:
            try:
                for event in self.client.stream_bulk(start_year, end_year, requested, self.region):
                    loop.call_soon_threadsafe(events.put_nowait, event)
            except VisualizationClientError as exc:
                loop.call_soon_threadsafe(events.put_nowait, exc)
            finally:
                loop.call_soon_threadsafe(events.put_nowait, _END_OF_STREAM)

        threading.Thread(target=_pump, name="client-prefetch", daemon=True).start()
        final: Dict[str, object] | None = None
        while True:
            item = await events.get()
            if item is _END_OF_STREAM:
                break
            if isinstance(item, VisualizationClientError):
                self._report_error(None, None, item)
                raise item
            payload = item.get("descriptor")
            if isinstance(payload, dict):
                self.cache.put(TileDescriptor.from_payload(payload))
            if on_progress is not None:
                on_progress(item)
            if item.get("completed") or ("error" in item and "year" not in item):
                final = item
        LOGGER.info("Prefetch finished years=%s..%s cached=%d", start_year, end_year, len(self.cache))
        return final

    async def display_cached_year(
        self,
        year: int,
        first_request_timeout: float = FIRST_REQUEST_TIMEOUT_SECONDS,
        overall_timeout: float = OVERALL_TIMEOUT_SECONDS,
    ) -> BarrierOutcome:
        descriptor = self.cache.get(self.current_mode, year)
        if descriptor is None:
            LOGGER.warning("No cached data for year=%s mode=%s", year, self.current_mode.value)
            return BarrierOutcome.MISSING
        tracker = TileLoadTracker()
        self.render(descriptor, listener=tracker)
        self.current_year = int(year)
        self.requested_year = self.current_year
        outcome = await await_with_soft_timeout(tracker, first_request_timeout, overall_timeout)
        if outcome != BarrierOutcome.SETTLED:
            LOGGER.info(
                "Frame year=%s continued on %s requested=%d loaded=%d errored=%d",
                year,
                outcome.value,
                tracker.requested,
                tracker.loaded,
                tracker.errored,
            )
        return outcome

    def _show(self, descriptor: TileDescriptor, year: int) -> None:
        self.render(descriptor)
        self.current_year = year

    def _report_error(self, mode: VisualizationMode | None, year: int | None, exc: VisualizationClientError) -> None:
        self.last_error = exc
        LOGGER.warning("Visualization load failed mode=%s year=%s: %s", mode.value if mode else "-", year, exc)
        if self.on_error is not None:
            self.on_error(exc)


def _tracked(tile_url_fn: Callable[[int, int, int], str], listener: TileLoadTracker | None):
    if listener is None:
        return tile_url_fn

    def _url(z: int, x: int, y: int) -> str:
        listener.tile_requested()
        return tile_url_fn(z, x, y)

    return _url
