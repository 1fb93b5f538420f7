from __future__ import annotations

from concurrent.futures import Future
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
import logging
import os
import threading
from typing import Dict, Iterator, Protocol, Tuple

from modes import (
    ModeConfig,
    OutOfRangePolicy,
    RequestKey,
    TileDescriptor,
    UpstreamErrorPolicy,
    VisualizationMode,
    mode_config,
    parse_mode,
)

UPSTREAM_MAX_CONCURRENCY = int(os.getenv("UPSTREAM_MAX_CONCURRENCY", "4"))
FALLBACK_TILE_URL_TEMPLATE = os.getenv(
    "FALLBACK_TILE_URL_TEMPLATE", "/fallback-tiles/{mode}/{year}/{z}/{x}/{y}.png"
)
SIMULATED_MAP_ID = "simulated-map-id"
SIMULATED_TOKEN = "simulated-token"
LOGGER = logging.getLogger("climate_timelapse.tile_broker")


class BrokerError(RuntimeError):
    """Base class for tile resolution failures."""

    status_code = 500


class UnknownModeError(BrokerError):
    status_code = 400


class OutOfRangeError(BrokerError):
    """Raised when a year is outside the supported interval of a mode."""

    status_code = 400


class RegionNotFoundError(BrokerError):
    status_code = 404


class UpstreamComputeError(BrokerError):
    """Raised when the raster compute service fails."""

    status_code = 502


class UpstreamNoDataError(UpstreamComputeError):
    status_code = 404


class MalformedUpstreamResultError(UpstreamComputeError):
    """Raised when the compute service answers without a tile identifier."""


class UpstreamUnavailableError(UpstreamComputeError):
    status_code = 503


class Priority(str, Enum):
    interactive = "interactive"
    bulk = "bulk"


@dataclass(frozen=True)
class UpstreamTileResult:
    url_template: str | None = None
    map_id: str | None = None
    token: str | None = None
    auxiliary_url_template: str | None = None
    auxiliary_error: str | None = None


class ComputeClient(Protocol):
    def compute(self, config: ModeConfig, year: int, geometry: object) -> UpstreamTileResult:
        ...


class RegionResolver(Protocol):
    def resolve(self, region: str) -> object:
        ...


class UpstreamGate:
    """Bounded slot pool where interactive callers overtake waiting bulk callers."""

    def __init__(self, max_concurrent: int = UPSTREAM_MAX_CONCURRENCY) -> None:
        self._max_concurrent = max(1, int(max_concurrent))
        self._active = 0
        self._interactive_waiting = 0
        self._cond = threading.Condition()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active(self) -> int:
        with self._cond:
            return self._active

    def acquire(self, priority: Priority = Priority.interactive) -> None:
        with self._cond:
            if priority == Priority.interactive:
                self._interactive_waiting += 1
                try:
                    while self._active >= self._max_concurrent:
                        self._cond.wait()
                finally:
                    self._interactive_waiting -= 1
            else:
                while self._active >= self._max_concurrent or self._interactive_waiting > 0:
                    self._cond.wait()
            self._active += 1

    def release(self) -> None:
        with self._cond:
            self._active -= 1
            self._cond.notify_all()

    @contextmanager
    def slot(self, priority: Priority = Priority.interactive) -> Iterator[None]:
        self.acquire(priority)
        try:
            yield
        finally:
            self.release()


class TileBroker:
    """Cache and single-flight front for the raster compute service.

    One instance owns the descriptor cache for the whole process. Concurrent
    resolutions of the same RequestKey share one upstream call through a
    pending-request table of futures; distinct keys run concurrently up to the
    gate bound. Cache entries are written only after the upstream call succeeds.
    """

    def __init__(
        self,
        compute_client: ComputeClient,
        region_resolver: RegionResolver,
        gate: UpstreamGate | None = None,
    ) -> None:
        self._compute_client = compute_client
        self._region_resolver = region_resolver
        self._gate = gate or UpstreamGate()
        self._cache: Dict[RequestKey, TileDescriptor] = {}
        self._pending: Dict[RequestKey, Future] = {}
        self._guard = threading.Lock()
        self._stats_guard = threading.Lock()
        self._stats: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "upstream_calls": 0,
            "coalesced": 0,
            "fallbacks": 0,
            "errors": 0,
        }

    @property
    def gate(self) -> UpstreamGate:
        return self._gate

    def resolve(
        self,
        mode: str | VisualizationMode,
        year: int,
        region: str,
        bypass_cache: bool = False,
        priority: Priority = Priority.interactive,
    ) -> TileDescriptor:
        cfg = self._config(mode)
        year = int(year)
        if not cfg.supports_year(year):
            if cfg.out_of_range_policy == OutOfRangePolicy.fallback:
                reason = (
                    f"{cfg.dataset} data not available for {year}. "
                    f"Available range: {cfg.range_label()}"
                )
                LOGGER.info("Out-of-range fallback mode=%s year=%s", cfg.mode.value, year)
                self._bump("fallbacks")
                return self.fallback_descriptor(cfg, year, reason)
            raise OutOfRangeError(
                f"Year {year} is outside available data range for {cfg.mode.value}. "
                f"{cfg.source} data available: {cfg.range_label()}"
            )

        try:
            key = RequestKey.build(cfg.mode, year, region)
        except ValueError as exc:
            raise RegionNotFoundError(str(exc)) from exc

        with self._guard:
            if not bypass_cache:
                cached = self._cache.get(key)
                if cached is not None:
                    self._bump("hits")
                    LOGGER.debug("Cache hit key=%s", key)
                    return cached
            future = self._pending.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._pending[key] = future

        if not owner:
            self._bump("coalesced")
            LOGGER.debug("Joining in-flight resolution key=%s", key)
            return future.result()

        self._bump("misses")
        try:
            descriptor = self._compute(cfg, key, region, priority)
        except (RegionNotFoundError, UpstreamComputeError) as exc:
            with self._guard:
                self._pending.pop(key, None)
            if isinstance(exc, UpstreamComputeError) and cfg.upstream_error_policy == UpstreamErrorPolicy.degrade:
                LOGGER.warning("Upstream failure degraded to fallback key=%s: %s", key, exc)
                self._bump("fallbacks")
                fallback = self.fallback_descriptor(cfg, year, str(exc))
                future.set_result(fallback)
                return fallback
            self._bump("errors")
            LOGGER.warning("Resolution failed key=%s: %s", key, exc)
            future.set_exception(exc)
            raise
        except BaseException as exc:
            with self._guard:
                self._pending.pop(key, None)
            self._bump("errors")
            LOGGER.exception("Unexpected resolution failure key=%s", key)
            future.set_exception(exc)
            raise

        with self._guard:
            self._cache[key] = descriptor
            self._pending.pop(key, None)
        future.set_result(descriptor)
        LOGGER.info("Cached descriptor key=%s", key)
        return descriptor

    def is_cached(self, mode: str | VisualizationMode, year: int, region: str) -> bool:
        return self.cached_descriptor(mode, year, region) is not None

    def cached_descriptor(self, mode: str | VisualizationMode, year: int, region: str) -> TileDescriptor | None:
        try:
            key = RequestKey.build(mode, year, region)
        except ValueError:
            return None
        with self._guard:
            return self._cache.get(key)

    def clear_cache(self) -> int:
        with self._guard:
            count = len(self._cache)
            self._cache.clear()
        LOGGER.info("Cache cleared entries=%d", count)
        return count

    def cache_size(self) -> int:
        with self._guard:
            return len(self._cache)

    def inflight_count(self) -> int:
        with self._guard:
            return len(self._pending)

    def stats(self) -> Dict[str, int]:
        with self._stats_guard:
            out = dict(self._stats)
        out["cache_size"] = self.cache_size()
        out["inflight"] = self.inflight_count()
        out["upstream_active"] = self._gate.active
        out["upstream_max_concurrency"] = self._gate.max_concurrent
        return out

    @staticmethod
    def fallback_descriptor(cfg: ModeConfig, year: int, reason: str) -> TileDescriptor:
        if cfg.legacy_descriptor:
            return TileDescriptor(
                mode=cfg.mode,
                year=year,
                opacity=cfg.opacity,
                legacy_id=SIMULATED_MAP_ID,
                token=SIMULATED_TOKEN,
                url_template=_fallback_url_template(cfg.mode, year),
                is_fallback=True,
                fallback_reason=reason,
            )
        return TileDescriptor(
            mode=cfg.mode,
            year=year,
            opacity=cfg.opacity,
            url_template=_fallback_url_template(cfg.mode, year),
            is_fallback=True,
            fallback_reason=reason,
        )

    def _config(self, mode: str | VisualizationMode) -> ModeConfig:
        try:
            return mode_config(parse_mode(mode))
        except ValueError as exc:
            raise UnknownModeError(str(exc)) from exc

    def _compute(self, cfg: ModeConfig, key: RequestKey, region: str, priority: Priority) -> TileDescriptor:
        geometry = self._region_resolver.resolve(region)
        with self._gate.slot(priority):
            self._bump("upstream_calls")
            LOGGER.info("Upstream compute mode=%s year=%s region=%s priority=%s", cfg.mode.value, key.year, key.region_key, priority.value)
            try:
                result = self._compute_client.compute(cfg, key.year, geometry)
            except BrokerError:
                raise
            except Exception as exc:
                raise UpstreamComputeError(f"Failed to generate {cfg.mode.value} map: {exc}") from exc
        return self._descriptor_from_result(cfg, key.year, result)

    @staticmethod
    def _descriptor_from_result(cfg: ModeConfig, year: int, result: UpstreamTileResult | None) -> TileDescriptor:
        if result is None or not (result.url_template or result.map_id):
            raise MalformedUpstreamResultError(f"Invalid {cfg.mode.value} map data received from upstream")
        aux_template, aux_fallback = _auxiliary_fields(cfg, year, result)
        extras = {"units": cfg.units, "source": cfg.source}
        if cfg.legacy_descriptor and result.map_id:
            return TileDescriptor(
                mode=cfg.mode,
                year=year,
                opacity=cfg.opacity,
                legacy_id=result.map_id,
                token=result.token or "",
                url_template=result.url_template,
                extras=extras,
            )
        return TileDescriptor(
            mode=cfg.mode,
            year=year,
            opacity=cfg.opacity,
            url_template=result.url_template,
            legacy_id=None if result.url_template else result.map_id,
            token=None if result.url_template else (result.token or ""),
            auxiliary_url_template=aux_template,
            auxiliary_opacity=cfg.auxiliary_opacity if aux_template else None,
            auxiliary_is_fallback=aux_fallback,
            extras=extras,
        )

    def _bump(self, name: str) -> None:
        with self._stats_guard:
            self._stats[name] = self._stats.get(name, 0) + 1


def _fallback_url_template(mode: VisualizationMode, year: int) -> str:
    return FALLBACK_TILE_URL_TEMPLATE.replace("{mode}", mode.value).replace("{year}", str(year))


def _auxiliary_fields(cfg: ModeConfig, year: int, result: UpstreamTileResult) -> Tuple[str | None, bool]:
    if cfg.auxiliary_opacity is None:
        return None, False
    if result.auxiliary_url_template:
        return result.auxiliary_url_template, False
    # Auxiliary layer failures never fail the primary layer.
    LOGGER.warning(
        "Auxiliary layer unavailable mode=%s year=%s: %s",
        cfg.mode.value,
        year,
        result.auxiliary_error or "no tile template",
    )
    return _fallback_url_template(cfg.mode, year) + "?layer=auxiliary", True
