from __future__ import annotations

from io import BytesIO
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Mapping

import numpy as np
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from PIL import Image, ImageColor

from bulk_prefetch import BULK_UNIT_DELAY_SECONDS, BulkPrefetchJob, clamp_year_span, format_sse
from earth_engine import EarthEngineComputeClient, EarthEngineRegionResolver, ee_ready, init_ee
from modes import (
    DEFAULT_REGION,
    MODE_CONFIGS,
    WIND_PALETTE,
    ModeConfig,
    VisualizationMode,
    mode_config,
    parse_modes,
)
from tile_broker import BrokerError, TileBroker

TILE_SIZE = 256
DEFAULT_BULK_START_YEAR = 1979
DEFAULT_BULK_END_YEAR = 2020
FALLBACK_TILE_ALPHA = 170
WARMING_PER_YEAR_C = 0.02
WARMING_REFERENCE_YEAR = 1979
ANOMALY_BASELINE_MID_YEAR = 1990
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILE_MAX_BYTES = 5_000_000
LOG_FILE_BACKUPS = 3
DEV_CORS_ORIGINS = tuple(
    f"http://{host}:{port}" for port in (3000, 8000) for host in ("127.0.0.1", "localhost")
)


def _configure_logging() -> logging.Logger:
    """Console logging for the climate_timelapse logger tree; file output is opt-in at startup."""
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    logger = logging.getLogger("climate_timelapse")
    logger.setLevel(level)
    if not logger.handlers:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(stream_handler)
        logger.propagate = False
    return logger


def attach_log_file(logger: logging.Logger, log_file: str | None) -> RotatingFileHandler | None:
    """Adds a rotating file handler once per path; no-op for an empty path."""
    log_file = (log_file or "").strip()
    if not log_file:
        return None
    path = Path(log_file).resolve()
    for handler in logger.handlers:
        if isinstance(handler, RotatingFileHandler) and Path(handler.baseFilename) == path:
            return handler
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.info("Logging to file %s", path)
    return handler


LOGGER = _configure_logging()


app = FastAPI(title="Climate Timelapse")


def cors_origins(environ: Mapping[str, str]) -> List[str]:
    if environ.get("CLIMATE_ALLOW_ALL_CORS", "").strip() == "1":
        return ["*"]
    configured = [v.strip() for v in environ.get("CORS_ALLOW_ORIGINS", "").split(",") if v.strip()]
    return configured or list(DEV_CORS_ORIGINS)


app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins(os.environ),
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.state.broker = TileBroker(
    compute_client=EarthEngineComputeClient(),
    region_resolver=EarthEngineRegionResolver(),
)


def get_broker(request: Request) -> TileBroker:
    return request.app.state.broker


@app.exception_handler(HTTPException)
async def _http_error(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": str(exc.detail)})


@app.on_event("startup")
def _startup() -> None:
    attach_log_file(LOGGER, os.getenv("CLIMATE_LOG_FILE"))
    LOGGER.info("App startup level=%s", logging.getLevelName(LOGGER.level))
    try:
        init_ee()
    except Exception as exc:
        # Tile requests answer 503 until credentials are fixed and the app restarts.
        LOGGER.error("Earth Engine initialization failed: %s", exc)


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown cached=%d", app.state.broker.cache_size())


def _broker_http_error(exc: BrokerError) -> HTTPException:
    return HTTPException(status_code=getattr(exc, "status_code", 500), detail=str(exc))


@app.get("/modes")
def modes() -> Dict[str, object]:
    return {
        "modes": [_mode_payload(cfg) for cfg in MODE_CONFIGS.values()],
        "defaultRegion": DEFAULT_REGION,
    }


@app.get("/tiles")
def tiles(
    mode: str = Query("base"),
    year: int = Query(...),
    region: str = Query(DEFAULT_REGION),
    bypass_cache: bool = Query(False, alias="bypassCache"),
    broker: TileBroker = Depends(get_broker),
) -> Dict[str, object]:
    try:
        was_cached = not bypass_cache and broker.is_cached(mode, year, region)
        descriptor = broker.resolve(mode, year, region, bypass_cache=bypass_cache)
    except BrokerError as exc:
        LOGGER.warning("Tile request failed mode=%s year=%s region=%s: %s", mode, year, region, exc)
        raise _broker_http_error(exc) from exc
    except Exception:
        LOGGER.exception("Tile request unexpected failure mode=%s year=%s region=%s", mode, year, region)
        raise
    payload: Dict[str, object] = {"success": True, "cached": was_cached}
    payload.update(descriptor.to_payload())
    return payload


@app.get("/bulk")
async def bulk(
    request: Request,
    start_year: int = Query(DEFAULT_BULK_START_YEAR, alias="startYear"),
    end_year: int = Query(DEFAULT_BULK_END_YEAR, alias="endYear"),
    modes: str = Query("base"),
    region: str = Query(DEFAULT_REGION),
    broker: TileBroker = Depends(get_broker),
) -> StreamingResponse:
    if start_year > end_year:
        raise HTTPException(status_code=400, detail="startYear must not be greater than endYear")
    try:
        requested_modes = parse_modes(modes)
        first_year, last_year = clamp_year_span(start_year, end_year, requested_modes)
        job = BulkPrefetchJob(
            broker,
            years=range(first_year, last_year + 1),
            modes=requested_modes,
            region=region,
            unit_delay_seconds=BULK_UNIT_DELAY_SECONDS,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    async def _stream():
        async for event in job.aiter_events(request.is_disconnected):
            yield format_sse(event)

    LOGGER.info("Bulk stream opened years=%s..%s modes=%s region=%s", first_year, last_year, modes, region)
    return StreamingResponse(
        _stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/clear-cache")
def clear_cache(broker: TileBroker = Depends(get_broker)) -> Dict[str, object]:
    cleared = broker.clear_cache()
    return {"success": True, "cleared": cleared, "message": "Cache cleared successfully"}


@app.get("/cache/stats")
def cache_stats(broker: TileBroker = Depends(get_broker)) -> Dict[str, object]:
    return broker.stats()


@app.get("/fallback-tiles/{mode}/{year}/{z}/{x}/{y}.png")
def fallback_tile(
    mode: str,
    year: int,
    z: int,
    x: int,
    y: int,
    layer: str = Query("primary"),
) -> Response:
    try:
        cfg = mode_config(mode)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if z < 0 or not (0 <= x < 2**z and 0 <= y < 2**z):
        raise HTTPException(status_code=400, detail=f"Invalid tile coordinates {z}/{x}/{y}")

    rgba = render_fallback_tile_rgba(cfg, year, z, x, y, auxiliary=(layer == "auxiliary"))
    image = Image.fromarray(rgba, mode="RGBA")
    buf = BytesIO()
    image.save(buf, format="PNG", optimize=True)
    return Response(content=buf.getvalue(), media_type="image/png", headers={"Cache-Control": "no-store"})


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok", "upstream": "ready" if ee_ready() else "unavailable"}


def _mode_payload(cfg: ModeConfig) -> Dict[str, object]:
    return {
        "mode": cfg.mode.value,
        "displayName": cfg.display_name,
        "range": [cfg.min_year, cfg.max_year],
        "opacity": cfg.opacity,
        "auxiliaryOpacity": cfg.auxiliary_opacity,
        "units": cfg.units,
        "source": cfg.source,
        "outOfRangePolicy": cfg.out_of_range_policy.value,
        "upstreamErrorPolicy": cfg.upstream_error_policy.value,
        "legend": {"min": cfg.vis_min, "max": cfg.vis_max, "palette": list(cfg.palette)},
    }


def estimate_base_temperature(lat: np.ndarray) -> np.ndarray:
    abs_lat = np.abs(lat)
    return np.select(
        [abs_lat >= 60.0, abs_lat >= 45.0, abs_lat >= 23.5],
        [
            np.maximum(-10.0, 5.0 - (abs_lat - 60.0) * 0.5),
            15.0 - (abs_lat - 45.0) * 0.3,
            20.0 - (abs_lat - 23.5) * 0.2,
        ],
        default=26.0 - abs_lat * 0.1,
    )


def simulated_field(cfg: ModeConfig, year: int, lat: np.ndarray, auxiliary: bool = False) -> np.ndarray:
    """Synthetic stand-in values used when a mode degrades to fallback tiles."""
    if auxiliary:
        # Calm-to-moderate wind speed band, strongest in the mid-latitudes.
        return 4.0 + 6.0 * np.cos(np.deg2rad(np.abs(lat) - 45.0))
    if cfg.mode == VisualizationMode.anomaly:
        return np.full(lat.shape, (year - ANOMALY_BASELINE_MID_YEAR) * WARMING_PER_YEAR_C, dtype=np.float64)
    if cfg.mode == VisualizationMode.rainfall:
        return np.clip(2200.0 - np.abs(lat) * 35.0, 0.0, None)
    return estimate_base_temperature(lat) + (year - WARMING_REFERENCE_YEAR) * WARMING_PER_YEAR_C


def render_fallback_tile_rgba(cfg: ModeConfig, year: int, z: int, x: int, y: int, auxiliary: bool = False) -> np.ndarray:
    _, py = np.meshgrid(np.arange(TILE_SIZE), np.arange(TILE_SIZE))
    global_y = y * TILE_SIZE + py
    world_size = TILE_SIZE * (2**z)
    lat = np.rad2deg(np.arctan(np.sinh(np.pi * (1 - 2 * global_y / world_size))))

    values = simulated_field(cfg, year, lat, auxiliary=auxiliary)
    if auxiliary:
        colors = apply_palette(values, WIND_PALETTE, 0.0, 15.0)
    else:
        colors = apply_palette(values, cfg.palette, cfg.vis_min, cfg.vis_max)

    rgba = np.zeros((TILE_SIZE, TILE_SIZE, 4), dtype=np.uint8)
    rgba[..., :3] = colors
    rgba[..., 3] = FALLBACK_TILE_ALPHA
    return rgba


def apply_palette(values: np.ndarray, palette, min_v: float, max_v: float) -> np.ndarray:
    stops = np.array([_palette_rgb(c) for c in palette], dtype=np.float64)
    if max_v <= min_v:
        max_v = min_v + 1.0
    normalized = np.clip((values - min_v) / (max_v - min_v), 0.0, 1.0)
    positions = np.linspace(0.0, 1.0, len(stops))
    r = np.interp(normalized, positions, stops[:, 0])
    g = np.interp(normalized, positions, stops[:, 1])
    b = np.interp(normalized, positions, stops[:, 2])
    return np.stack([r, g, b], axis=-1).astype(np.uint8)


def _palette_rgb(color: str) -> tuple[int, int, int]:
    value = str(color).strip()
    if len(value) == 6 and all(ch in "0123456789abcdefABCDEF" for ch in value):
        value = f"#{value}"
    return ImageColor.getrgb(value)[:3]
