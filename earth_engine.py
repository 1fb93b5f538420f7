from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Dict

import ee
from dotenv import load_dotenv
from google.oauth2 import service_account

from modes import WIND_PALETTE, ModeConfig, VisualizationMode, parse_coordinates
from tile_broker import (
    RegionNotFoundError,
    UpstreamComputeError,
    UpstreamNoDataError,
    UpstreamTileResult,
    UpstreamUnavailableError,
)

load_dotenv()

EE_SERVICE_ACCOUNT_EMAIL = os.getenv("EE_SERVICE_ACCOUNT_EMAIL")
EE_SERVICE_ACCOUNT_KEY_JSON = os.getenv("EE_SERVICE_ACCOUNT_KEY_JSON")
EE_PRIVATE_KEY_FILE = os.getenv("EE_PRIVATE_KEY_FILE", "privatekey.json")
EE_PROJECT = os.getenv("EE_PROJECT") or None
EE_SCOPES = [
    "https://www.googleapis.com/auth/earthengine.readonly",
    "https://www.googleapis.com/auth/cloud-platform",
]
ADMIN_BOUNDARIES = "FAO/GAUL/2015/level1"
ADMIN_NAME_PROPERTY = "ADM1_NAME"
ELEVATION_IMAGE = "USGS/SRTMGL1_003"
ANOMALY_BASELINE_START = "1980-01-01"
ANOMALY_BASELINE_END = "2001-01-01"
KELVIN_OFFSET = 273.15
WIND_VIS = {"min": 0, "max": 15}
HILLSHADE_WEIGHT = 0.3
# Half side of the box built around "lat,lon" regions.
COORD_REGION_HALF_SIZE_DEG = float(os.getenv("COORD_REGION_HALF_SIZE_DEG", "1.0"))
LOGGER = logging.getLogger("climate_timelapse.earth_engine")

_init_guard = threading.Lock()
_initialized = False


def _load_credentials():
    if EE_SERVICE_ACCOUNT_KEY_JSON:
        info = json.loads(EE_SERVICE_ACCOUNT_KEY_JSON)
    else:
        key_path = Path(EE_PRIVATE_KEY_FILE)
        if not key_path.exists():
            raise UpstreamUnavailableError(
                "Earth Engine credentials missing: set EE_SERVICE_ACCOUNT_KEY_JSON "
                f"or provide {EE_PRIVATE_KEY_FILE}"
            )
        info = json.loads(key_path.read_text(encoding="utf-8"))
    return service_account.Credentials.from_service_account_info(info, scopes=EE_SCOPES)


def init_ee() -> bool:
    """Initialize the Earth Engine client once per process. Returns True when ready."""
    global _initialized
    with _init_guard:
        if _initialized:
            return True
        creds = _load_credentials()
        project = EE_PROJECT or getattr(creds, "project_id", None)
        ee.Initialize(creds, project=project)
        _initialized = True
        LOGGER.info(
            "Earth Engine initialized account=%s project=%s",
            EE_SERVICE_ACCOUNT_EMAIL or getattr(creds, "service_account_email", "?"),
            project,
        )
        return True


def ee_ready() -> bool:
    return _initialized


def _require_ee() -> None:
    if not _initialized:
        raise UpstreamUnavailableError("Earth Engine not authenticated. Please restart the server.")


class EarthEngineRegionResolver:
    """Resolves admin-1 names through FAO GAUL, and "lat,lon" strings to a box."""

    def __init__(self, half_size_deg: float = COORD_REGION_HALF_SIZE_DEG) -> None:
        self._half_size_deg = float(half_size_deg)
        self._geometries: Dict[str, object] = {}
        self._guard = threading.Lock()

    def resolve(self, region: str):
        _require_ee()
        coords = parse_coordinates(region)
        if coords is not None:
            lat, lon = coords
            half = self._half_size_deg
            return ee.Geometry.Rectangle([lon - half, lat - half, lon + half, lat + half])

        name = " ".join(str(region).split())
        if not name:
            raise RegionNotFoundError("Region must be a name or 'lat,lon' coordinates")
        cache_key = name.casefold()
        with self._guard:
            cached = self._geometries.get(cache_key)
        if cached is not None:
            return cached

        features = ee.FeatureCollection(ADMIN_BOUNDARIES).filter(ee.Filter.eq(ADMIN_NAME_PROPERTY, name))
        try:
            size = int(features.size().getInfo())
        except Exception as exc:
            raise UpstreamComputeError(f"Error resolving region {name}: {exc}") from exc
        if size == 0:
            raise RegionNotFoundError(f"Region not found: {name}")
        geometry = features.geometry()
        with self._guard:
            self._geometries[cache_key] = geometry
        LOGGER.debug("Resolved region name=%s features=%d", name, size)
        return geometry


class EarthEngineComputeClient:
    """Builds the yearly raster for a mode and asks Earth Engine for a map id."""

    def compute(self, config: ModeConfig, year: int, geometry) -> UpstreamTileResult:
        _require_ee()
        collection = self._yearly_collection(config, year)
        size = int(collection.size().getInfo())
        if size == 0:
            raise UpstreamNoDataError(f"No {config.display_name.lower()} data available for year {year}")
        LOGGER.debug("Found %d images mode=%s year=%s", size, config.mode.value, year)

        image = self._build_image(config, year, collection, geometry)
        map_info = self._get_map(image, config)
        result = UpstreamTileResult(
            url_template=_url_format(map_info),
            map_id=map_info.get("mapid"),
            token=map_info.get("token") or "",
        )
        if config.mode == VisualizationMode.derived:
            aux_template, aux_error = self._wind_layer(config, year, geometry)
            result = UpstreamTileResult(
                url_template=result.url_template,
                map_id=result.map_id,
                token=result.token,
                auxiliary_url_template=aux_template,
                auxiliary_error=aux_error,
            )
        return result

    @staticmethod
    def _yearly_collection(config: ModeConfig, year: int):
        return (
            ee.ImageCollection(config.dataset)
            .filterDate(f"{year}-01-01", f"{year + 1}-01-01")
            .select(config.band)
        )

    def _build_image(self, config: ModeConfig, year: int, collection, geometry):
        mode = config.mode
        if mode == VisualizationMode.rainfall:
            return collection.sum().clip(geometry)

        mean_c = collection.mean().subtract(KELVIN_OFFSET)
        if mode == VisualizationMode.anomaly:
            baseline = (
                ee.ImageCollection(config.dataset)
                .filterDate(ANOMALY_BASELINE_START, ANOMALY_BASELINE_END)
                .select(config.band)
                .mean()
                .subtract(KELVIN_OFFSET)
            )
            return mean_c.subtract(baseline).clip(geometry)
        if mode == VisualizationMode.terrain_blend:
            temperature = mean_c.clip(geometry).visualize(
                min=config.vis_min, max=config.vis_max, palette=list(config.palette)
            )
            hillshade = ee.Terrain.hillshade(ee.Image(ELEVATION_IMAGE)).clip(geometry).visualize(
                min=0, max=255, palette=["000000", "ffffff"]
            )
            return temperature.blend(hillshade.multiply(HILLSHADE_WEIGHT))
        return mean_c.set("computation_id", f"{mode.value}_{year}").clip(geometry)

    @staticmethod
    def _get_map(image, config: ModeConfig) -> Dict[str, object]:
        if config.mode == VisualizationMode.terrain_blend:
            vis: Dict[str, object] = {}
        else:
            vis = {"min": config.vis_min, "max": config.vis_max, "palette": list(config.palette)}
        try:
            map_info = image.getMapId(vis)
        except ee.EEException as exc:
            raise UpstreamComputeError(f"Failed to generate {config.mode.value} map: {exc}") from exc
        return map_info or {}

    def _wind_layer(self, config: ModeConfig, year: int, geometry):
        try:
            filtered = ee.ImageCollection(config.dataset).filterDate(f"{year}-01-01", f"{year + 1}-01-01")
            u = filtered.select("u_component_of_wind_10m").mean()
            v = filtered.select("v_component_of_wind_10m").mean()
            speed = u.pow(2).add(v.pow(2)).sqrt().clip(geometry)
            map_info = speed.getMapId({**WIND_VIS, "palette": list(WIND_PALETTE)})
        except Exception as exc:
            LOGGER.warning("Wind layer generation failed year=%s: %s", year, exc)
            return None, str(exc)
        template = _url_format(map_info or {})
        if not template:
            return None, "Wind visualization temporarily unavailable"
        return template, None


def _url_format(map_info: Dict[str, object]) -> str | None:
    fetcher = map_info.get("tile_fetcher")
    url_format = getattr(fetcher, "url_format", None)
    if url_format:
        return str(url_format)
    return None
