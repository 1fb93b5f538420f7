from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, List, Mapping, Tuple

LEGACY_TILE_BASE_URL = "https://earthengine.googleapis.com/map"
DEFAULT_OPACITY = 0.7
DEFAULT_REGION = os.getenv("DEFAULT_REGION", "Uttar Pradesh")
COORD_KEY_DECIMALS = 2
_COORD_PATTERN = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*,\s*(-?\d+(?:\.\d+)?)\s*$")


class VisualizationMode(str, Enum):
    base = "base"
    derived = "derived"
    anomaly = "anomaly"
    terrain_blend = "terrainBlend"
    rainfall = "rainfall"
    timelapse = "timelapse"


class OutOfRangePolicy(str, Enum):
    reject = "reject"
    fallback = "fallback"


class UpstreamErrorPolicy(str, Enum):
    propagate = "propagate"
    degrade = "degrade"


TEMPERATURE_PALETTE: Tuple[str, ...] = (
    "000080", "0040ff", "0080ff", "00c0ff", "80e0ff",
    "00ffff", "80ffff", "c0ffff",
    "00ff80", "40ff40", "80ff00", "c0ff00",
    "ffff00", "ffd000", "ffa000",
    "ff8000", "ff6000", "ff4000",
    "ff2000", "ff0000", "e00000",
    "c00000", "a00000", "800000",
)
ANOMALY_PALETTE: Tuple[str, ...] = (
    "000080", "0020a0", "0040c0", "0060e0", "0080ff", "40a0ff",
    "80c0ff", "c0e0ff", "f0f8ff", "ffffff", "fff8f0", "ffe0c0",
    "ffc080", "ff8040", "ff6000", "ff4000", "e02000", "c00000", "800000",
)
TERRAIN_PALETTE: Tuple[str, ...] = (
    "000080", "0040ff", "0080ff", "00c0ff", "80e0ff", "ffffff",
    "ffe080", "ffc040", "ff8000", "ff4000", "ff0000", "800000",
)
WIND_PALETTE: Tuple[str, ...] = (
    "ffffff", "e0f0ff", "c0e0ff", "80d0ff", "40a0ff", "0080ff", "0060c0", "004080", "002040",
)
RAINFALL_PALETTE: Tuple[str, ...] = ("white", "lightblue", "blue", "darkblue", "purple")


@dataclass(frozen=True)
class ModeConfig:
    mode: VisualizationMode
    display_name: str
    min_year: int
    max_year: int
    opacity: float
    dataset: str
    band: str
    vis_min: float
    vis_max: float
    palette: Tuple[str, ...]
    units: str
    source: str
    out_of_range_policy: OutOfRangePolicy = OutOfRangePolicy.reject
    upstream_error_policy: UpstreamErrorPolicy = UpstreamErrorPolicy.propagate
    legacy_descriptor: bool = False
    auxiliary_opacity: float | None = None

    def supports_year(self, year: int) -> bool:
        return self.min_year <= year <= self.max_year

    def range_label(self) -> str:
        return f"{self.min_year}-{self.max_year}"


MODE_CONFIGS: Dict[VisualizationMode, ModeConfig] = {
    VisualizationMode.base: ModeConfig(
        mode=VisualizationMode.base,
        display_name="Mean temperature",
        min_year=1979,
        max_year=2020,
        opacity=0.7,
        dataset="ECMWF/ERA5/DAILY",
        band="mean_2m_air_temperature",
        vis_min=10.0,
        vis_max=50.0,
        palette=TEMPERATURE_PALETTE,
        units="Celsius",
        source="ERA5 Daily Aggregates",
    ),
    VisualizationMode.derived: ModeConfig(
        mode=VisualizationMode.derived,
        display_name="Temperature and wind",
        min_year=1979,
        max_year=2020,
        opacity=0.6,
        dataset="ECMWF/ERA5/DAILY",
        band="mean_2m_air_temperature",
        vis_min=10.0,
        vis_max=50.0,
        palette=TEMPERATURE_PALETTE,
        units="Celsius, wind speed m/s",
        source="ERA5 Daily Aggregates",
        auxiliary_opacity=0.5,
    ),
    VisualizationMode.anomaly: ModeConfig(
        mode=VisualizationMode.anomaly,
        display_name="Temperature anomaly",
        min_year=1979,
        max_year=2020,
        opacity=0.9,
        dataset="ECMWF/ERA5/DAILY",
        band="mean_2m_air_temperature",
        vis_min=-3.0,
        vis_max=3.0,
        palette=ANOMALY_PALETTE,
        units="Celsius difference from 1980-2000 baseline",
        source="ERA5 Daily Aggregates",
    ),
    VisualizationMode.terrain_blend: ModeConfig(
        mode=VisualizationMode.terrain_blend,
        display_name="Temperature over terrain",
        min_year=1979,
        max_year=2020,
        opacity=0.8,
        dataset="ECMWF/ERA5/DAILY",
        band="mean_2m_air_temperature",
        vis_min=15.0,
        vis_max=45.0,
        palette=TERRAIN_PALETTE,
        units="Celsius with elevation",
        source="ERA5 + SRTM",
    ),
    VisualizationMode.rainfall: ModeConfig(
        mode=VisualizationMode.rainfall,
        display_name="Annual rainfall",
        min_year=1981,
        max_year=2023,
        opacity=0.6,
        dataset="UCSB-CHG/CHIRPS/DAILY",
        band="precipitation",
        vis_min=0.0,
        vis_max=2000.0,
        palette=RAINFALL_PALETTE,
        units="mm/year",
        source="CHIRPS Daily",
    ),
    VisualizationMode.timelapse: ModeConfig(
        mode=VisualizationMode.timelapse,
        display_name="Mean temperature (legacy)",
        min_year=1979,
        max_year=2020,
        opacity=0.7,
        dataset="ECMWF/ERA5/DAILY",
        band="mean_2m_air_temperature",
        vis_min=10.0,
        vis_max=50.0,
        palette=TEMPERATURE_PALETTE,
        units="Celsius",
        source="ERA5 Daily Aggregates",
        out_of_range_policy=OutOfRangePolicy.fallback,
        upstream_error_policy=UpstreamErrorPolicy.degrade,
        legacy_descriptor=True,
    ),
}

# Order used when a bulk job enumerates modes for a single year.
MODE_ORDER: Tuple[VisualizationMode, ...] = tuple(MODE_CONFIGS.keys())


def parse_mode(value: str | VisualizationMode) -> VisualizationMode:
    if isinstance(value, VisualizationMode):
        return value
    raw = str(value or "").strip()
    try:
        return VisualizationMode(raw)
    except ValueError:
        raise ValueError(f"Unknown visualization mode: {raw or '<empty>'}") from None


def parse_modes(value: str) -> List[VisualizationMode]:
    """Parse a comma-separated mode list, dropping duplicates and keeping MODE_ORDER."""
    requested = {parse_mode(v) for v in str(value).split(",") if v.strip()}
    if not requested:
        raise ValueError("At least one visualization mode is required")
    return [mode for mode in MODE_ORDER if mode in requested]


def mode_config(mode: str | VisualizationMode) -> ModeConfig:
    return MODE_CONFIGS[parse_mode(mode)]


def parse_coordinates(region: str) -> Tuple[float, float] | None:
    match = _COORD_PATTERN.match(str(region))
    if match is None:
        return None
    lat, lon = float(match.group(1)), float(match.group(2))
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return lat, lon


def region_key(region: str) -> str:
    coords = parse_coordinates(region)
    if coords is not None:
        lat, lon = coords
        return f"coords:{lat:.{COORD_KEY_DECIMALS}f},{lon:.{COORD_KEY_DECIMALS}f}"
    name = " ".join(str(region).split()).casefold()
    if not name:
        raise ValueError("Region must be a name or 'lat,lon' coordinates")
    return f"name:{name}"


@dataclass(frozen=True)
class RequestKey:
    mode: VisualizationMode
    year: int
    region_key: str

    @classmethod
    def build(cls, mode: str | VisualizationMode, year: int, region: str) -> "RequestKey":
        return cls(mode=parse_mode(mode), year=int(year), region_key=region_key(region))


@dataclass(frozen=True)
class TileDescriptor:
    mode: VisualizationMode
    year: int
    opacity: float = DEFAULT_OPACITY
    url_template: str | None = None
    legacy_id: str | None = None
    token: str | None = None
    is_fallback: bool = False
    fallback_reason: str | None = None
    auxiliary_url_template: str | None = None
    auxiliary_opacity: float | None = None
    auxiliary_is_fallback: bool = False
    extras: Mapping[str, str] = field(default_factory=dict, compare=False, hash=False)

    def __post_init__(self) -> None:
        if not self.url_template and not self.legacy_id:
            raise ValueError("TileDescriptor needs a url_template or a legacy_id")
        # Descriptors are shared between cache readers; extras must not be mutable.
        object.__setattr__(self, "extras", MappingProxyType(dict(self.extras)))

    @property
    def has_auxiliary(self) -> bool:
        return bool(self.auxiliary_url_template)

    def tile_url(self, z: int, x: int, y: int) -> str:
        if self.url_template:
            return _fill_template(self.url_template, z, x, y)
        url = f"{LEGACY_TILE_BASE_URL}/{self.legacy_id}/{z}/{x}/{y}"
        if self.token:
            url += f"?token={self.token}"
        return url

    def auxiliary_tile_url(self, z: int, x: int, y: int) -> str | None:
        if not self.auxiliary_url_template:
            return None
        return _fill_template(self.auxiliary_url_template, z, x, y)

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "mode": self.mode.value,
            "year": self.year,
            "opacity": self.opacity,
            "isFallback": self.is_fallback,
        }
        if self.fallback_reason:
            payload["fallbackReason"] = self.fallback_reason
        if self.url_template:
            payload["urlTemplate"] = self.url_template
        if self.legacy_id:
            payload["mapId"] = self.legacy_id
            payload["token"] = self.token or ""
        if self.auxiliary_url_template:
            payload["auxiliaryUrlTemplate"] = self.auxiliary_url_template
            payload["auxiliaryOpacity"] = self.auxiliary_opacity
            payload["auxiliaryIsFallback"] = self.auxiliary_is_fallback
        payload.update(self.extras)
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, object]) -> "TileDescriptor":
        known = {
            "success", "cached", "mode", "year", "opacity", "isFallback", "fallbackReason",
            "urlTemplate", "mapId", "token", "auxiliaryUrlTemplate", "auxiliaryOpacity",
            "auxiliaryIsFallback",
        }
        aux_opacity = payload.get("auxiliaryOpacity")
        return cls(
            mode=parse_mode(str(payload.get("mode", ""))),
            year=int(payload["year"]),
            opacity=float(payload.get("opacity", DEFAULT_OPACITY)),
            url_template=payload.get("urlTemplate") or None,
            legacy_id=payload.get("mapId") or None,
            token=payload.get("token") or None,
            is_fallback=bool(payload.get("isFallback", False)),
            fallback_reason=payload.get("fallbackReason") or None,
            auxiliary_url_template=payload.get("auxiliaryUrlTemplate") or None,
            auxiliary_opacity=float(aux_opacity) if aux_opacity is not None else None,
            auxiliary_is_fallback=bool(payload.get("auxiliaryIsFallback", False)),
            extras={k: str(v) for k, v in payload.items() if k not in known},
        )


def _fill_template(template: str, z: int, x: int, y: int) -> str:
    return template.replace("{z}", str(z)).replace("{x}", str(x)).replace("{y}", str(y))
