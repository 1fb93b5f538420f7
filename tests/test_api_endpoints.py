import json
import logging
import os
import tempfile
import threading
import unittest
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch

import numpy as np

try:
    import app as app_module
    import earth_engine
    from fastapi.testclient import TestClient
    from tile_broker import RegionNotFoundError, TileBroker, UpstreamComputeError, UpstreamTileResult
except ModuleNotFoundError:
    app_module = None
    TestClient = None
    TileBroker = None


class _FakeCompute:
    def __init__(self, fail=None) -> None:
        self.calls = []
        self._lock = threading.Lock()
        self._fail = fail

    def compute(self, config, year, geometry):
        with self._lock:
            self.calls.append((config.mode.value, year))
        if self._fail is not None:
            raise self._fail
        return UpstreamTileResult(
            url_template=f"https://tiles.example/{config.mode.value}/{year}/{{z}}/{{x}}/{{y}}",
            map_id=f"map-{year}",
            token="tok",
        )


class _FakeResolver:
    def resolve(self, region):
        if region == "Atlantis":
            raise RegionNotFoundError(f"Region not found: {region}")
        return {"region": region}


def _broker(compute=None):
    return TileBroker(compute or _FakeCompute(), _FakeResolver())


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def test_tiles_endpoint_returns_descriptor_and_cache_flag(self):
        broker = _broker()
        first = app_module.tiles(mode="anomaly", year=1995, region="Uttar Pradesh", bypass_cache=False, broker=broker)
        second = app_module.tiles(mode="anomaly", year=1995, region="Uttar Pradesh", bypass_cache=False, broker=broker)
        self.assertTrue(first["success"])
        self.assertFalse(first["cached"])
        self.assertTrue(second["cached"])
        self.assertEqual(first["opacity"], 0.9)
        self.assertFalse(first["isFallback"])
        self.assertIn("{z}", first["urlTemplate"])

    def test_tiles_endpoint_maps_broker_errors_to_http_status(self):
        cases = [
            ("base", 1970, "Uttar Pradesh", _FakeCompute(), 400),
            ("weather", 1990, "Uttar Pradesh", _FakeCompute(), 400),
            ("base", 1990, "Atlantis", _FakeCompute(), 404),
            ("base", 1990, "Uttar Pradesh", _FakeCompute(fail=RuntimeError("boom")), 502),
        ]
        for mode, year, region, compute, status in cases:
            with self.subTest(mode=mode, year=year, region=region):
                with self.assertRaises(app_module.HTTPException) as ctx:
                    app_module.tiles(mode=mode, year=year, region=region, bypass_cache=False, broker=_broker(compute))
                self.assertEqual(ctx.exception.status_code, status)

    def test_tiles_endpoint_timelapse_fallback(self):
        payload = app_module.tiles(mode="timelapse", year=2021, region="Uttar Pradesh", bypass_cache=False, broker=_broker())
        self.assertTrue(payload["isFallback"])
        self.assertEqual(payload["mapId"], "simulated-map-id")
        self.assertEqual(payload["token"], "simulated-token")
        self.assertTrue(payload["urlTemplate"].startswith("/fallback-tiles/timelapse/2021/"))

    def test_modes_lists_registry(self):
        payload = app_module.modes()
        ids = [m["mode"] for m in payload["modes"]]
        self.assertEqual(ids, ["base", "derived", "anomaly", "terrainBlend", "rainfall", "timelapse"])
        rainfall = payload["modes"][ids.index("rainfall")]
        self.assertEqual(rainfall["range"], [1981, 2023])
        self.assertEqual(payload["modes"][ids.index("timelapse")]["outOfRangePolicy"], "fallback")

    def test_clear_cache_and_stats(self):
        broker = _broker()
        broker.resolve("base", 1990, "Uttar Pradesh")
        stats = app_module.cache_stats(broker=broker)
        self.assertEqual(stats["cache_size"], 1)
        self.assertEqual(stats["upstream_calls"], 1)
        payload = app_module.clear_cache(broker=broker)
        self.assertEqual(payload["cleared"], 1)
        self.assertTrue(payload["success"])

    def test_fallback_tile_returns_png(self):
        response = app_module.fallback_tile(mode="timelapse", year=2021, z=4, x=11, y=6, layer="primary")
        self.assertEqual(response.media_type, "image/png")
        self.assertTrue(response.body.startswith(b"\x89PNG"))

        aux = app_module.fallback_tile(mode="derived", year=2000, z=4, x=11, y=6, layer="auxiliary")
        self.assertTrue(aux.body.startswith(b"\x89PNG"))

    def test_fallback_tile_rejects_bad_input(self):
        with self.assertRaises(app_module.HTTPException) as ctx:
            app_module.fallback_tile(mode="base", year=2000, z=2, x=4, y=0, layer="primary")
        self.assertEqual(ctx.exception.status_code, 400)
        with self.assertRaises(app_module.HTTPException):
            app_module.fallback_tile(mode="weather", year=2000, z=2, x=0, y=0, layer="primary")

    def test_simulated_field_warms_over_time(self):
        cfg = app_module.mode_config("base")
        lat = np.array([[27.0]])
        early = app_module.simulated_field(cfg, 1979, lat)
        late = app_module.simulated_field(cfg, 2029, lat)
        self.assertAlmostEqual(float(late[0, 0] - early[0, 0]), 1.0, places=6)
        self.assertAlmostEqual(float(early[0, 0]), 20.0 - 3.5 * 0.2, places=6)

    def test_health_reports_upstream_state(self):
        with patch.object(app_module, "ee_ready", lambda: False):
            self.assertEqual(app_module.health(), {"status": "ok", "upstream": "unavailable"})
        with patch.object(app_module, "ee_ready", lambda: True):
            self.assertEqual(app_module.health()["upstream"], "ready")


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class AppSetupTests(unittest.TestCase):
    @unittest.skipIf(os.getenv("CLIMATE_LOG_FILE"), "file logging configured in environment")
    def test_import_does_not_open_log_files(self):
        handlers = app_module.LOGGER.handlers
        self.assertTrue(handlers)
        self.assertFalse(any(isinstance(h, RotatingFileHandler) for h in handlers))
        self.assertIsNone(app_module.attach_log_file(app_module.LOGGER, "  "))

    def test_attach_log_file_is_idempotent_per_path(self):
        logger = logging.getLogger("climate_timelapse.tests.file_logging")
        with tempfile.TemporaryDirectory() as tmp:
            log_path = Path(tmp) / "nested" / "app.log"
            handler = app_module.attach_log_file(logger, str(log_path))
            try:
                self.assertIs(app_module.attach_log_file(logger, str(log_path)), handler)
                self.assertEqual(sum(isinstance(h, RotatingFileHandler) for h in logger.handlers), 1)
                self.assertTrue(log_path.exists())
            finally:
                logger.removeHandler(handler)
                handler.close()

    def test_cors_origins(self):
        self.assertEqual(app_module.cors_origins({"CLIMATE_ALLOW_ALL_CORS": "1"}), ["*"])
        self.assertEqual(
            app_module.cors_origins({"CORS_ALLOW_ORIGINS": "https://a.example, ,https://b.example"}),
            ["https://a.example", "https://b.example"],
        )
        self.assertIn("http://localhost:3000", app_module.cors_origins({}))


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiContractTests(unittest.TestCase):
    def setUp(self):
        self.broker = _broker()
        app_module.app.dependency_overrides[app_module.get_broker] = lambda: self.broker
        self.addCleanup(app_module.app.dependency_overrides.clear)
        self.client = TestClient(app_module.app)

    def test_errors_use_success_false_shape(self):
        response = self.client.get("/tiles", params={"mode": "base", "year": 1900})
        self.assertEqual(response.status_code, 400)
        body = response.json()
        self.assertFalse(body["success"])
        self.assertIn("outside available data range", body["error"])

    def test_upstream_error_shape(self):
        self.broker = _broker(_FakeCompute(fail=UpstreamComputeError("Failed to generate base map")))
        response = self.client.get("/tiles", params={"mode": "base", "year": 1990})
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.json(), {"success": False, "error": "Failed to generate base map"})

    def test_bulk_streams_progress_events(self):
        with patch.object(app_module, "BULK_UNIT_DELAY_SECONDS", 0.0):
            response = self.client.get(
                "/bulk", params={"startYear": 1979, "endYear": 1980, "modes": "anomaly,base"}
            )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        events = [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]
        self.assertEqual(len(events), 5)
        self.assertEqual([e["mode"] for e in events[:2]], ["base", "anomaly"])
        self.assertEqual(events[-1], {"completed": True, "totalYears": 2, "progress": 100})
        self.assertEqual(self.broker.cache_size(), 4)

    def test_bulk_validates_before_streaming(self):
        response = self.client.get("/bulk", params={"startYear": 2000, "endYear": 1990})
        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.json()["success"])

        response = self.client.get("/bulk", params={"modes": "base,weather"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("weather", response.json()["error"])

    def test_bulk_span_is_clamped_to_supported_years(self):
        with patch.object(app_module, "BULK_UNIT_DELAY_SECONDS", 0.0):
            response = self.client.get("/bulk", params={"startYear": 0, "endYear": 3000000, "modes": "base"})
        self.assertEqual(response.status_code, 200)
        events = [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]
        years = [e["year"] for e in events if "year" in e]
        self.assertEqual(years, list(range(1979, 2021)))
        self.assertEqual(events[-1], {"completed": True, "totalYears": 42, "progress": 100})

    def test_bulk_span_without_supported_years_is_rejected(self):
        response = self.client.get("/bulk", params={"startYear": 2999999, "endYear": 3000000, "modes": "base,rainfall"})
        self.assertEqual(response.status_code, 400)
        self.assertIn("No supported years", response.json()["error"])
        self.assertEqual(self.broker.cache_size(), 0)

    def test_tiles_without_earth_engine_returns_503(self):
        self.broker = TileBroker(
            compute_client=earth_engine.EarthEngineComputeClient(),
            region_resolver=earth_engine.EarthEngineRegionResolver(),
        )
        with patch.object(earth_engine, "_initialized", False):
            response = self.client.get("/tiles", params={"mode": "base", "year": 1990})
        self.assertEqual(response.status_code, 503)
        self.assertEqual(
            response.json(),
            {"success": False, "error": "Earth Engine not authenticated. Please restart the server."},
        )

    def test_clear_cache_endpoint(self):
        self.broker.resolve("base", 1990, "Uttar Pradesh")
        response = self.client.post("/clear-cache")
        self.assertEqual(response.json()["cleared"], 1)


if __name__ == "__main__":
    unittest.main()
