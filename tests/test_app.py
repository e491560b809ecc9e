"""HTTP API tests with the relay engine wired to fake upstreams."""

import httpx
import pytest
from fastapi.testclient import TestClient

from streamrelay.app import app
from streamrelay.config import ConfigurationError, settings
from streamrelay.controller import RelayController
from streamrelay.destinations import DestinationSource
from streamrelay.input_detector import InputDetector
from streamrelay.supervisor import WorkerSupervisor
from streamrelay.telemetry import TelemetryCollector

SECRET = "s3cret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


class StaticProber:
    def __init__(self, available: bool = False):
        self.available = available

    async def probe(self) -> bool:
        return self.available


class Upstreams:
    """Dashboard and MediaMTX responses, mutable per test."""

    def __init__(self):
        self.destinations = [{
            "id": "yt",
            "name": "YouTube",
            "rtmpUrl": "rtmp://a.rtmp.youtube.com/live2",
            "streamKey": "yt-key",
        }]
        self.dashboard_status = 200
        self.ready = True

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/vm/platforms":
            if self.dashboard_status != 200:
                return httpx.Response(self.dashboard_status)
            return httpx.Response(200, json={"platforms": self.destinations})
        return httpx.Response(200, json={
            "items": [{"name": "live/stream", "ready": self.ready, "source": {"type": "rtmpConn"}}],
        })


@pytest.fixture
def upstreams():
    return Upstreams()


@pytest.fixture
def make_controller(upstreams):
    def _make(ffmpeg_path: str) -> RelayController:
        client = httpx.AsyncClient(transport=httpx.MockTransport(upstreams.handler))
        telemetry = TelemetryCollector()
        supervisor = WorkerSupervisor(telemetry, ffmpeg_path=ffmpeg_path, grace_period=0)
        return RelayController(
            source=DestinationSource(client, "https://dashboard.example.com", SECRET),
            detector=InputDetector(client, "http://mediamtx:9997"),
            prober=StaticProber(),
            supervisor=supervisor,
            telemetry=telemetry,
            grace_period=0,
        )
    return _make


@pytest.fixture
def controller(make_controller, tmp_path):
    # FFmpeg never actually starts with this controller
    return make_controller(str(tmp_path / "no-ffmpeg"))


@pytest.fixture
def client(controller, monkeypatch):
    monkeypatch.setattr(settings, "api_secret", SECRET)
    monkeypatch.setattr(app.state, "controller", controller, raising=False)
    return TestClient(app)


class TestAuth:
    """Bearer token check."""

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer wrong"},
        {"Authorization": SECRET},
        {"Authorization": f"Basic {SECRET}"},
    ])
    def test_rejected(self, client, headers):
        response = client.get("/relay/status", headers=headers)

        assert response.status_code == 401
        assert response.json() == {"detail": "Unauthorized"}

    def test_health_requires_auth(self, client):
        assert client.get("/health").status_code == 401

    def test_unset_secret_rejects_everything(self, client, monkeypatch):
        monkeypatch.setattr(settings, "api_secret", None)

        assert client.get("/relay/status", headers={"Authorization": "Bearer "}).status_code == 401


class TestHealth:
    """Health and input status."""

    def test_health(self, client):
        response = client.get("/health", headers=AUTH)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["relayActive"] is False
        assert data["streamCount"] == 0
        assert data["inputAvailable"] is True
        assert data["input"]["protocol"] == "rtmp"
        assert data["nvencAvailable"] is False
        assert data["encoder"] == "cpu"
        assert set(data["system"]) >= {"cpuUsage", "memoryUsage", "loadAvg"}

    def test_input_status_unavailable(self, client, upstreams):
        upstreams.ready = False

        data = client.get("/input/status", headers=AUTH).json()

        assert data == {"available": False, "protocol": None, "startTime": None}


class TestRelayControl:
    """Start, stop and restart routes."""

    def test_start_with_no_destinations(self, client, upstreams):
        upstreams.destinations = []

        response = client.post("/relay/start", headers=AUTH)

        assert response.status_code == 400

    def test_start_with_dashboard_down(self, client, upstreams):
        upstreams.dashboard_status = 500

        response = client.post("/relay/start", headers=AUTH)

        assert response.status_code == 502

    def test_start_reports_failed_spawns(self, client):
        response = client.post("/relay/start", headers=AUTH)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["count"] == 0
        assert data["failed"] == ["YouTube"]

    def test_start_one_unknown(self, client):
        response = client.post("/relay/start/nope", headers=AUTH)

        assert response.status_code == 404
        assert response.json()["platformId"] == "nope"

    def test_start_one_spawn_failure(self, client):
        response = client.post("/relay/start/yt", headers=AUTH)

        assert response.status_code == 500
        assert response.json()["platformId"] == "yt"

    def test_stop_one_unknown(self, client):
        response = client.post("/relay/stop/nope", headers=AUTH)

        assert response.status_code == 404

    def test_restart_with_dashboard_down(self, client, upstreams):
        upstreams.dashboard_status = 503

        assert client.post("/relay/restart/yt", headers=AUTH).status_code == 502

    def test_stop_when_idle(self, client):
        response = client.post("/relay/stop", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_status_when_idle(self, client):
        data = client.get("/relay/status", headers=AUTH).json()

        assert data == {"active": False, "streams": [], "count": 0, "startTime": None}

    def test_obs_status(self, client):
        data = client.get("/status", headers=AUTH).json()

        assert data["mode"] == "idle"
        assert data["isStreaming"] is False
        assert data["liveInput"]["available"] is True
        assert data["platforms"] == 0


class TestStats:
    """Telemetry routes."""

    @pytest.fixture
    def seeded(self, controller):
        telemetry = controller.telemetry
        telemetry.register("yt", "YouTube")
        for i in range(5):
            telemetry.ingest("yt", f"frame= {i} fps= 30 bitrate={1000 + i}.0kbits/s speed=1.00x")
        return telemetry

    def test_all_stats(self, client, seeded):
        data = client.get("/relay/stats", headers=AUTH).json()

        assert set(data["stats"]) == {"yt"}
        assert data["stats"]["yt"]["platformName"] == "YouTube"
        assert len(data["stats"]["yt"]["history"]) == 5
        assert data["streamStartTime"] is None
        assert isinstance(data["serverTime"], int)

    def test_stats_for_with_since_and_limit(self, client, seeded):
        history = seeded.series("yt")

        data = client.get(
            "/relay/stats/yt",
            params={"since": history[0].timestamp - 1, "limit": 2},
            headers=AUTH,
        ).json()

        assert data["platformId"] == "yt"
        assert [s["bitrate"] for s in data["history"]] == [1003.0, 1004.0]
        assert data["current"]["bitrate"] == 1004.0

    def test_stats_for_unknown(self, client):
        assert client.get("/relay/stats/nope", headers=AUTH).status_code == 404

    def test_clear_one(self, client, seeded):
        response = client.delete("/relay/stats/yt", headers=AUTH)

        assert response.status_code == 200
        assert seeded.get("yt") is None
        assert client.delete("/relay/stats/yt", headers=AUTH).status_code == 404

    def test_clear_all(self, client, seeded):
        response = client.post("/relay/stats/clear", headers=AUTH)

        assert response.status_code == 200
        assert client.get("/relay/stats", headers=AUTH).json()["stats"] == {}


class TestDocsRoutes:
    """Generated API docs are not served."""

    @pytest.mark.parametrize("path", ["/docs", "/redoc", "/openapi.json"])
    def test_not_exposed(self, client, path):
        assert client.get(path).status_code == 404
        assert client.get(path, headers=AUTH).status_code == 404


class TestLifespan:
    """Startup configuration check and shutdown of running workers."""

    @pytest.fixture
    def configured(self, monkeypatch, tmp_path):
        monkeypatch.setattr(settings, "api_secret", SECRET)
        monkeypatch.setattr(settings, "dashboard_url", "https://dashboard.example.com")
        monkeypatch.setattr(settings, "log_dir", tmp_path / "logs")
        monkeypatch.setattr(settings, "shutdown_timeout", 5.0)

    def test_shutdown_stops_every_worker(self, configured, make_controller, fake_ffmpeg, monkeypatch):
        controller = make_controller(fake_ffmpeg("exec sleep 30"))
        monkeypatch.setattr(app.state, "controller", controller, raising=False)

        with TestClient(app) as client:
            response = client.post("/relay/start", headers=AUTH)
            assert response.json()["platforms"] == ["YouTube"]
            handles = controller.supervisor.handles()
            assert len(handles) == 1
            assert handles[0].process.returncode is None

        assert handles[0].process.returncode is not None
        assert controller.supervisor.active is False

    @pytest.mark.parametrize("missing", ["api_secret", "dashboard_url"])
    def test_missing_required_setting_is_fatal(self, configured, controller, monkeypatch, missing):
        monkeypatch.setattr(settings, missing, None)
        monkeypatch.setattr(app.state, "controller", controller, raising=False)

        with pytest.raises(ConfigurationError):
            with TestClient(app):
                pass

    def test_ensure_required_names_missing_variables(self, monkeypatch):
        monkeypatch.setattr(settings, "api_secret", None)
        monkeypatch.setattr(settings, "dashboard_url", None)

        with pytest.raises(ConfigurationError) as exc_info:
            settings.ensure_required()

        assert "RELAY_API_SECRET" in str(exc_info.value)
        assert "RELAY_DASHBOARD_URL" in str(exc_info.value)
