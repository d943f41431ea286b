import asyncio
import socket
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from kubernetes import config as k8s_config

from config import Settings
import main
from main import StartupError, bind_socket, create_app, startup
from metrics import HTTP_REQUESTS, POD_CREATE_COUNTER, WATCH_ERRORS
from models import Error


LABELS = {"event_time": "2024-01-02T03:04:05.123Z", "pod_id": "abc-123"}


class AlwaysFailing:
    """Watch source whose upstream never comes back"""

    def __init__(self):
        self.errors = 0

    async def stream(self):
        while True:
            self.errors += 1
            yield Error(cause=ConnectionError("upstream unavailable"))
            await asyncio.sleep(0.001)


class TestExpositionServer:

    @pytest.fixture
    def client(self, registry):
        with TestClient(create_app(registry)) as client:
            yield client

    def test_ping(self, client):
        """Test the liveness probe"""
        response = client.get("/ping")
        assert response.status_code == 200
        assert response.text == "pong"

    def test_metrics_snapshot(self, client, registry):
        """Test /metrics serves the registry in Prometheus text format"""
        registry.increment(POD_CREATE_COUNTER, LABELS)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "# TYPE created_pods_total counter" in response.text
        assert "# TYPE deleted_pods_total counter" in response.text
        assert 'created_pods_total{event_time="2024-01-02T03:04:05.123Z",pod_id="abc-123"} 1.0' in response.text

    def test_probes_and_scrapes_are_not_counted(self, client, registry):
        """Test that /ping and /metrics do not show up in the HTTP metrics"""
        client.get("/ping")
        client.get("/metrics")

        assert 'pods_operator_http_requests_total{' not in registry.snapshot().decode()

    def test_other_requests_are_counted(self, client, registry):
        """Test that unmatched paths are recorded under a fixed label"""
        assert client.get("/does-not-exist").status_code == 404
        assert client.get("/another/unknown").status_code == 404

        labels = {"method": "GET", "path": "unmatched", "status": "404"}
        assert registry.value(HTTP_REQUESTS, labels) == 2


class TestLifecycle:

    def test_ping_independent_of_watch_health(self, registry):
        """Test /ping stays healthy while the watch stream keeps failing"""
        source = AlwaysFailing()
        app = create_app(registry, source, Settings(shutdown_grace_seconds=1))

        with TestClient(app) as client:
            for _ in range(50):
                if source.errors >= 3:
                    break
                response = client.get("/ping")
                assert response.status_code == 200
                assert response.text == "pong"
            response = client.get("/ping")

        assert response.status_code == 200
        assert response.text == "pong"
        assert source.errors >= 1
        assert registry.value(WATCH_ERRORS) >= 1

    def test_shutdown_stops_reconciler(self, registry):
        """Test that leaving the lifespan sets the shutdown event"""
        app = create_app(registry, AlwaysFailing(), Settings(shutdown_grace_seconds=1))

        with TestClient(app):
            shutdown_event = app.state.shutdown_event
            assert not shutdown_event.is_set()

        assert shutdown_event.is_set()


class TestStartup:

    def test_bind_failure_is_fatal(self):
        """Test that an occupied port raises StartupError"""
        blocker = bind_socket("127.0.0.1", 0)
        blocker.listen(1)
        port = blocker.getsockname()[1]
        try:
            with pytest.raises(StartupError) as exc_info:
                startup(Settings(metrics_host="127.0.0.1", metrics_port=port))
        finally:
            blocker.close()

        assert exc_info.value.component == "listener"

    def test_kubernetes_failure_is_fatal_and_closes_socket(self):
        """Test that a missing kube config aborts and releases the listener"""
        created = []
        real_bind_socket = bind_socket

        def tracking_bind(host, port):
            sock = real_bind_socket(host, port)
            created.append(sock)
            return sock

        with patch("main.bind_socket", side_effect=tracking_bind), \
             patch("main.init_k8s", side_effect=k8s_config.ConfigException("no config")):
            with pytest.raises(StartupError) as exc_info:
                startup(Settings(metrics_host="127.0.0.1", metrics_port=0))

        assert exc_info.value.component == "kubernetes"
        assert created[0].fileno() == -1

    def test_startup_returns_socket_and_api(self):
        """Test the happy path binds the listener and loads the client"""
        api = object()
        with patch("main.init_k8s", return_value=api):
            sock, loaded = startup(Settings(metrics_host="127.0.0.1", metrics_port=0))
        try:
            assert loaded is api
            assert sock.family == socket.AF_INET
        finally:
            sock.close()


class TestMain:

    def test_startup_failure_exits_with_status_1(self):
        """Test main() terminates with exit code 1 when startup fails"""
        with patch("main.load_settings", return_value=Settings()), \
             patch("main.setup_logging"), \
             patch("main.startup", side_effect=StartupError("listener", OSError("address in use"))), \
             patch("main.uvicorn.Server") as server:
            with pytest.raises(SystemExit) as exc_info:
                main.main()

        assert exc_info.value.code == 1
        server.assert_not_called()

    def test_invalid_configuration_exits_with_status_1(self):
        """Test main() terminates with exit code 1 on an unusable setting"""
        with patch("main.load_settings", side_effect=ValueError("METRICS_PORT must be an integer")), \
             patch("main.setup_logging"), \
             patch("main.startup") as startup_mock:
            with pytest.raises(SystemExit) as exc_info:
                main.main()

        assert exc_info.value.code == 1
        startup_mock.assert_not_called()
