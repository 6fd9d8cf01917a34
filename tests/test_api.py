from fastapi.testclient import TestClient

from research_terminal.main import create_app


def test_health_and_status(config):
    app = create_app(config)
    with TestClient(app) as client:
        assert client.get("/healthz").json() == {"ok": True}
        status = client.get("/api/status").json()
        assert status["sessions"] == 0
        assert status["telemetry"]["events"] == 0
        assert status["activity"]["total"] == 0


def test_unknown_telemetry_channel_is_404(config):
    with TestClient(create_app(config)) as client:
        rsp = client.get("/api/telemetry/nobody")
        assert rsp.status_code == 404
        assert rsp.json()["detail"] == "Telemetry channel not found"


def test_admin_is_bootstrapped_on_startup(config):
    config.admin_password = "adminpw"
    app = create_app(config)
    with TestClient(app):
        pass
    assert (config.users_dir / "operator.json").exists()


def test_websocket_session(config):
    app = create_app(config)
    with TestClient(app) as client:
        with client.websocket_connect("/api/research/ws") as ws:
            first = ws.receive_json()
            assert first["type"] == "connection"
            assert first["connected"] is True
            assert first["serverMessageId"]

            seen = [first["type"]]
            while seen[-1] != "status-summary":
                seen.append(ws.receive_json()["type"])
            assert "csrf_token" in seen

            ws.send_json({"type": "ping"})
            while ws.receive_json()["type"] != "pong":
                pass

            channel = client.get("/api/telemetry/operator").json()
            assert channel["events"][0]["data"]["stage"] == "connected"
