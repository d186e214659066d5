from fastapi.testclient import TestClient

from async_mail_transfer.api import API_TOKEN_HEADER_NAME
from async_mail_transfer.server import create_server_app


def test_lifespan_starts_and_stops_core(tmp_path):
    settings = {
        "db_path": str(tmp_path / "server.db"),
        "api_token": "tok",
        "inbound_enabled": False,
    }
    app = create_server_app(settings)
    headers = {API_TOKEN_HEADER_NAME: "tok"}

    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok"}
        created = client.post("/accounts", json={"address": "alice@example.com"}, headers=headers)
        assert created.status_code == 200
        account_id = created.json()["id"]

        draft = client.post(f"/drafts/{account_id}", json={"subject": "Later"}, headers=headers)
        assert draft.status_code == 200
        drafts = client.get(f"/drafts/{account_id}", headers=headers).json()["drafts"]
        assert [d["subject"] for d in drafts] == ["Later"]

        missing = client.get("/message/nope", headers=headers)
        assert missing.status_code == 404
        assert missing.json()["detail"]["code"] == "not_found"

        assert client.get("/status", headers=headers).json()["inbound"] is False
