from __future__ import annotations

import os
from pathlib import Path

from conftest import AUTH_HEADERS, find_site


def config_path() -> Path:
    return Path(os.environ["MINESITE_CONFIG_PATH"])


def test_healthz_is_public(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_list_sites(client):
    response = client.get("/api/sites", headers=AUTH_HEADERS)

    assert response.status_code == 200
    sites = response.json()["sites"]
    assert [site["name"] for site in sites] == ["mine1"]
    assert sites[0]["status"] == "inactive"
    assert sites[0]["state"] == "closed_waiting"
    assert sites[0]["open_now"] is False


def test_site_details_and_unknown_site(client):
    response = client.get("/api/sites/mine1", headers=AUTH_HEADERS)
    assert response.status_code == 200
    payload = response.json()
    assert payload["site"]["name"] == "mine1"
    assert payload["site"]["safetyPoint"] == "10,64,10"
    assert payload["state"] == "closed_waiting"

    missing = client.get("/api/sites/ghost", headers=AUTH_HEADERS)
    assert missing.status_code == 404
    assert "does not exist" in missing.json()["detail"]


def test_create_site_uses_template(client):
    response = client.post(
        "/api/sites",
        headers=AUTH_HEADERS,
        json={"name": "mine2", "creator": "Alex", "pos1": "5, 70, 5", "pos2": "0,60,0"},
    )

    assert response.status_code == 201
    assert response.json()["status"] == "success"
    record = find_site(config_path(), "mine2")
    assert record["status"] == "inactive"
    assert record["description"] == "New mine site"
    assert record["pos1"] == "5,70,5"
    assert record["safetyPoint"] == ""
    assert record["refreshInterval"] == 60
    assert record["broadcastInterval"] == 300
    assert [entry["weekday"] for entry in record["timeTable"]] == list(range(7))
    assert record["mines"] == [{"block": "minecraft:stone", "weight": 1}]
    assert record["createTime"].endswith("Z")

    listed = client.get("/api/sites", headers=AUTH_HEADERS).json()["sites"]
    assert {site["name"] for site in listed} == {"mine1", "mine2"}


def test_create_rejects_duplicates_and_bad_input(client):
    duplicate = client.post(
        "/api/sites", headers=AUTH_HEADERS, json={"name": "mine1", "pos1": "0,0,0", "pos2": "1,1,1"}
    )
    assert duplicate.status_code == 400
    assert "already exists" in duplicate.json()["detail"]

    bad_name = client.post(
        "/api/sites", headers=AUTH_HEADERS, json={"name": "bad name!", "pos1": "0,0,0", "pos2": "1,1,1"}
    )
    assert bad_name.status_code == 422

    bad_pos = client.post("/api/sites", headers=AUTH_HEADERS, json={"name": "mine3", "pos1": "0,0", "pos2": "1,1,1"})
    assert bad_pos.status_code == 422


def test_enable_and_disable_persist_status(client):
    enabled = client.post("/api/sites/mine1/enable", headers=AUTH_HEADERS)
    assert enabled.status_code == 200
    assert "enabled" in enabled.json()["message"]
    assert find_site(config_path(), "mine1")["status"] == "active"

    disabled = client.post("/api/sites/mine1/disable", headers=AUTH_HEADERS)
    assert disabled.status_code == 200
    assert find_site(config_path(), "mine1")["status"] == "inactive"

    missing = client.post("/api/sites/ghost/enable", headers=AUTH_HEADERS)
    assert missing.status_code == 404


def test_refresh_inactive_site_fails(client):
    response = client.post("/api/sites/mine1/refresh", headers=AUTH_HEADERS, json={"ignore_timetable": True})

    assert response.status_code == 400
    assert "not active" in response.json()["detail"]


def test_refresh_active_site_starts_countdown(client):
    client.post("/api/sites/mine1/enable", headers=AUTH_HEADERS)

    response = client.post("/api/sites/mine1/refresh", headers=AUTH_HEADERS)

    assert response.status_code == 200
    status = client.get("/api/sites/mine1", headers=AUTH_HEADERS).json()
    assert status["state"] == "countdown"


def test_set_safety_point(client):
    response = client.post("/api/sites/mine1/safety-point", headers=AUTH_HEADERS, json={"position": "1, 80, -3"})
    assert response.status_code == 200
    assert find_site(config_path(), "mine1")["safetyPoint"] == "1,80,-3"

    invalid = client.post("/api/sites/mine1/safety-point", headers=AUTH_HEADERS, json={"position": "up there"})
    assert invalid.status_code == 400
    assert "Invalid position" in invalid.json()["detail"]


def test_delete_site(client):
    response = client.delete("/api/sites/mine1", headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert find_site(config_path(), "mine1") is None
    assert client.get("/api/sites/mine1", headers=AUTH_HEADERS).status_code == 404

    again = client.delete("/api/sites/mine1", headers=AUTH_HEADERS)
    assert again.status_code == 404


def test_reload_reports_site_count(client):
    response = client.post("/api/reload", headers=AUTH_HEADERS)

    assert response.status_code == 200
    assert response.json()["message"] == "Reloaded 1 mine sites"


def test_reload_with_broken_file_is_rejected(client):
    config_path().write_text("{broken", encoding="utf-8")

    response = client.post("/api/reload", headers=AUTH_HEADERS)

    assert response.status_code == 400
    assert client.get("/api/sites/mine1", headers=AUTH_HEADERS).status_code == 200


def test_delayed_commands(client):
    opened = client.post("/api/open", headers=AUTH_HEADERS, json={"name": "mine1", "delay": 60})
    assert opened.status_code == 200
    assert opened.json()["message"] == "Mine site 'mine1' will open in 60s"

    closed = client.post("/api/close", headers=AUTH_HEADERS, json={"name": "mine1", "delay": 60})
    assert closed.status_code == 200

    refresh = client.post("/api/refresh", headers=AUTH_HEADERS, json={"name": "mine1", "delay": 30})
    assert refresh.status_code == 200

    unknown = client.post("/api/refresh", headers=AUTH_HEADERS, json={"name": "ghost", "delay": 30})
    assert unknown.status_code == 404

    negative = client.post("/api/open", headers=AUTH_HEADERS, json={"name": "mine1", "delay": -1})
    assert negative.status_code == 422
