import json

ADMIN = {"X-User-ID": "admin-1"}
USER = {"X-User-ID": "user-9"}

PDF_RULE = {"kind": "mimetype", "pattern": "application/pdf", "archivalTool": "direct_download"}


def services(app):
    return app.extensions["link_archiver"]


def test_config_requires_login(client):
    assert client.get("/api/v1/config").status_code == 401


def test_config_requires_admin(client):
    response = client.get("/api/v1/config", headers=USER)
    assert response.status_code == 403
    assert response.get_json() == {"error": "Insufficient permissions"}


def test_get_default_config(client):
    response = client.get("/api/v1/config", headers=ADMIN)
    assert response.status_code == 200
    assert response.get_json() == {"archivalRules": [], "defaultArchivalTool": "do_nothing"}


def test_update_config(client):
    response = client.post(
        "/api/v1/config",
        headers=ADMIN,
        json={"archivalRules": [PDF_RULE], "defaultArchivalTool": "page_snapshot"},
    )
    assert response.status_code == 200
    assert response.get_json()["archivalRules"] == [PDF_RULE]

    stored = client.get("/api/v1/config", headers=ADMIN).get_json()
    assert stored == {"archivalRules": [PDF_RULE], "defaultArchivalTool": "page_snapshot"}


def test_update_config_accepts_legacy_mappings(client):
    response = client.post(
        "/api/v1/config",
        headers=ADMIN,
        json={"mimeTypeMappings": [{"mimeTypePattern": "application/pdf", "archivalTool": "direct_download"}]},
    )
    assert response.status_code == 200
    assert response.get_json()["archivalRules"] == [PDF_RULE]


def test_update_config_rejects_invalid_rule(client):
    response = client.post(
        "/api/v1/config",
        headers=ADMIN,
        json={"archivalRules": [{"kind": "path", "pattern": "x", "archivalTool": "t"}]},
    )
    assert response.status_code == 400
    assert "invalid kind 'path'" in response.get_json()["error"]


def test_list_archival_tools(client):
    response = client.get("/api/v1/archival-tools", headers=ADMIN)
    assert response.get_json() == {"tools": ["direct_download", "page_snapshot"]}


def test_preview_rule(client):
    client.post("/api/v1/config", headers=ADMIN, json={"archivalRules": [PDF_RULE]})
    response = client.post(
        "/api/v1/rules/preview",
        headers=USER,
        json={"url": "https://x.test/a.pdf", "mimeType": "application/pdf"},
    )
    assert response.get_json() == {"tool": "direct_download"}

    response = client.post(
        "/api/v1/rules/preview", headers=USER, json={"url": "https://x.test/", "mimeType": "text/html"}
    )
    assert response.get_json() == {"tool": "do_nothing"}


def test_post_archives_lookup(app, client):
    url = "https://x.test/a.pdf"
    assert client.get("/api/v1/archives/post-1", headers=USER).get_json() == []
    assert client.get(f"/api/v1/archives/post-1?url={url}", headers=USER).get_json() == []

    from app.models.archive import ArchiveMetadata

    services(app).store.persist_per_post(
        ArchiveMetadata(
            postId="post-1", originalUrl=url, fileId="f1", filename="a.pdf", mimeType="application/pdf"
        )
    )
    records = client.get("/api/v1/archives/post-1", query_string={"url": url}, headers=USER).get_json()
    assert [record["fileId"] for record in records] == ["f1"]


def test_posted_event_queues_urls(app, client, monkeypatch):
    calls = []

    def fake_process_message(post_id, text, config):
        calls.append((post_id, text, config))
        return ["future"]

    monkeypatch.setattr(services(app).processor, "process_message", fake_process_message)
    response = client.post(
        "/api/v1/events/posted",
        json={"post": {"id": "post-1", "user_id": "user-1", "message": "see https://x.test"}},
    )
    assert response.status_code == 202
    assert response.get_json() == {"status": "accepted", "queued": 1}
    assert calls[0][0] == "post-1"


def test_posted_event_ignores_bot_posts(client):
    response = client.post(
        "/api/v1/events/posted",
        json={"post": {"id": "reply-1", "user_id": "bot-user", "message": "https://x.test"}},
    )
    assert response.get_json() == {"status": "ignored", "queued": 0}


def test_posted_event_without_links(client):
    response = client.post(
        "/api/v1/events/posted", json={"post": {"id": "post-1", "message": "hello"}}
    )
    assert response.status_code == 202
    assert response.get_json()["queued"] == 0


def test_posted_event_rejects_bad_body(client):
    response = client.post(
        "/api/v1/events/posted", data="nope", content_type="application/json"
    )
    assert response.status_code == 400
    response = client.post("/api/v1/events/posted", json={"post": {"message": "x"}})
    assert response.status_code == 400


def test_settings_blob_applied_at_startup(tmp_path, chat, monkeypatch):
    from app import create_app
    from app.config import AppSettings
    from app.services.kvstore import MemoryKVStore
    from app.services.storage import LocalObjectStore

    monkeypatch.setenv(
        "ARCHIVAL_SETTINGS_JSON",
        json.dumps({"archivalRules": [PDF_RULE], "defaultArchivalTool": "page_snapshot"}),
    )
    app = create_app(
        AppSettings(_env_file=None, RULES_CACHE_SECONDS=0),
        kv=MemoryKVStore(),
        objects=LocalObjectStore(tmp_path),
        chat=chat,
    )
    snapshot = services(app).config_store.current()
    assert snapshot.default_tool == "page_snapshot"
    assert [rule.to_dict() for rule in snapshot.rules] == [PDF_RULE]
    services(app).processor.shutdown()


def test_healthz(client):
    assert client.get("/healthz").data == b"ok"


def test_health_reports_backends(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"kv_store": "OK", "object_store": "OK"}


def test_unknown_route_is_json(client):
    response = client.get("/nope")
    assert response.status_code == 404
    assert response.get_json() == {"error": "Not found"}
