import httpx


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["model"] == "test/model:free"
    assert data["openrouterConfigured"] is True
    assert data["apiKeyPrefix"] == "sk-or-v1..."


def test_health_without_key(settings, make_relay):
    from fastapi.testclient import TestClient
    from app.main import create_app

    cfg = settings.model_copy(update={"openrouter_api_key": None})
    with TestClient(create_app(cfg, make_relay(openrouter_api_key=None))) as c:
        data = c.get("/api/health").json()
    assert data["openrouterConfigured"] is False
    assert data["apiKeyPrefix"] == "Not set"


def test_chat_first_message(client, relay, upstream):
    resp = client.post("/api/chat", json={"message": "hi"})
    assert resp.status_code == 200
    assert resp.json() == {
        "reply": "hello",
        "model": "test/model:free",
        "timestamp": "2023-11-14T22:13:20.000Z",
    }
    assert relay.store.get("default") == [
        {"role": "system", "content": relay.store.system_prompt},
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ]


def test_chat_forwards_transcript_and_headers(client, upstream):
    client.post("/api/chat", json={"message": "hi", "sessionId": "s1"})
    req = upstream.requests[-1]
    assert req.method == "POST"
    assert str(req.url) == "https://upstream.test/api/v1/chat/completions"
    assert req.headers["Authorization"] == "Bearer sk-or-v1-abcdef123456"
    assert req.headers["HTTP-Referer"] == "https://relay.test"
    assert req.headers["X-Title"] == "AI Chatbot"
    payload = upstream.payload()
    assert payload["model"] == "test/model:free"
    assert payload["temperature"] == 0.7
    assert payload["max_tokens"] == 500
    assert [m["role"] for m in payload["messages"]] == ["system", "user"]
    assert payload["messages"][1]["content"] == "hi"


def test_chat_missing_message(client, relay, upstream):
    for body in ({}, {"message": ""}, {"sessionId": "s1"}):
        resp = client.post("/api/chat", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Message is required"}
    assert upstream.requests == []
    assert len(relay.store) == 0


def test_chat_malformed_body(client):
    resp = client.post("/api/chat", content=b"not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert "error" in resp.json()


def test_chat_rate_limited(client, relay, upstream):
    assert client.post("/api/chat", json={"message": "one", "sessionId": "s1"}).status_code == 200
    before = relay.store.get("s1")

    resp = client.post("/api/chat", json={"message": "two", "sessionId": "s1"})
    assert resp.status_code == 429
    assert resp.json() == {"error": "Please wait 1s between messages."}
    assert resp.headers["Retry-After"] == "1"
    assert relay.store.get("s1") == before
    assert len(upstream.requests) == 1


def test_rate_limit_is_per_session(client):
    assert client.post("/api/chat", json={"message": "one", "sessionId": "a"}).status_code == 200
    assert client.post("/api/chat", json={"message": "one", "sessionId": "b"}).status_code == 200


def test_chat_after_interval_accumulates(client, relay, clock, upstream):
    upstream.reply = "first"
    assert client.post("/api/chat", json={"message": "one", "sessionId": "s1"}).status_code == 200
    clock.advance(1.0)
    upstream.reply = "second"
    assert client.post("/api/chat", json={"message": "two", "sessionId": "s1"}).status_code == 200

    history = relay.store.get("s1")
    assert [(m["role"], m["content"]) for m in history[1:]] == [
        ("user", "one"),
        ("assistant", "first"),
        ("user", "two"),
        ("assistant", "second"),
    ]
    # 第二次请求携带完整上下文
    assert len(upstream.payload()["messages"]) == 4


def test_upstream_error_status_is_propagated(client, relay, upstream):
    upstream.status = 401
    upstream.body = '{"error":{"message":"No auth credentials found","code":401}}'
    resp = client.post("/api/chat", json={"message": "hi", "sessionId": "s1"})
    assert resp.status_code == 401
    assert resp.json() == {"error": upstream.body}
    # user 消息保留，不追加 assistant
    assert [m["role"] for m in relay.store.get("s1")] == ["system", "user"]


def test_upstream_missing_completion(client, relay, upstream):
    upstream.body = {"choices": []}
    resp = client.post("/api/chat", json={"message": "hi", "sessionId": "s1"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "No response from model."}
    assert [m["role"] for m in relay.store.get("s1")] == ["system", "user"]


def test_upstream_transport_failure(client, relay, upstream):
    upstream.error = httpx.ConnectError("connection refused")
    resp = client.post("/api/chat", json={"message": "hi", "sessionId": "s1"})
    assert resp.status_code == 500
    assert resp.json() == {"error": "connection refused"}
    assert [m["role"] for m in relay.store.get("s1")] == ["system", "user"]


def test_clear_resets_session(client, relay, upstream):
    client.post("/api/chat", json={"message": "hi", "sessionId": "s1"})
    resp = client.post("/api/clear", json={"sessionId": "s1"})
    assert resp.status_code == 200
    assert resp.json() == {"message": "Conversation cleared"}
    assert "s1" not in relay.store
    assert "s1" not in relay.limiter.last_seen

    # 清除后不受限流影响，且重新写入 system 消息
    resp = client.post("/api/chat", json={"message": "again", "sessionId": "s1"})
    assert resp.status_code == 200
    assert [m["role"] for m in relay.store.get("s1")] == ["system", "user", "assistant"]
    assert relay.store.get("s1")[1]["content"] == "again"


def test_clear_defaults_and_is_idempotent(client, relay):
    client.post("/api/chat", json={"message": "hi"})
    assert client.post("/api/clear").json() == {"message": "Conversation cleared"}
    assert "default" not in relay.store
    assert client.post("/api/clear", json={}).status_code == 200


def test_test_key_valid(client, upstream):
    resp = client.get("/api/test-key")
    assert resp.status_code == 200
    assert resp.json() == {"valid": True, "status": 200, "data": upstream.key_body}
    req = upstream.requests[-1]
    assert req.method == "GET"
    assert req.headers["Authorization"] == "Bearer sk-or-v1-abcdef123456"


def test_test_key_invalid(client, upstream):
    upstream.key_status = 401
    upstream.key_body = {"error": {"message": "Invalid key"}}
    resp = client.get("/api/test-key")
    assert resp.status_code == 200
    assert resp.json()["valid"] is False
    assert resp.json()["status"] == 401


def test_test_key_transport_failure(client, upstream):
    upstream.error = httpx.ConnectTimeout("timed out")
    resp = client.get("/api/test-key")
    assert resp.status_code == 500
    assert resp.json() == {"error": "timed out"}


def test_chat_follows_upstream_redirect(client, relay, upstream):
    upstream.redirects["/api/v1/chat/completions"] = "https://upstream.test/api/v2/chat/completions"
    resp = client.post("/api/chat", json={"message": "hi", "sessionId": "s1"})
    assert resp.status_code == 200
    assert resp.json()["reply"] == "hello"
    assert [str(r.url) for r in upstream.requests] == [
        "https://upstream.test/api/v1/chat/completions",
        "https://upstream.test/api/v2/chat/completions",
    ]
    # 308 保留方法与请求体
    assert upstream.requests[-1].method == "POST"
    assert upstream.payload()["messages"][-1]["content"] == "hi"


def test_test_key_follows_redirect(client, upstream):
    upstream.redirects["/api/v1/auth/key"] = "https://upstream.test/api/v2/auth/key"
    resp = client.get("/api/test-key")
    assert resp.json() == {"valid": True, "status": 200, "data": upstream.key_body}


def test_empty_session_id_is_its_own_session(client, relay):
    assert client.post("/api/chat", json={"message": "hi", "sessionId": ""}).status_code == 200
    assert list(relay.store.store) == [""]
    assert "default" not in relay.limiter.last_seen

    client.post("/api/clear", json={"sessionId": ""})
    assert len(relay.store) == 0
