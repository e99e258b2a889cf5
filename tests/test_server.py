from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from conftest import ProviderStub, sse_body
from tutor_chat.memory import ConversationStore
from tutor_chat.server import create_app


def _client(tmp_path: Path, transport) -> tuple[TestClient, ConversationStore]:
    store = ConversationStore(str(tmp_path / "store"))
    app = create_app(config_path=str(tmp_path / "missing.yaml"), store=store, transport=transport)
    return TestClient(app), store


CHAT = {
    "topic_id": "bank1",
    "sub_topic_id": "q1",
    "message": "Explain please",
    "question": {"question_id": "q1", "stem": "2 + 2?", "user_answer": "5", "correct_answer": "4", "is_correct": False},
}


def test_chat_endpoint_roundtrip(tmp_path: Path, make_transport, clean_env):
    """POST /chat returns the final reply and persists the conversation."""
    stub = ProviderStub(sse_body(["It is ", "4."]))
    client, store = _client(tmp_path, make_transport(stub))

    r = client.post("/chat", json=CHAT)
    assert r.status_code == 200
    data = r.json()
    assert data["reply"]["text"] == "It is 4."
    assert data["reply"]["status"] == "done"
    # greeting + user + assistant
    assert [m["role"] for m in data["messages"]] == ["assistant", "user", "assistant"]
    assert len(store.load("bank1", "q1").messages) == 3

    system = stub.payloads()[0]["messages"][0]["content"]
    assert "Stem: 2 + 2?" in system
    assert "Grading result: incorrect" in system

    r = client.get("/conversations/q1", params={"topic_id": "bank1"})
    assert r.status_code == 200
    assert r.json()[-1]["text"] == "It is 4."


def test_chat_streams_plain_text(tmp_path: Path, make_transport, clean_env):
    stub = ProviderStub(sse_body(["Hel", "lo, ", "world!"]), chunk_size=4)
    client, store = _client(tmp_path, make_transport(stub))

    with client.stream("POST", "/chat", json=dict(CHAT, stream=True)) as r:
        assert r.status_code == 200
        text = "".join(r.iter_text())
    assert text == "Hello, world!"
    assert store.load("bank1", "q1").messages[-1].text == "Hello, world!"


def test_blank_message_rejected(tmp_path: Path, make_transport, clean_env):
    client, _ = _client(tmp_path, make_transport(ProviderStub()))
    r = client.post("/chat", json=dict(CHAT, message="   "))
    assert r.status_code == 400


def test_missing_credential_is_503(tmp_path: Path, make_transport, clean_env):
    stub = ProviderStub(sse_body(["x"]))
    client, _ = _client(tmp_path, make_transport(stub, api_key=None))
    r = client.post("/chat", json=CHAT)
    assert r.status_code == 503
    assert stub.requests == []


def test_retry_replays_last_user_turn(tmp_path: Path, make_transport, clean_env):
    failing = ProviderStub(b"overloaded", status=503)
    client, store = _client(tmp_path, make_transport(failing))
    r = client.post("/chat", json=CHAT)
    assert r.json()["reply"]["status"] == "error"

    failing.status = 200
    failing.body = sse_body(["Now it works."])
    r = client.post("/chat/retry", json={"topic_id": "bank1", "sub_topic_id": "q1"})
    assert r.status_code == 200
    texts = [m.text for m in store.load("bank1", "q1").messages]
    assert texts[1:] == ["Explain please", "Now it works."]


def test_delete_requires_confirm(tmp_path: Path, make_transport, clean_env):
    client, store = _client(tmp_path, make_transport(ProviderStub(sse_body(["ok"]))))
    client.post("/chat", json=CHAT)

    assert client.delete("/conversations/q1", params={"topic_id": "bank1"}).status_code == 400
    r = client.delete("/conversations/q1", params={"topic_id": "bank1", "confirm": "true"})
    assert r.status_code == 200
    assert r.json() == {"cleared": True}
    assert store.load("bank1", "q1") is None


def test_health(tmp_path: Path, make_transport, clean_env):
    client, _ = _client(tmp_path, make_transport(ProviderStub()))
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["ok"] is True


def test_idle_sessions_are_evicted_past_the_limit(tmp_path: Path, make_transport, clean_env):
    cfg = tmp_path / "small.yaml"
    cfg.write_text("server:\n  max_sessions: 1\n", encoding="utf-8")
    store = ConversationStore(str(tmp_path / "store"))
    transport = make_transport(ProviderStub(sse_body(["ok"])))
    client = TestClient(create_app(config_path=str(cfg), store=store, transport=transport))

    assert client.post("/chat", json=CHAT).status_code == 200
    assert client.post("/chat", json=dict(CHAT, sub_topic_id="q2")).status_code == 200
    assert client.get("/health").json()["active_sessions"] == 1

    # Evicted conversations reopen from the store.
    r = client.post("/chat", json=CHAT)
    assert [m["role"] for m in r.json()["messages"]].count("user") == 2
