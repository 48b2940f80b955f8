"""Tests for the FastAPI front-end: auth, chat, tool catalog and WebSocket delivery."""

import pytest
from fastapi.testclient import TestClient

from chatops import server
from chatops.config import AuthConfig
from chatops.supervisor import Supervisor

from conftest import ScriptedLLM, fake_spec, make_config, tool_call

API_KEY = "test-key"
AUTH = {"Authorization": f"Bearer {API_KEY}"}


@pytest.fixture
def scripted(monkeypatch):
    """The LLM every generation gets; tests queue responses on it."""
    llm = ScriptedLLM()

    def supervisor_with_scripted_llm(*args, **kwargs):
        return Supervisor(*args, provider_factory=lambda config: llm, **kwargs)

    monkeypatch.setattr(server, "Supervisor", supervisor_with_scripted_llm)
    yield llm
    server.configure()


def client_for(*servers, auth=False):
    config = make_config(*servers, auth=AuthConfig(enabled=auth, api_key=API_KEY if auth else ""))
    server.configure(config, handle_signals=False)
    return TestClient(server.app)


class TestAuth:
    def test_requests_without_a_key_are_rejected(self, scripted):
        with client_for(auth=True) as client:
            assert client.get("/api/tools").status_code == 401
            assert client.get("/api/tools", headers={"X-API-Key": "wrong"}).status_code == 401
            assert client.get("/api/tools", headers=AUTH).status_code == 200
            assert client.get("/api/tools", headers={"X-API-Key": API_KEY}).status_code == 200

    def test_login_and_status(self, scripted):
        with client_for(auth=True) as client:
            assert client.get("/api/auth/status").json() == {"auth_enabled": True}
            assert client.post("/api/auth/login", json={"api_key": "wrong"}).status_code == 401
            assert client.post("/api/auth/login", json={"api_key": API_KEY}).json() == {
                "token": API_KEY
            }

    def test_open_when_disabled(self, scripted):
        with client_for() as client:
            assert client.get("/api/auth/check").json()["authenticated"] is True
            assert client.get("/api/tools").status_code == 200


class TestCatalog:
    def test_tools_and_servers(self, scripted):
        with client_for(fake_spec("fs", tools="read_file,echo"), fake_spec("off", disabled=True)) as client:
            tools = client.get("/api/tools").json()["tools"]
            assert [t["name"] for t in tools] == ["fs_read_file", "fs_echo"]

            body = client.get("/api/servers").json()
            assert body["generation"] == 1
            states = {s["id"]: s["state"] for s in body["servers"]}
            assert states == {"fs": "ready", "off": "disabled"}

    def test_reload(self, scripted):
        with client_for(fake_spec("fs", tools="echo")) as client:
            body = client.post("/api/reload").json()
            assert body == {"status": "ok", "generation": 2, "tools": 1}


class TestChat:
    def test_chat_with_tool(self, scripted):
        scripted.responses = [tool_call("fs_read_file", {"path": "/tmp/a"}), "The file says: hello"]
        with client_for(fake_spec("fs", tools="read_file")) as client:
            body = client.post("/api/chat", json={"text": "read /tmp/a", "thread_id": "t1"}).json()
            assert body == {"response": "The file says: hello"}

            cleared = client.post("/api/chat/clear", json={"thread_id": "t1"}).json()
            assert cleared == {"status": "ok", "cleared": True}

    def test_websocket_turn(self, scripted):
        scripted.responses = ["Hi there."]
        with client_for(auth=True) as client:
            with client.websocket_connect(f"/ws?token={API_KEY}") as ws:
                ws.send_json({"action": "chat", "text": "hello", "thread_id": "t1"})
                assert ws.receive_json() == {
                    "action": "status",
                    "thread_id": "t1",
                    "content": "Thinking...",
                }
                assert ws.receive_json() == {
                    "action": "chat",
                    "thread_id": "t1",
                    "content": "Hi there.",
                }

    def test_replies_reach_only_the_asking_client(self, scripted):
        scripted.responses = ["For Alice.", "For Bob.", "Over HTTP.", "Alice again."]
        with client_for() as client:
            with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
                alice.send_json({"action": "chat", "text": "hi", "thread_id": "alice-1"})
                assert alice.receive_json()["action"] == "status"
                assert alice.receive_json()["content"] == "For Alice."

                bob.send_json({"action": "chat", "text": "hi", "thread_id": "bob-1"})
                assert bob.receive_json()["action"] == "status"
                assert bob.receive_json() == {
                    "action": "chat",
                    "thread_id": "bob-1",
                    "content": "For Bob.",
                }

                body = client.post("/api/chat", json={"text": "hi", "thread_id": "h1"}).json()
                assert body == {"response": "Over HTTP."}

                # Nothing from bob-1 or h1 was queued for Alice.
                alice.send_json({"action": "chat", "text": "again", "thread_id": "alice-1"})
                assert alice.receive_json() == {
                    "action": "status",
                    "thread_id": "alice-1",
                    "content": "Thinking...",
                }
                assert alice.receive_json()["content"] == "Alice again."

    def test_websocket_rejects_bad_token(self, scripted):
        from starlette.websockets import WebSocketDisconnect

        with client_for(auth=True) as client:
            with pytest.raises(WebSocketDisconnect) as exc:
                with client.websocket_connect("/ws?token=wrong") as ws:
                    ws.receive_json()
            assert exc.value.code == 4001
