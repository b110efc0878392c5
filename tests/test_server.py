"""
WebSocket 訊息處理測試
不開真正的 socket：直接呼叫 RealmServer.handle_message，連線以 AsyncMock 代替。
"""
import asyncio
import json

import pytest
from unittest.mock import AsyncMock, MagicMock

from realm_sync import events as ev
from realm_sync.runtime import RealmRuntime
from realm_sync.server import RealmServer


APP_TSX = 'export const App = () => (\n  <p className="lead">Hello</p>\n);\n'


def make_server(tmp_path):
    (tmp_path / "App.tsx").write_text(APP_TSX, encoding="utf-8")
    runtime = RealmRuntime({}, root=str(tmp_path))
    runtime.index_workspace()
    return RealmServer(runtime)


def fake_ws():
    ws = MagicMock()
    ws.send = AsyncMock()
    return ws


def handle(server, client_id, message):
    raw = message if isinstance(message, str) else json.dumps(message)
    return asyncio.run(server.handle_message(client_id, raw))


# ─── 基本訊息 ────────────────────────────────────────────────────────────────

class TestBasicMessages:
    def test_ping(self, tmp_path):
        server = make_server(tmp_path)
        assert handle(server, "ws_1", {"type": "ping"})["type"] == "pong"

    def test_invalid_json(self, tmp_path):
        server = make_server(tmp_path)
        reply = handle(server, "ws_1", "{oops")
        assert reply["type"] == "error"

    def test_non_object(self, tmp_path):
        server = make_server(tmp_path)
        assert handle(server, "ws_1", "[1, 2]")["type"] == "error"

    def test_unknown_type(self, tmp_path):
        server = make_server(tmp_path)
        reply = handle(server, "ws_1", {"type": "launchRocket"})
        assert reply["type"] == "error"
        assert "launchRocket" in reply["error"]

    def test_get_elements(self, tmp_path):
        server = make_server(tmp_path)
        reply = handle(server, "ws_1", {"type": "getElements", "filePath": "App.tsx"})
        assert reply["type"] == "elements"
        assert [e["tagName"] for e in reply["elements"]] == ["p"]
        assert reply["elements"][0]["realmId"]["sourceFile"] == "App.tsx"


# ─── hello / client 種類 ─────────────────────────────────────────────────────

class TestHello:
    def test_hello_sets_client_kind(self, tmp_path):
        server = make_server(tmp_path)
        client_id = server._register(fake_ws())
        reply = handle(server, client_id, {"type": "hello", "client": "preview"})
        assert reply == {"type": "welcome", "clientId": client_id, "kind": "postmessage"}
        assert server.runtime.engine.clients[client_id].kind == "postmessage"

    def test_unknown_client_kind(self, tmp_path):
        server = make_server(tmp_path)
        client_id = server._register(fake_ws())
        assert handle(server, client_id, {"type": "hello", "client": "toaster"})["type"] == "error"

    def test_unregister_removes_client(self, tmp_path):
        server = make_server(tmp_path)
        client_id = server._register(fake_ws())
        server._unregister(client_id)
        assert client_id not in server.runtime.engine.clients


# ─── realm_event ─────────────────────────────────────────────────────────────

class TestRealmEvent:
    def test_selection_relayed_to_panel(self, tmp_path):
        server = make_server(tmp_path)
        panel_ws, preview_ws = fake_ws(), fake_ws()
        panel_id = server._register(panel_ws)
        preview_id = server._register(preview_ws)
        handle(server, preview_id, {"type": "hello", "client": "preview"})

        element = server.runtime.elements_for("App.tsx")[0].element_id
        payload = ev.event_to_wire(ev.SelectionEvent(ev.ELEMENT_SELECTED, element, source=ev.SOURCE_DOM))
        assert handle(server, preview_id, {"type": "realm_event", "payload": payload}) is None

        panel_ws.send.assert_awaited_once()
        sent = json.loads(panel_ws.send.await_args[0][0])
        assert sent["type"] == "realm_event"
        assert sent["payload"]["type"] == ev.ELEMENT_SELECTED
        preview_ws.send.assert_not_awaited()
        assert panel_id != preview_id

    def test_malformed_event(self, tmp_path):
        server = make_server(tmp_path)
        reply = handle(server, "ws_1", {"type": "realm_event", "payload": {"type": "NOPE"}})
        assert reply["type"] == "error"

    def test_stale_event(self, tmp_path):
        server = make_server(tmp_path)
        element = server.runtime.elements_for("App.tsx")[0].element_id
        payload = ev.event_to_wire(ev.SelectionEvent(ev.ELEMENT_SELECTED, element, timestamp=ev.now_ms() - 60_000))
        reply = handle(server, "ws_1", {"type": "realm_event", "payload": payload})
        assert reply["type"] == "error"
        assert "stale" in reply["error"]


# ─── applyElementChanges ─────────────────────────────────────────────────────

class TestApplyElementChanges:
    def test_applied(self, tmp_path):
        server = make_server(tmp_path)
        reply = handle(server, "ws_1", {
            "type": "applyElementChanges",
            "requestId": "r1",
            "filePath": "App.tsx",
            "selector": "p.lead",
            "changes": {"className": "lead text-lg"},
        })
        assert reply["type"] == "elementChangesApplied"
        assert reply["requestId"] == "r1"
        assert reply["changed"] is True
        assert reply["transactionId"].startswith("tx_")
        assert 'className="lead text-lg"' in (tmp_path / "App.tsx").read_text(encoding="utf-8")

    def test_no_match(self, tmp_path):
        server = make_server(tmp_path)
        reply = handle(server, "ws_1", {
            "type": "applyElementChanges",
            "requestId": "r2",
            "filePath": "App.tsx",
            "selector": "table",
            "changes": {"text": "x"},
        })
        assert reply["type"] == "elementChangesError"
        assert reply["kind"] == "match"
        assert (tmp_path / "App.tsx").read_text(encoding="utf-8") == APP_TSX

    def test_missing_fields(self, tmp_path):
        server = make_server(tmp_path)
        reply = handle(server, "ws_1", {"type": "applyElementChanges", "filePath": "App.tsx"})
        assert reply["type"] == "elementChangesError"
