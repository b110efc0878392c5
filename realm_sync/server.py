"""
WebSocket 傳輸層 — panel / preview 與 SyncEngine 之間的橋

訊息皆為 JSON 物件，以 type 區分：
  hello               {client: "panel" | "preview" | "editor"}  宣告 client 種類
  realm_event         {payload: <wire event>}                    交給 SyncEngine.receive
  applyElementChanges {filePath, selector, changes, requestId?}  直接改檔
  getElements         {filePath}
  ping
回覆：realm_event / elementChangesApplied / elementChangesError / elements / pong / error。
壞訊息只回 error，不會關閉連線，也不會影響其他 client。
"""

import asyncio
import itertools
import json
from typing import Optional

import websockets
from websockets.exceptions import ConnectionClosed

from . import events as ev
from .logging_config import get_logger
from .sync_engine import SyncClient

logger = get_logger(__name__)

# hello 宣告 → SyncEngine 的傳輸種類
_CLIENT_KINDS = {
    "panel": "websocket",
    "editor": "websocket",
    "preview": "postmessage",
    "dom": "postmessage",
}


def encode(message: dict) -> str:
    return json.dumps(message, ensure_ascii=False)


class RealmServer:
    def __init__(self, runtime, host: str = "127.0.0.1", port: int = 3001):
        self.runtime = runtime
        self.host = host
        self.port = port
        self._ids = itertools.count(1)
        self._connections: dict = {}

    # ─── 連線 ─────────────────────────────────────────────────────────────

    def _register(self, ws, kind: str = "websocket") -> str:
        client_id = f"ws_{next(self._ids)}"

        async def send(event):
            await ws.send(encode({"type": "realm_event", "payload": ev.event_to_wire(event)}))

        self._connections[client_id] = ws
        self.runtime.engine.register_client(SyncClient(client_id, kind, send, lambda: client_id in self._connections))
        return client_id

    def _unregister(self, client_id: str) -> None:
        self._connections.pop(client_id, None)
        self.runtime.engine.unregister_client(client_id)

    async def handler(self, ws) -> None:
        client_id = self._register(ws)
        try:
            async for raw in ws:
                reply = await self.handle_message(client_id, raw)
                if reply is not None:
                    await ws.send(encode(reply))
        except ConnectionClosed:
            logger.info("server.connection_closed", client=client_id)
        finally:
            self._unregister(client_id)

    async def serve_forever(self, stop: Optional[asyncio.Future] = None) -> None:
        async with websockets.serve(self.handler, self.host, self.port):
            logger.info("server.listening", host=self.host, port=self.port)
            await (stop if stop is not None else asyncio.get_running_loop().create_future())

    # ─── 訊息 ─────────────────────────────────────────────────────────────

    async def handle_message(self, client_id: str, raw) -> Optional[dict]:
        """處理一則訊息，回傳要回給發送者的訊息（或 None）。"""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            return {"type": "error", "error": "訊息不是合法 JSON"}
        if not isinstance(message, dict):
            return {"type": "error", "error": "訊息必須是 JSON 物件"}

        kind = message.get("type")
        if kind == "ping":
            return {"type": "pong", "timestamp": ev.now_ms()}
        if kind == "hello":
            return self._hello(client_id, message)
        if kind == "realm_event":
            return await self._realm_event(client_id, message.get("payload"))
        if kind == "applyElementChanges":
            return await self._apply_element_changes(message)
        if kind == "getElements":
            file_path = message.get("filePath")
            if not file_path:
                return {"type": "error", "error": "getElements 需要 filePath"}
            elements = self.runtime.elements_for(file_path)
            return {"type": "elements", "filePath": file_path, "elements": [e.to_dict() for e in elements]}
        return {"type": "error", "error": f"未知訊息類型 '{kind}'"}

    def _hello(self, client_id: str, message: dict) -> dict:
        declared = message.get("client", "panel")
        kind = _CLIENT_KINDS.get(declared)
        if kind is None:
            return {"type": "error", "error": f"未知 client 種類 '{declared}'"}
        client = self.runtime.engine.clients.get(client_id)
        if client is not None:
            client.kind = kind
        return {"type": "welcome", "clientId": client_id, "kind": kind}

    async def _realm_event(self, client_id: str, payload) -> Optional[dict]:
        try:
            event = ev.event_from_wire(payload)
        except (ev.EventDecodeError, TypeError, ValueError) as e:
            return {"type": "error", "error": str(e)}
        outcome = await self.runtime.engine.receive(client_id, event)
        if outcome in ("invalid", "stale"):
            return {"type": "error", "error": f"事件被拒絕: {outcome}", "eventId": event.id}
        return None

    async def _apply_element_changes(self, message: dict) -> dict:
        request_id = message.get("requestId")
        file_path = message.get("filePath")
        selector = message.get("selector")
        changes = message.get("changes")
        if not file_path or not selector or not isinstance(changes, dict):
            return {"type": "elementChangesError", "requestId": request_id, "error": "需要 filePath、selector 與 changes"}
        result = await self.runtime.apply_element_changes(file_path, selector, changes)
        if not result.ok:
            return {
                "type": "elementChangesError",
                "requestId": request_id,
                "kind": result.failure.kind,
                "error": result.failure.message,
            }
        entry = result.value
        return {
            "type": "elementChangesApplied",
            "requestId": request_id,
            "filePath": file_path,
            "changed": entry is not None,
            "transactionId": entry.transaction_id if entry is not None else None,
        }
