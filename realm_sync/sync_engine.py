"""
Sync Engine — 多來源編輯事件的協調狀態機

每個元素的狀態：
  Idle ──(preview 樣式/文字/class 事件)──▶ Previewing ──(commit)──▶ 衝突檢查 ──▶ 寫回原始碼 ──▶ Idle
                                             │
                                             └──(rollback)──▶ 廣播還原 ──▶ Idle
  任何狀態收到該檔案的 FILE_CHANGED：丟棄該檔所有 pending preview，並清掉 registry 裡該檔的元素。

高頻事件（style / text / class）以 (type, element hash) 為 key 做 debounce；
過舊的事件（timestamp 距今超過門檻）直接拒絕。所有狀態只在 event loop 執行緒上變動，
兩個 await 之間的處理不會被其他事件插入，因此版本檢查不需要鎖。
"""

import asyncio
import inspect
import itertools
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from . import events as ev
from .code_mutator import ChangeSet
from .config import SyncConfig
from .logging_config import get_logger
from .models import ElementID, Result
from .selector import build_selector

logger = get_logger(__name__)

# 傳輸種類 → 代表的邏輯來源；廣播時不回送給同一類來源
CLIENT_SOURCES = {
    "websocket": (ev.SOURCE_PANEL, ev.SOURCE_EDITOR),
    "postmessage": (ev.SOURCE_DOM,),
    "internal": (ev.SOURCE_SYSTEM, ev.SOURCE_FILE_WATCHER),
}

# receive() 的結果
ACCEPTED = "accepted"
DEBOUNCED = "debounced"
INVALID = "invalid"
STALE = "stale"

# commit 的結果
COMMITTED = "committed"
REJECTED = "rejected"
MANUAL = "manual"
FAILED = "failed"
NOTHING_PENDING = "nothing-pending"

_DEBOUNCED_TYPES = (ev.STYLE_CHANGED, ev.TEXT_CHANGED, ev.CLASS_CHANGED)


class Debouncer:
    """per-key 可取消的延遲任務；新任務會取消並取代同 key 的舊任務。

    callback 回傳 awaitable 時，到期後以 task 執行；task 保留參照直到完成。
    """

    def __init__(self, delay_seconds: float):
        self.delay = delay_seconds
        self._handles: dict = {}  # key -> (TimerHandle, callback)
        self._tasks: dict = {}  # Task -> key

    def schedule(self, key, callback: Callable[[], Any]) -> bool:
        """排程成功回傳 True；沒有執行中的 loop 時立即執行並回傳 False。"""
        self.cancel(key)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            callback()
            return False

        def fire():
            self._handles.pop(key, None)
            self._track(key, callback())

        self._handles[key] = (loop.call_later(self.delay, fire), callback)
        return True

    def _track(self, key, result) -> None:
        if not inspect.isawaitable(result):
            return
        task = asyncio.ensure_future(result)
        self._tasks[task] = key
        task.add_done_callback(self._forget)

    def _forget(self, task) -> None:
        self._tasks.pop(task, None)

    def flush(self, key):
        """取消計時並立即執行 callback，回傳其結果；沒有待執行任務時回傳 None。"""
        entry = self._handles.pop(key, None)
        if entry is None:
            return None
        handle, callback = entry
        handle.cancel()
        return callback()

    def cancel(self, key) -> bool:
        entry = self._handles.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def cancel_all(self) -> None:
        for handle, _ in self._handles.values():
            handle.cancel()
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()

    def pending(self) -> list:
        return list(self._handles)

    def running(self, predicate: Callable[[Any], bool] = lambda key: True) -> list:
        """已到期、仍在執行中的 task。"""
        return [task for task, key in self._tasks.items() if predicate(key)]

    def __len__(self) -> int:
        return len(self._handles)


@dataclass
class SyncClient:
    id: str
    kind: str  # websocket | postmessage | internal
    send: Callable
    is_connected: Callable[[], bool] = lambda: True

    @property
    def sources(self) -> tuple:
        return CLIENT_SOURCES.get(self.kind, ())


@dataclass
class PendingPreview:
    element_id: ElementID
    styles: dict = field(default_factory=dict)
    text: Optional[str] = None
    class_name: Optional[str] = None
    selector: Optional[str] = None
    timestamp: int = 0

    def to_changes(self) -> ChangeSet:
        return ChangeSet(styles=dict(self.styles) or None, text=self.text, class_name=self.class_name)


def pending_key(element_id: ElementID) -> tuple:
    return (element_id.source_file, element_id.hash)


class SyncEngine:
    """協定狀態機。committer 負責把變更寫回檔案：

        async def commit(element_id, selector, changes) -> Result
    """

    def __init__(self, bus, registry, committer=None, config: Optional[SyncConfig] = None, clock: Callable[[], int] = None):
        self.bus = bus
        self.registry = registry
        self.committer = committer
        self.config = config or SyncConfig()
        self.clock = clock or ev.now_ms
        self.clients: dict[str, SyncClient] = {}
        self.pending: dict[tuple, PendingPreview] = {}
        self.versions: dict[str, int] = {}
        self.debouncer = Debouncer(self.config.debounce_ms / 1000)
        self._tx_ids = itertools.count(1)
        self._unsubscribers = []
        self._setup_handlers()

    def _setup_handlers(self) -> None:
        handlers = {
            ev.STYLE_CHANGED: self._on_edit,
            ev.TEXT_CHANGED: self._on_edit,
            ev.CLASS_CHANGED: self._on_edit,
            ev.COMMIT_REQUESTED: self._on_commit_requested,
            ev.ROLLBACK_REQUESTED: self._on_rollback_requested,
            ev.FILE_CHANGED: self._on_file_changed,
            ev.FILE_CREATED: self._on_file_changed,
            ev.FILE_DELETED: self._on_file_changed,
        }
        for event_type in ev.SELECTION_TYPES:
            handlers[event_type] = self._on_selection
        for event_type, handler in handlers.items():
            self._unsubscribers.append(self.bus.on(event_type, handler))

    def close(self) -> None:
        self.debouncer.cancel_all()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # ─── clients ──────────────────────────────────────────────────────────

    def register_client(self, client: SyncClient) -> None:
        self.clients[client.id] = client
        logger.info("sync.client_registered", client=client.id, kind=client.kind)

    def unregister_client(self, client_id: str) -> bool:
        client = self.clients.pop(client_id, None)
        if client is not None:
            logger.info("sync.client_unregistered", client=client_id)
        return client is not None

    async def broadcast(self, event, exclude_source: Optional[str] = None) -> int:
        """送給所有連線中的 client；斷線或送出失敗的 client 直接移除，不影響其他人。"""
        delivered = 0
        for client in list(self.clients.values()):
            if exclude_source is not None and exclude_source in client.sources:
                continue
            try:
                if not client.is_connected():
                    self.unregister_client(client.id)
                    continue
                result = client.send(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception as e:
                logger.warning("sync.send_failed", client=client.id, event_type=event.type, error=str(e))
                self.unregister_client(client.id)
        return delivered

    # ─── 進入點 ───────────────────────────────────────────────────────────

    def validate(self, event) -> Optional[str]:
        """回傳 None 表示合法，否則為拒絕原因（INVALID / STALE）。"""
        if getattr(event, "type", None) not in ev.ALL_TYPES:
            return INVALID
        if getattr(event, "source", None) not in ev.ALL_SOURCES:
            return INVALID
        timestamp = getattr(event, "timestamp", None)
        if not isinstance(timestamp, int):
            return INVALID
        if self.clock() - timestamp > self.config.stale_after_ms:
            return STALE
        return None

    async def receive(self, client_id: Optional[str], event) -> str:
        """client 送進來的事件：驗證 → 高頻事件 debounce → 送上 bus。"""
        reason = self.validate(event)
        if reason is not None:
            logger.warning("sync.event_rejected", client=client_id, event_type=getattr(event, "type", None), reason=reason)
            return reason

        if event.type in _DEBOUNCED_TYPES:
            key = (event.type, event.element_id.hash)
            if self.debouncer.schedule(key, lambda: self.bus.emit_async(event)):
                return DEBOUNCED
            return ACCEPTED

        element_id = ev.event_element_id(event)
        if element_id is not None:
            await self.flush_element(element_id.hash)
        await self.bus.emit_async(event)
        return ACCEPTED

    async def flush_element(self, element_hash: str) -> int:
        """先送出該元素已到期或仍在 debounce 的事件，同一元素的事件才會依到達順序處理。"""
        running = self.debouncer.running(lambda key: key[1] == element_hash)
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        keys = [key for key in self.debouncer.pending() if key[1] == element_hash]
        for key in keys:
            result = self.debouncer.flush(key)
            if inspect.isawaitable(result):
                await result
        return len(keys)

    # ─── handlers ─────────────────────────────────────────────────────────

    async def _on_selection(self, event) -> None:
        await self.broadcast(event, exclude_source=event.source)

    async def _on_edit(self, event) -> None:
        if event.preview and self.config.preview_mode:
            preview = self.pending.get(pending_key(event.element_id))
            if preview is None:
                preview = PendingPreview(event.element_id)
                self.pending[pending_key(event.element_id)] = preview
            if isinstance(event, ev.StyleChangedEvent):
                preview.styles.update(event.styles)
            elif isinstance(event, ev.TextChangedEvent):
                preview.text = event.text
            elif isinstance(event, ev.ClassChangedEvent):
                preview.class_name = event.class_name
            preview.selector = event.selector or preview.selector
            preview.timestamp = event.timestamp
            preview.element_id = event.element_id
            await self.broadcast(event, exclude_source=event.source)
            return

        # direct commit：跳過 Previewing，直接進衝突檢查
        if isinstance(event, ev.StyleChangedEvent):
            changes = ChangeSet(styles=dict(event.styles))
        elif isinstance(event, ev.TextChangedEvent):
            changes = ChangeSet(text=event.text)
        else:
            changes = ChangeSet(class_name=event.class_name)
        await self.commit(event.element_id, changes, event.selector, event.source)

    async def _on_commit_requested(self, event) -> None:
        preview = self.pending.get(pending_key(event.element_id))
        if preview is None:
            await self._emit(ev.TransactionEvent(
                type=ev.TRANSACTION_FAILED,
                transaction_id="",
                element_id=event.element_id,
                error="沒有待 commit 的 preview",
            ))
            return
        await self.commit(event.element_id, preview.to_changes(), event.selector or preview.selector, event.source)

    async def _on_rollback_requested(self, event) -> None:
        await self.rollback(event.element_id)

    async def _on_file_changed(self, event) -> None:
        dropped = [key for key in self.pending if key[0] == event.file_path]
        for key in dropped:
            del self.pending[key]
        removed = self.registry.clear_file(event.file_path)
        if dropped or removed:
            logger.info("sync.file_invalidated", file=event.file_path, previews=len(dropped), elements=removed)
        await self.broadcast(event)

    # ─── commit / rollback ────────────────────────────────────────────────

    def version_of(self, element_id) -> int:
        key = element_id.hash if isinstance(element_id, ElementID) else str(element_id)
        return self.versions.get(key, 0)

    def check_conflict(self, element_id: ElementID) -> Optional[ev.ConflictEvent]:
        local = self.version_of(element_id)
        if element_id.version < local:
            return ev.ConflictEvent(element_id, local, element_id.version, self.config.conflict_strategy)
        return None

    async def commit(self, element_id: ElementID, changes: ChangeSet, selector: Optional[str] = None, source: str = ev.SOURCE_SYSTEM) -> str:
        conflict = self.check_conflict(element_id)
        if conflict is not None:
            strategy = self.config.conflict_strategy
            logger.warning(
                "sync.conflict",
                element=element_id.hash,
                local=conflict.local_version,
                remote=conflict.remote_version,
                strategy=strategy,
            )
            if strategy == "first-write-wins":
                return REJECTED
            if strategy == "manual":
                await self._emit(conflict)
                return MANUAL

        transaction_id = f"sync_{next(self._tx_ids)}_{int(time.time() * 1000)}"
        await self._emit(ev.TransactionEvent(
            type=ev.TRANSACTION_STARTED,
            transaction_id=transaction_id,
            element_id=element_id,
            file_path=element_id.source_file,
        ))

        if self.committer is not None:
            selector = selector or self._derive_selector(element_id)
            if selector is None:
                result = Result.fail("match", "無法為元素產生 selector")
            else:
                result = await self.committer.commit(element_id, selector, changes)
            if not result.ok:
                await self._emit(ev.TransactionEvent(
                    type=ev.TRANSACTION_FAILED,
                    transaction_id=transaction_id,
                    element_id=element_id,
                    file_path=element_id.source_file,
                    error=str(result.failure),
                ))
                return FAILED

        version = self.version_of(element_id) + 1
        self.versions[element_id.hash] = version
        self.pending.pop(pending_key(element_id), None)
        committed_id = element_id.with_version(version)
        self._stamp_registry(committed_id)
        done = ev.TransactionEvent(
            type=ev.COMMIT_COMPLETED,
            transaction_id=transaction_id,
            element_id=committed_id,
            file_path=element_id.source_file,
        )
        await self._emit(ev.TransactionEvent(
            type=ev.TRANSACTION_COMMITTED,
            transaction_id=transaction_id,
            element_id=committed_id,
            file_path=element_id.source_file,
        ))
        await self._emit(done)
        await self.broadcast(done)
        logger.info("sync.committed", element=element_id.hash, version=version, source=source)
        return COMMITTED

    async def rollback(self, element_id: ElementID) -> bool:
        preview = self.pending.pop(pending_key(element_id), None)
        transaction_id = f"rollback_{next(self._tx_ids)}"
        notice = ev.TransactionEvent(
            type=ev.TRANSACTION_ROLLED_BACK,
            transaction_id=transaction_id,
            element_id=element_id,
            file_path=element_id.source_file,
        )
        # 所有 client（含發起者）都要還原 DOM
        await self.broadcast(notice)
        await self._emit(notice)
        await self._emit(ev.TransactionEvent(
            type=ev.ROLLBACK_COMPLETED,
            transaction_id=transaction_id,
            element_id=element_id,
            file_path=element_id.source_file,
        ))
        return preview is not None

    async def commit_pending(self) -> dict:
        outcomes = {}
        for key, preview in list(self.pending.items()):
            outcomes[key] = await self.commit(preview.element_id, preview.to_changes(), preview.selector)
        return outcomes

    async def rollback_pending(self) -> int:
        previews = list(self.pending.values())
        for preview in previews:
            await self.rollback(preview.element_id)
        return len(previews)

    # ─── 內部 ─────────────────────────────────────────────────────────────

    def _stamp_registry(self, element_id: ElementID) -> None:
        # registry 發出去的 ID 必須帶目前版本，否則下一次 commit 會被當成過期
        info = self.registry.get(element_id)
        if info is None:
            return
        stamped = self.with_known_version(info)
        if stamped is not info:
            self.registry.register(stamped)

    def with_known_version(self, info):
        """ElementInfo 的 ID 換成已知版本（重新擷取後 ID 版本會歸零）。"""
        version = self.version_of(info.element_id)
        if version == info.element_id.version:
            return info
        return replace(info, element_id=info.element_id.with_version(version))

    def _derive_selector(self, element_id: ElementID) -> Optional[str]:
        info = self.registry.get(element_id)
        return build_selector(info) if info is not None else None

    async def _emit(self, event) -> None:
        await self.bus.emit_async(event)

    def stats(self) -> dict:
        return {
            "clients": len(self.clients),
            "pending": len(self.pending),
            "debouncing": len(self.debouncer),
            "versions": len(self.versions),
        }
