"""
Realm 事件 — 封閉詞彙的 tagged variant 與 wire 編解碼

每種事件只帶自己需要的欄位；dispatch 端依 type 比對。
wire 格式為 camelCase JSON 物件：id / timestamp / type / source + 各自欄位。
"""

import itertools
import time
from dataclasses import dataclass, field
from typing import Optional, Union

from .models import ElementID

# ─── 事件類型 ──────────────────────────────────────────────────────────────────

ELEMENT_SELECTED = "ELEMENT_SELECTED"
ELEMENT_HOVERED = "ELEMENT_HOVERED"
ELEMENT_DESELECTED = "ELEMENT_DESELECTED"
STYLE_CHANGED = "STYLE_CHANGED"
TEXT_CHANGED = "TEXT_CHANGED"
CLASS_CHANGED = "CLASS_CHANGED"
COMMIT_REQUESTED = "COMMIT_REQUESTED"
ROLLBACK_REQUESTED = "ROLLBACK_REQUESTED"
COMMIT_COMPLETED = "COMMIT_COMPLETED"
ROLLBACK_COMPLETED = "ROLLBACK_COMPLETED"
TRANSACTION_STARTED = "TRANSACTION_STARTED"
TRANSACTION_COMMITTED = "TRANSACTION_COMMITTED"
TRANSACTION_FAILED = "TRANSACTION_FAILED"
TRANSACTION_ROLLED_BACK = "TRANSACTION_ROLLED_BACK"
CONFLICT_DETECTED = "CONFLICT_DETECTED"
FILE_CHANGED = "FILE_CHANGED"
FILE_CREATED = "FILE_CREATED"
FILE_DELETED = "FILE_DELETED"
SYNC_REQUESTED = "SYNC_REQUESTED"
SYNC_COMPLETED = "SYNC_COMPLETED"

SELECTION_TYPES = (ELEMENT_SELECTED, ELEMENT_HOVERED, ELEMENT_DESELECTED)
TRANSACTION_TYPES = (
    COMMIT_COMPLETED,
    ROLLBACK_COMPLETED,
    TRANSACTION_STARTED,
    TRANSACTION_COMMITTED,
    TRANSACTION_FAILED,
    TRANSACTION_ROLLED_BACK,
)
FILE_TYPES = (FILE_CHANGED, FILE_CREATED, FILE_DELETED)
SYNC_TYPES = (SYNC_REQUESTED, SYNC_COMPLETED)

ALL_TYPES = frozenset(
    SELECTION_TYPES
    + TRANSACTION_TYPES
    + FILE_TYPES
    + SYNC_TYPES
    + (STYLE_CHANGED, TEXT_CHANGED, CLASS_CHANGED, COMMIT_REQUESTED, ROLLBACK_REQUESTED, CONFLICT_DETECTED)
)

# ─── 事件來源 ──────────────────────────────────────────────────────────────────

SOURCE_PANEL = "panel"
SOURCE_DOM = "dom"
SOURCE_FILE_WATCHER = "file-watcher"
SOURCE_SYSTEM = "system"
SOURCE_EDITOR = "editor"

ALL_SOURCES = frozenset({SOURCE_PANEL, SOURCE_DOM, SOURCE_FILE_WATCHER, SOURCE_SYSTEM, SOURCE_EDITOR})


class EventDecodeError(ValueError):
    """wire 訊息無法還原成 RealmEvent。"""


_counter = itertools.count(1)


def now_ms() -> int:
    return int(time.time() * 1000)


def new_event_id() -> str:
    return f"evt_{next(_counter)}_{now_ms()}"


def _event_id() -> str:
    return new_event_id()


# ─── variants ─────────────────────────────────────────────────────────────────
# 共同欄位放最後且帶預設值，variant 專屬欄位才能寫成必填。


@dataclass(frozen=True)
class SelectionEvent:
    type: str
    element_id: ElementID
    source: str = SOURCE_DOM
    selector: Optional[str] = None
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class StyleChangedEvent:
    element_id: ElementID
    styles: dict
    preview: bool = True
    selector: Optional[str] = None
    source: str = SOURCE_PANEL
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)
    type: str = field(default=STYLE_CHANGED, init=False)


@dataclass(frozen=True)
class TextChangedEvent:
    element_id: ElementID
    text: str
    preview: bool = True
    selector: Optional[str] = None
    source: str = SOURCE_PANEL
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)
    type: str = field(default=TEXT_CHANGED, init=False)


@dataclass(frozen=True)
class ClassChangedEvent:
    element_id: ElementID
    class_name: str
    preview: bool = True
    selector: Optional[str] = None
    source: str = SOURCE_PANEL
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)
    type: str = field(default=CLASS_CHANGED, init=False)


@dataclass(frozen=True)
class CommitRequestedEvent:
    element_id: ElementID
    selector: Optional[str] = None
    source: str = SOURCE_PANEL
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)
    type: str = field(default=COMMIT_REQUESTED, init=False)


@dataclass(frozen=True)
class RollbackRequestedEvent:
    element_id: ElementID
    source: str = SOURCE_PANEL
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)
    type: str = field(default=ROLLBACK_REQUESTED, init=False)


@dataclass(frozen=True)
class TransactionEvent:
    type: str
    transaction_id: str
    element_id: Optional[ElementID] = None
    file_path: Optional[str] = None
    error: Optional[str] = None
    source: str = SOURCE_SYSTEM
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class ConflictEvent:
    element_id: ElementID
    local_version: int
    remote_version: int
    strategy: str
    source: str = SOURCE_SYSTEM
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)
    type: str = field(default=CONFLICT_DETECTED, init=False)


@dataclass(frozen=True)
class FileEvent:
    type: str
    file_path: str
    affected_ids: tuple = ()
    source: str = SOURCE_FILE_WATCHER
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class SyncEvent:
    type: str
    file_path: Optional[str] = None
    source: str = SOURCE_SYSTEM
    id: str = field(default_factory=_event_id)
    timestamp: int = field(default_factory=now_ms)


RealmEvent = Union[
    SelectionEvent,
    StyleChangedEvent,
    TextChangedEvent,
    ClassChangedEvent,
    CommitRequestedEvent,
    RollbackRequestedEvent,
    TransactionEvent,
    ConflictEvent,
    FileEvent,
    SyncEvent,
]


def event_element_id(event) -> Optional[ElementID]:
    return getattr(event, "element_id", None)


# ─── wire codec ───────────────────────────────────────────────────────────────


def event_to_wire(event) -> dict:
    """RealmEvent → JSON 可序列化 dict（camelCase）。"""
    data = {
        "id": event.id,
        "timestamp": event.timestamp,
        "type": event.type,
        "source": event.source,
    }
    element_id = event_element_id(event)
    if element_id is not None:
        data["realmId"] = element_id.to_dict()

    if isinstance(event, StyleChangedEvent):
        data["styles"] = dict(event.styles)
        data["preview"] = event.preview
    elif isinstance(event, TextChangedEvent):
        data["text"] = event.text
        data["preview"] = event.preview
    elif isinstance(event, ClassChangedEvent):
        data["className"] = event.class_name
        data["preview"] = event.preview
    elif isinstance(event, TransactionEvent):
        data["transactionId"] = event.transaction_id
        if event.file_path:
            data["filePath"] = event.file_path
        if event.error:
            data["error"] = event.error
    elif isinstance(event, ConflictEvent):
        data["localVersion"] = event.local_version
        data["remoteVersion"] = event.remote_version
        data["strategy"] = event.strategy
    elif isinstance(event, FileEvent):
        data["filePath"] = event.file_path
        data["affectedRealmIds"] = [eid.to_dict() for eid in event.affected_ids]
    elif isinstance(event, SyncEvent):
        if event.file_path:
            data["filePath"] = event.file_path

    selector = getattr(event, "selector", None)
    if selector:
        data["selector"] = selector
    return data


def _require(data: dict, key: str):
    if key not in data or data[key] is None:
        raise EventDecodeError(f"{data.get('type')} 缺少欄位 '{key}'")
    return data[key]


def _realm_id(data: dict) -> ElementID:
    try:
        return ElementID.from_dict(_require(data, "realmId"))
    except (TypeError, ValueError) as e:
        raise EventDecodeError(f"realmId 格式錯誤: {e}") from e


def event_from_wire(data: dict):
    """wire dict → RealmEvent。任何欄位不合法都丟 EventDecodeError。"""
    if not isinstance(data, dict):
        raise EventDecodeError("事件必須是 JSON 物件")
    event_type = data.get("type")
    if event_type not in ALL_TYPES:
        raise EventDecodeError(f"未知事件類型 '{event_type}'")
    source = data.get("source")
    if source not in ALL_SOURCES:
        raise EventDecodeError(f"未知事件來源 '{source}'")
    timestamp = data.get("timestamp")
    if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
        raise EventDecodeError("timestamp 必須是 epoch 毫秒數字")

    common = {"source": source, "timestamp": int(timestamp)}
    if data.get("id"):
        common["id"] = str(data["id"])
    selector = data.get("selector") or None
    preview = bool(data.get("preview", True))

    if event_type in SELECTION_TYPES:
        return SelectionEvent(type=event_type, element_id=_realm_id(data), selector=selector, **common)
    if event_type == STYLE_CHANGED:
        styles = _require(data, "styles")
        if not isinstance(styles, dict):
            raise EventDecodeError("styles 必須是物件")
        return StyleChangedEvent(_realm_id(data), dict(styles), preview, selector, **common)
    if event_type == TEXT_CHANGED:
        text = _require(data, "text")
        return TextChangedEvent(_realm_id(data), str(text), preview, selector, **common)
    if event_type == CLASS_CHANGED:
        class_name = _require(data, "className")
        return ClassChangedEvent(_realm_id(data), str(class_name), preview, selector, **common)
    if event_type == COMMIT_REQUESTED:
        return CommitRequestedEvent(_realm_id(data), selector, **common)
    if event_type == ROLLBACK_REQUESTED:
        return RollbackRequestedEvent(_realm_id(data), **common)
    if event_type in TRANSACTION_TYPES:
        element_id = _realm_id(data) if data.get("realmId") else None
        return TransactionEvent(
            type=event_type,
            transaction_id=str(data.get("transactionId", "")),
            element_id=element_id,
            file_path=data.get("filePath"),
            error=data.get("error"),
            **common,
        )
    if event_type == CONFLICT_DETECTED:
        return ConflictEvent(
            _realm_id(data),
            int(data.get("localVersion", 0)),
            int(data.get("remoteVersion", 0)),
            str(data.get("strategy", "")),
            **common,
        )
    if event_type in FILE_TYPES:
        file_path = _require(data, "filePath")
        try:
            affected = tuple(ElementID.from_dict(d) for d in data.get("affectedRealmIds") or [])
        except (TypeError, ValueError) as e:
            raise EventDecodeError(f"affectedRealmIds 格式錯誤: {e}") from e
        return FileEvent(type=event_type, file_path=str(file_path), affected_ids=affected, **common)
    return SyncEvent(type=event_type, file_path=data.get("filePath"), **common)
