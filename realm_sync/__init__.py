"""
realm-sync — 視覺編輯 ↔ JSX/TSX 原始碼同步（Python 管線）

擷取原始碼中的 UI 元素、以 selector 定位並把樣式 / className / 文字變更寫回原始檔。
"""

__version__ = "0.1.0"

from .models import ElementID, ElementInfo, ExtractionResult, Failure, Result, SourceLocation
from .source_extractor import SourceExtractor
from .element_registry import ElementRegistry
from .event_bus import EventBus
from .code_mutator import ChangeSet, CodeMutationEngine
from .class_merge import ClassMatchPolicy, merge_classes
from .sync_engine import SyncClient, SyncEngine
from .transactions import ChangeLog, TransactionManager
from .config import load_config, validate_config
from . import events

__all__ = [
    "__version__",
    "ElementID",
    "ElementInfo",
    "ExtractionResult",
    "Failure",
    "Result",
    "SourceLocation",
    "SourceExtractor",
    "ElementRegistry",
    "EventBus",
    "ChangeSet",
    "CodeMutationEngine",
    "ClassMatchPolicy",
    "merge_classes",
    "SyncClient",
    "SyncEngine",
    "ChangeLog",
    "TransactionManager",
    "load_config",
    "validate_config",
    "events",
]
