"""
RealmRuntime — 組裝根（composition root）

啟動時各建立一份 Bus / Registry / Extractor / Mutator / Transactions / SyncEngine，
以建構子注入彼此；測試時直接建立新的 runtime，不需要重設任何全域狀態。
"""

import asyncio
from pathlib import Path
from typing import Optional

from . import events as ev
from .code_mutator import ChangeSet, CodeMutationEngine
from .config import MutationConfig, SourceConfig, SyncConfig, TransactionConfig
from .element_registry import ElementRegistry
from .event_bus import EventBus
from .logging_config import get_logger
from .models import ElementID, Result
from .source_extractor import SourceExtractor, relative_source_path
from .sync_engine import SyncClient, SyncEngine
from .transactions import ChangeLog, FileLockManager, TransactionManager

logger = get_logger(__name__)


class RealmRuntime:
    def __init__(self, config: Optional[dict] = None, root: Optional[str] = None):
        self.config = config or {}
        self.source_config = SourceConfig.from_dict(self.config)
        self.root = Path(root or self.source_config.root).resolve()

        sync_config = SyncConfig.from_dict(self.config)
        mutation_config = MutationConfig.from_dict(self.config)
        tx_config = TransactionConfig.from_dict(self.config)

        self.bus = EventBus(history_size=sync_config.history_size)
        self.registry = ElementRegistry()
        self.extractor = SourceExtractor(root=str(self.root))
        self.mutator = CodeMutationEngine(mutation_config.policy, mutation_config.class_mode)
        self.transactions = TransactionManager(
            self.mutator,
            ChangeLog(tx_config.max_change_log_entries),
            FileLockManager(tx_config.lock_timeout_seconds),
            root=self.root,
        )
        # SyncEngine 先訂閱 FILE_* 事件，registry 先被清掉，再由下面的 reindex 重新擷取
        self.engine = SyncEngine(self.bus, self.registry, committer=self, config=sync_config)
        for event_type in ev.FILE_TYPES:
            self.bus.on(event_type, self._on_file_event)
        self.engine.register_client(SyncClient("internal", "internal", self._internal_send))

    # ─── 索引 ─────────────────────────────────────────────────────────────

    def relative_path(self, path) -> str:
        return relative_source_path(Path(path) if Path(path).is_absolute() else self.root / path, self.root)

    def index_workspace(self) -> dict:
        """掃描整個工作區並註冊；回傳 { 檔案: 錯誤數 }（只列有錯誤的檔案）。"""
        results = self.extractor.extract_directory(
            self.root, self.source_config.extensions, self.source_config.ignore
        )
        problems = {}
        for rel_path, result in results.items():
            self.registry.clear_file(rel_path)
            self._register(result.elements)
            if result.errors:
                problems[rel_path] = len(result.errors)
        logger.info("runtime.indexed", files=len(results), elements=len(self.registry), problems=len(problems))
        return problems

    async def reindex_file(self, rel_path: str) -> int:
        path = self.root / rel_path
        if not path.exists():
            self.registry.clear_file(rel_path)
            return 0
        result = await asyncio.to_thread(self.extractor.extract_file, path)
        # 同步替換：clear 與 register 之間沒有 await
        self.registry.clear_file(rel_path)
        self._register(result.elements)
        return len(result.elements)

    def _register(self, elements) -> None:
        # 重新擷取的 ID 版本為 0，換成 SyncEngine 已知的 commit 版本
        self.registry.register_many(self.engine.with_known_version(info) for info in elements)

    async def _on_file_event(self, event) -> None:
        if event.type == ev.FILE_DELETED:
            self.registry.clear_file(event.file_path)
            return
        count = await self.reindex_file(event.file_path)
        logger.debug("runtime.reindexed", file=event.file_path, elements=count)

    async def publish_file_event(self, event_type: str, src_path: str) -> str:
        """watcher 的回呼：絕對路徑 → 工作區相對路徑的 FileEvent，經 SyncEngine 驗證後上 bus。"""
        rel_path = self.relative_path(src_path)
        affected = tuple(info.element_id for info in self.registry.all_for_file(rel_path))
        event = ev.FileEvent(type=event_type, file_path=rel_path, affected_ids=affected)
        return await self.engine.receive("file-watcher", event)

    async def _internal_send(self, event) -> None:
        # internal client 只用來讓 system / file-watcher 來源不被回送
        return None

    # ─── 寫回 ─────────────────────────────────────────────────────────────

    async def commit(self, element_id: ElementID, selector: str, changes) -> Result:
        """SyncEngine 的 committer：寫回 element_id 所屬檔案。"""
        result = await self.transactions.apply(element_id.source_file, selector, changes, element_id=element_id)
        if result.ok and result.value is not None:
            await self.reindex_file(element_id.source_file)
        return result

    async def apply_element_changes(self, file_path: str, selector: str, changes) -> Result:
        """panel 直接改檔的路徑（不經 preview 狀態機）。"""
        if isinstance(changes, dict):
            changes = ChangeSet.from_wire(changes)
        rel_path = self.relative_path(file_path)
        result = await self.transactions.apply(rel_path, selector, changes)
        if result.ok and result.value is not None:
            await self.reindex_file(rel_path)
        return result

    def elements_for(self, file_path: str) -> list:
        return self.registry.all_for_file(self.relative_path(file_path))

    def close(self) -> None:
        self.engine.close()
        self.bus.close()
