"""
交易層 — 檔案鎖、變更紀錄與原子寫入

一次 commit = 鎖定檔案 → 讀取快照 → 交給 Mutation Engine 改寫 →
確認檔案在這段期間沒被別人改過 → 暫存檔 + os.replace 原子寫入 → 寫入 ChangeLog。
寫入不可中斷；要嘛整份新內容落地，要嘛原檔完全不動。
"""

import asyncio
import hashlib
import itertools
import os
import tempfile
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .logging_config import get_logger
from .models import ElementID, Result

logger = get_logger(__name__)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def atomic_write(path: Path, content: str) -> None:
    """同目錄暫存檔寫完再 os.replace，不會留下寫一半的檔案。"""
    path = Path(path)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        if path.exists():
            os.chmod(tmp, path.stat().st_mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


# ─── 檔案鎖 ───────────────────────────────────────────────────────────────────


class FileLockManager:
    """每個路徑一把 asyncio.Lock；取得逾時回傳 False。"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, path: str) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = self._locks[path] = asyncio.Lock()
        return lock

    async def acquire(self, path: str, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._lock(path).acquire(), timeout or self.timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning("lock.timeout", file=path)
            return False

    def release(self, path: str) -> None:
        lock = self._locks.get(path)
        if lock is not None and lock.locked():
            lock.release()

    def is_locked(self, path: str) -> bool:
        lock = self._locks.get(path)
        return lock is not None and lock.locked()


# ─── 變更紀錄 ─────────────────────────────────────────────────────────────────


@dataclass
class ChangeLogEntry:
    id: str
    transaction_id: str
    file_path: str
    element_hash: Optional[str]
    selector: str
    before: str
    after: str
    before_hash: str
    after_hash: str
    timestamp: float = field(default_factory=time.time)
    rolled_back: bool = False
    rolled_back_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "filePath": self.file_path,
            "elementHash": self.element_hash,
            "selector": self.selector,
            "beforeHash": self.before_hash,
            "afterHash": self.after_hash,
            "timestamp": self.timestamp,
            "rolledBack": self.rolled_back,
        }


class ChangeLog:
    """只增不改的紀錄（rolled_back 標記除外），超過容量丟掉最舊的。"""

    def __init__(self, max_entries: int = 1000):
        self._entries: deque = deque(maxlen=max(1, max_entries))
        self._ids = itertools.count(1)

    def record(self, transaction_id: str, file_path: str, element_hash, selector: str, before: str, after: str) -> ChangeLogEntry:
        entry = ChangeLogEntry(
            id=f"chg_{next(self._ids)}",
            transaction_id=transaction_id,
            file_path=file_path,
            element_hash=element_hash,
            selector=selector,
            before=before,
            after=after,
            before_hash=content_hash(before),
            after_hash=content_hash(after),
        )
        self._entries.append(entry)
        return entry

    def get(self, transaction_id: str) -> Optional[ChangeLogEntry]:
        for entry in reversed(self._entries):
            if entry.transaction_id == transaction_id:
                return entry
        return None

    def mark_rolled_back(self, transaction_id: str) -> bool:
        entry = self.get(transaction_id)
        if entry is None or entry.rolled_back:
            return False
        entry.rolled_back = True
        entry.rolled_back_at = time.time()
        return True

    def query(
        self,
        file_path: Optional[str] = None,
        transaction_id: Optional[str] = None,
        since: Optional[float] = None,
        until: Optional[float] = None,
        limit: Optional[int] = None,
        exclude_rolled_back: bool = False,
    ) -> list:
        """新到舊排序。"""
        results = []
        for entry in reversed(self._entries):
            if file_path is not None and entry.file_path != file_path:
                continue
            if transaction_id is not None and entry.transaction_id != transaction_id:
                continue
            if since is not None and entry.timestamp < since:
                continue
            if until is not None and entry.timestamp > until:
                continue
            if exclude_rolled_back and entry.rolled_back:
                continue
            results.append(entry)
            if limit is not None and len(results) >= limit:
                break
        return results

    def stats(self) -> dict:
        files = {e.file_path for e in self._entries}
        return {
            "total": len(self._entries),
            "rolledBack": sum(1 for e in self._entries if e.rolled_back),
            "files": len(files),
        }

    def __len__(self) -> int:
        return len(self._entries)


# ─── 交易管理 ─────────────────────────────────────────────────────────────────


class TransactionManager:
    def __init__(self, mutator, change_log: Optional[ChangeLog] = None, locks: Optional[FileLockManager] = None, root=None):
        self.mutator = mutator
        self.change_log = change_log or ChangeLog()
        self.locks = locks or FileLockManager()
        self.root = Path(root) if root is not None else None
        self._ids = itertools.count(1)

    def new_transaction_id(self) -> str:
        return f"tx_{next(self._ids)}_{int(time.time() * 1000)}"

    def resolve(self, file_path: str) -> Path:
        path = Path(file_path)
        if not path.is_absolute() and self.root is not None:
            path = self.root / path
        return path

    async def apply(
        self,
        file_path: str,
        selector: str,
        changes,
        element_id: Optional[ElementID] = None,
        transaction_id: Optional[str] = None,
    ) -> Result:
        """成功時 value 為 ChangeLogEntry；內容沒有實際變化時 value 為 None。"""
        transaction_id = transaction_id or self.new_transaction_id()
        path = self.resolve(file_path)
        key = str(path)
        if not await self.locks.acquire(key):
            return Result.fail("timeout", f"無法取得檔案鎖: {file_path}", transaction=transaction_id)
        try:
            try:
                before = await asyncio.to_thread(path.read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                return Result.fail("io", f"讀取失敗: {e}", transaction=transaction_id)

            result = self.mutator.mutate(before, selector, changes, str(path))
            if not result.ok:
                return Result(failure=result.failure)
            if result.content == before:
                return Result.success(None)

            # 寫入前再比一次快照：期間有人改檔就放棄
            try:
                current = await asyncio.to_thread(path.read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                return Result.fail("io", f"讀取失敗: {e}", transaction=transaction_id)
            if content_hash(current) != content_hash(before):
                return Result.fail("conflict", "檔案在改寫期間被修改", transaction=transaction_id)

            try:
                await asyncio.to_thread(atomic_write, path, result.content)
            except OSError as e:
                return Result.fail("io", f"寫入失敗: {e}", transaction=transaction_id)

            entry = self.change_log.record(
                transaction_id,
                file_path,
                element_id.hash if element_id is not None else None,
                selector,
                before,
                result.content,
            )
            logger.info("transaction.committed", transaction=transaction_id, file=file_path, selector=selector)
            return Result.success(entry)
        finally:
            self.locks.release(key)

    async def revert(self, transaction_id: str) -> Result:
        """還原已 commit 的交易；檔案已被後續修改時拒絕。"""
        entry = self.change_log.get(transaction_id)
        if entry is None:
            return Result.fail("invalid", f"找不到交易 {transaction_id}")
        if entry.rolled_back:
            return Result.fail("invalid", f"交易 {transaction_id} 已還原過")
        path = self.resolve(entry.file_path)
        key = str(path)
        if not await self.locks.acquire(key):
            return Result.fail("timeout", f"無法取得檔案鎖: {entry.file_path}")
        try:
            try:
                current = await asyncio.to_thread(path.read_text, encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                return Result.fail("io", f"讀取失敗: {e}")
            if content_hash(current) != entry.after_hash:
                return Result.fail("conflict", "檔案在交易之後已被修改，無法還原")
            try:
                await asyncio.to_thread(atomic_write, path, entry.before)
            except OSError as e:
                return Result.fail("io", f"寫入失敗: {e}")
            self.change_log.mark_rolled_back(transaction_id)
            logger.info("transaction.reverted", transaction=transaction_id, file=entry.file_path)
            return Result.success(entry)
        finally:
            self.locks.release(key)
