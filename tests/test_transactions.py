"""
交易層整合測試：實際讀寫 tmp_path 內的檔案
"""
import asyncio
import os

import pytest

from realm_sync.code_mutator import ChangeSet, CodeMutationEngine
from realm_sync.transactions import (
    ChangeLog,
    FileLockManager,
    TransactionManager,
    atomic_write,
    content_hash,
)


APP_TSX = 'export const App = () => (\n  <p className="text-sm">Hello</p>\n);\n'


def make_manager(root, **kwargs):
    return TransactionManager(CodeMutationEngine(), root=root, **kwargs)


# ─── atomic_write ────────────────────────────────────────────────────────────

class TestAtomicWrite:
    def test_writes_content_and_leaves_no_temp_file(self, tmp_path):
        target = tmp_path / "App.tsx"
        target.write_text("old", encoding="utf-8")
        atomic_write(target, "new")
        assert target.read_text(encoding="utf-8") == "new"
        assert os.listdir(tmp_path) == ["App.tsx"]

    def test_creates_new_file(self, tmp_path):
        target = tmp_path / "New.tsx"
        atomic_write(target, "x")
        assert target.read_text(encoding="utf-8") == "x"


# ─── apply ───────────────────────────────────────────────────────────────────

class TestApply:
    def test_apply_writes_and_records(self, tmp_path):
        (tmp_path / "App.tsx").write_text(APP_TSX, encoding="utf-8")
        manager = make_manager(tmp_path)

        result = asyncio.run(manager.apply("App.tsx", "p.text-sm", ChangeSet(text="Hi")))

        assert result.ok
        entry = result.value
        assert entry.file_path == "App.tsx"
        assert entry.before == APP_TSX
        assert ">Hi</p>" in (tmp_path / "App.tsx").read_text(encoding="utf-8")
        assert entry.after_hash == content_hash((tmp_path / "App.tsx").read_text(encoding="utf-8"))
        assert len(manager.change_log) == 1

    def test_no_match_leaves_file_untouched(self, tmp_path):
        (tmp_path / "App.tsx").write_text(APP_TSX, encoding="utf-8")
        manager = make_manager(tmp_path)

        result = asyncio.run(manager.apply("App.tsx", "span.missing", ChangeSet(text="Hi")))

        assert not result.ok
        assert result.failure.kind == "match"
        assert (tmp_path / "App.tsx").read_text(encoding="utf-8") == APP_TSX
        assert len(manager.change_log) == 0

    def test_unchanged_content_returns_none(self, tmp_path):
        (tmp_path / "App.tsx").write_text(APP_TSX, encoding="utf-8")
        manager = make_manager(tmp_path)
        result = asyncio.run(manager.apply("App.tsx", "p", ChangeSet(text="Hello")))
        assert result.ok
        assert result.value is None
        assert len(manager.change_log) == 0

    def test_missing_file_is_io_failure(self, tmp_path):
        result = asyncio.run(make_manager(tmp_path).apply("Nope.tsx", "p", ChangeSet(text="x")))
        assert result.failure.kind == "io"

    def test_external_change_during_mutation_is_conflict(self, tmp_path):
        path = tmp_path / "App.tsx"
        path.write_text(APP_TSX, encoding="utf-8")
        engine = CodeMutationEngine()
        original_mutate = engine.mutate

        def mutate_while_someone_edits(*args, **kwargs):
            path.write_text(APP_TSX.replace("Hello", "Edited elsewhere"), encoding="utf-8")
            return original_mutate(*args, **kwargs)

        engine.mutate = mutate_while_someone_edits
        manager = TransactionManager(engine, root=tmp_path)

        result = asyncio.run(manager.apply("App.tsx", "p", ChangeSet(text="Hi")))

        assert result.failure.kind == "conflict"
        assert "Edited elsewhere" in path.read_text(encoding="utf-8")

    def test_lock_timeout(self, tmp_path):
        (tmp_path / "App.tsx").write_text(APP_TSX, encoding="utf-8")
        manager = make_manager(tmp_path, locks=FileLockManager(timeout=0.05))

        async def main():
            await manager.locks.acquire(str(tmp_path / "App.tsx"))
            return await manager.apply("App.tsx", "p", ChangeSet(text="Hi"))

        result = asyncio.run(main())
        assert result.failure.kind == "timeout"

    def test_lock_released_after_apply(self, tmp_path):
        (tmp_path / "App.tsx").write_text(APP_TSX, encoding="utf-8")
        manager = make_manager(tmp_path)
        asyncio.run(manager.apply("App.tsx", "p", ChangeSet(text="Hi")))
        assert not manager.locks.is_locked(str(tmp_path / "App.tsx"))


# ─── revert ──────────────────────────────────────────────────────────────────

class TestRevert:
    def test_revert_restores_before(self, tmp_path):
        path = tmp_path / "App.tsx"
        path.write_text(APP_TSX, encoding="utf-8")
        manager = make_manager(tmp_path)

        async def main():
            applied = await manager.apply("App.tsx", "p", ChangeSet(text="Hi"))
            return applied, await manager.revert(applied.value.transaction_id)

        applied, reverted = asyncio.run(main())
        assert reverted.ok
        assert path.read_text(encoding="utf-8") == APP_TSX
        assert manager.change_log.get(applied.value.transaction_id).rolled_back is True

    def test_revert_refused_after_later_edit(self, tmp_path):
        path = tmp_path / "App.tsx"
        path.write_text(APP_TSX, encoding="utf-8")
        manager = make_manager(tmp_path)

        async def main():
            applied = await manager.apply("App.tsx", "p", ChangeSet(text="Hi"))
            path.write_text("// rewritten\n", encoding="utf-8")
            return await manager.revert(applied.value.transaction_id)

        result = asyncio.run(main())
        assert result.failure.kind == "conflict"
        assert path.read_text(encoding="utf-8") == "// rewritten\n"

    def test_revert_unknown_transaction(self, tmp_path):
        result = asyncio.run(make_manager(tmp_path).revert("tx_missing"))
        assert result.failure.kind == "invalid"


# ─── ChangeLog ───────────────────────────────────────────────────────────────

class TestChangeLog:
    def test_bounded_and_newest_first(self):
        log = ChangeLog(max_entries=2)
        for i in range(3):
            log.record(f"tx_{i}", "a.tsx", None, "p", "before", f"after {i}")
        assert len(log) == 2
        assert [e.transaction_id for e in log.query()] == ["tx_2", "tx_1"]
        assert log.get("tx_0") is None

    def test_query_filters(self):
        log = ChangeLog()
        log.record("tx_1", "a.tsx", None, "p", "x", "y")
        log.record("tx_2", "b.tsx", None, "p", "x", "y")
        log.mark_rolled_back("tx_1")
        assert [e.transaction_id for e in log.query(file_path="a.tsx")] == ["tx_1"]
        assert [e.transaction_id for e in log.query(exclude_rolled_back=True)] == ["tx_2"]
        assert log.query(limit=1)[0].transaction_id == "tx_2"
        assert log.stats() == {"total": 2, "rolledBack": 1, "files": 2}
        assert log.mark_rolled_back("tx_1") is False
