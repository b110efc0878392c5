"""
RealmRuntime 端到端整合測試：真實檔案 + 真實 tree-sitter + 真實交易層
"""
import asyncio

import pytest

from realm_sync import events as ev
from realm_sync.code_mutator import ChangeSet
from realm_sync.runtime import RealmRuntime


NAV_TSX = """export function Nav() {
  return (
    <nav>
      <a className="text-sm text-gray-500" href="/">Home</a>
      <a className="text-sm text-gray-500" href="/about">About</a>
    </nav>
  );
}
"""


def make_runtime(tmp_path, config=None):
    src = tmp_path / "src"
    src.mkdir()
    (src / "Nav.tsx").write_text(NAV_TSX, encoding="utf-8")
    runtime = RealmRuntime(config or {}, root=str(tmp_path))
    runtime.index_workspace()
    return runtime


def links(runtime):
    return [e for e in runtime.elements_for("src/Nav.tsx") if e.tag_name == "a"]


# ─── 索引 ────────────────────────────────────────────────────────────────────

class TestIndexing:
    def test_index_workspace(self, tmp_path):
        runtime = make_runtime(tmp_path)
        assert runtime.registry.files() == ["src/Nav.tsx"]
        assert [e.tag_name for e in runtime.elements_for("src/Nav.tsx")] == ["nav", "a", "a"]

    def test_index_reports_problem_files(self, tmp_path):
        (tmp_path / "Broken.tsx").write_text("export const B = () => <div>;\n", encoding="utf-8")
        runtime = RealmRuntime({}, root=str(tmp_path))
        problems = runtime.index_workspace()
        assert list(problems) == ["Broken.tsx"]

    def test_absolute_and_relative_paths_agree(self, tmp_path):
        runtime = make_runtime(tmp_path)
        assert runtime.elements_for(str(tmp_path / "src" / "Nav.tsx")) == runtime.elements_for("src/Nav.tsx")


# ─── preview → commit 寫回檔案 ───────────────────────────────────────────────

class TestCommitFlow:
    def test_class_preview_commit_rewrites_file(self, tmp_path):
        runtime = make_runtime(tmp_path)
        target = links(runtime)[1]

        async def main():
            await runtime.bus.emit_async(ev.ClassChangedEvent(
                target.element_id,
                "text-sm text-red-500",
                selector="nav > a.text-sm.text-gray-500:nth-of-type(2)",
            ))
            await runtime.bus.emit_async(ev.CommitRequestedEvent(target.element_id))

        asyncio.run(main())

        content = (tmp_path / "src" / "Nav.tsx").read_text(encoding="utf-8")
        assert content == NAV_TSX.replace(
            '<a className="text-sm text-gray-500" href="/about">',
            '<a className="text-sm text-red-500" href="/about">',
        )
        refreshed = links(runtime)
        assert refreshed[1].attributes["className"] == "text-sm text-red-500"
        assert refreshed[1].hash == target.hash
        assert runtime.engine.version_of(target.element_id) == 1
        assert len(runtime.transactions.change_log) == 1

    def test_commit_without_selector_uses_registry(self, tmp_path):
        runtime = make_runtime(tmp_path)
        target = links(runtime)[0]

        async def main():
            await runtime.bus.emit_async(ev.TextChangedEvent(target.element_id, "Start", preview=False))

        asyncio.run(main())
        assert ">Start</a>" in (tmp_path / "src" / "Nav.tsx").read_text(encoding="utf-8")
        assert links(runtime)[0].text_content == "Start"

    def test_registry_serves_committed_version(self, tmp_path):
        runtime = make_runtime(tmp_path, {"sync": {"conflictStrategy": "first-write-wins"}})

        async def main():
            first = await runtime.engine.commit(links(runtime)[0].element_id, ChangeSet(text="One"))
            served = links(runtime)[0].element_id
            second = await runtime.engine.commit(served, ChangeSet(text="Two"))
            return first, served, second

        first, served, second = asyncio.run(main())
        assert (first, second) == ("committed", "committed")
        assert served.version == 1
        assert links(runtime)[0].element_id.version == 2
        assert ">Two</a>" in (tmp_path / "src" / "Nav.tsx").read_text(encoding="utf-8")

    def test_version_survives_reindex(self, tmp_path):
        runtime = make_runtime(tmp_path)
        target = links(runtime)[0]
        asyncio.run(runtime.engine.commit(target.element_id, ChangeSet(text="One")))
        asyncio.run(runtime.publish_file_event(ev.FILE_CHANGED, str(tmp_path / "src" / "Nav.tsx")))
        assert links(runtime)[0].element_id.version == 1
        runtime.index_workspace()
        assert links(runtime)[0].element_id.version == 1

    def test_failed_commit_leaves_file(self, tmp_path):
        runtime = make_runtime(tmp_path)
        target = links(runtime)[0]

        async def main():
            return await runtime.engine.commit(target.element_id, None, selector="table.missing")

        outcome = asyncio.run(main())
        assert outcome == "failed"
        assert (tmp_path / "src" / "Nav.tsx").read_text(encoding="utf-8") == NAV_TSX


# ─── 外部檔案變更 ────────────────────────────────────────────────────────────

class TestFileEvents:
    def test_external_edit_reindexes(self, tmp_path):
        runtime = make_runtime(tmp_path)
        path = tmp_path / "src" / "Nav.tsx"
        path.write_text(NAV_TSX.replace(">Home<", ">Start<"), encoding="utf-8")

        outcome = asyncio.run(runtime.publish_file_event(ev.FILE_CHANGED, str(path)))

        assert outcome == "accepted"
        assert links(runtime)[0].text_content == "Start"

    def test_external_edit_drops_pending_preview(self, tmp_path):
        runtime = make_runtime(tmp_path)
        target = links(runtime)[0]

        async def main():
            await runtime.bus.emit_async(ev.StyleChangedEvent(target.element_id, {"color": "red"}))
            assert runtime.engine.pending
            await runtime.publish_file_event(ev.FILE_CHANGED, str(tmp_path / "src" / "Nav.tsx"))

        asyncio.run(main())
        assert runtime.engine.pending == {}

    def test_deleted_file_cleared(self, tmp_path):
        runtime = make_runtime(tmp_path)
        path = tmp_path / "src" / "Nav.tsx"
        path.unlink()
        asyncio.run(runtime.publish_file_event(ev.FILE_DELETED, str(path)))
        assert runtime.elements_for("src/Nav.tsx") == []

    def test_created_file_indexed(self, tmp_path):
        runtime = make_runtime(tmp_path)
        path = tmp_path / "src" / "Card.tsx"
        path.write_text("export const Card = () => <article />;\n", encoding="utf-8")
        asyncio.run(runtime.publish_file_event(ev.FILE_CREATED, str(path)))
        assert [e.tag_name for e in runtime.elements_for("src/Card.tsx")] == ["article"]


# ─── 直接改檔 ────────────────────────────────────────────────────────────────

class TestApplyElementChanges:
    def test_apply_from_wire_changes(self, tmp_path):
        runtime = make_runtime(tmp_path)
        result = asyncio.run(runtime.apply_element_changes(
            "src/Nav.tsx", "a:nth-of-type(1)", {"styles": {"color": "red"}}
        ))
        assert result.ok
        assert 'style={{ color: "red" }}' in (tmp_path / "src" / "Nav.tsx").read_text(encoding="utf-8")
        assert dict(links(runtime)[0].attributes["style"]) == {"color": "red"}

    def test_config_class_mode_replace(self, tmp_path):
        runtime = make_runtime(tmp_path, {"mutation": {"classMode": "replace"}})
        asyncio.run(runtime.apply_element_changes("src/Nav.tsx", "a:nth-of-type(1)", {"className": "underline"}))
        assert links(runtime)[0].attributes["className"] == "underline"
