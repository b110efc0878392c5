"""
Event Bus 單元測試：派送順序、萬用頻道、來源過濾、錯誤隔離與歷史紀錄。
"""
import asyncio

import pytest

from realm_sync import events as ev
from realm_sync.event_bus import WILDCARD, EventBus
from realm_sync.models import ElementID


ELEMENT = ElementID.create("src/App.tsx", "App", "program", "abcd1234")


def selected(source=ev.SOURCE_DOM):
    return ev.SelectionEvent(ev.ELEMENT_SELECTED, ELEMENT, source=source)


def file_changed(path="src/App.tsx"):
    return ev.FileEvent(ev.FILE_CHANGED, path)


# ─── emit ────────────────────────────────────────────────────────────────────

class TestEmit:
    def setup_method(self):
        self.bus = EventBus()
        self.calls = []

    def test_handlers_called_in_registration_order(self):
        self.bus.on(ev.ELEMENT_SELECTED, lambda e: self.calls.append("first"))
        self.bus.on(ev.ELEMENT_SELECTED, lambda e: self.calls.append("second"))
        report = self.bus.emit(selected())
        assert self.calls == ["first", "second"]
        assert report.delivered == 2

    def test_wildcard_after_exact(self):
        self.bus.on(WILDCARD, lambda e: self.calls.append("wild"))
        self.bus.on(ev.ELEMENT_SELECTED, lambda e: self.calls.append("exact"))
        self.bus.emit(selected())
        self.bus.emit(file_changed())
        assert self.calls == ["exact", "wild", "wild"]

    def test_other_types_not_delivered(self):
        self.bus.on(ev.FILE_CHANGED, lambda e: self.calls.append(e))
        self.bus.emit(selected())
        assert self.calls == []

    def test_source_filter(self):
        self.bus.on(ev.ELEMENT_SELECTED, lambda e: self.calls.append(e.source), source=ev.SOURCE_PANEL)
        self.bus.emit(selected(ev.SOURCE_DOM))
        self.bus.emit(selected(ev.SOURCE_PANEL))
        assert self.calls == [ev.SOURCE_PANEL]

    def test_failing_handler_isolated(self):
        def boom(event):
            raise ValueError("handler broke")

        self.bus.on(ev.ELEMENT_SELECTED, boom)
        self.bus.on(ev.ELEMENT_SELECTED, lambda e: self.calls.append("after"))
        report = self.bus.emit(selected())
        assert self.calls == ["after"]
        assert report.failed == 1
        assert report.delivered == 1
        assert "handler broke" in report.errors[0]

    def test_async_handler_without_loop_counts_as_failure(self):
        async def handler(event):
            self.calls.append(event)

        self.bus.on(ev.ELEMENT_SELECTED, handler)
        report = self.bus.emit(selected())
        assert report.failed == 1
        assert self.calls == []

    def test_async_handler_scheduled_on_running_loop(self):
        async def handler(event):
            self.calls.append(event.type)

        async def main():
            self.bus.on(ev.ELEMENT_SELECTED, handler)
            self.bus.emit(selected())
            await asyncio.sleep(0)
            await asyncio.sleep(0)

        asyncio.run(main())
        assert self.calls == [ev.ELEMENT_SELECTED]

    def test_scheduled_handler_released_when_done(self):
        async def handler(event):
            self.calls.append(event.type)

        async def main():
            self.bus.on(ev.ELEMENT_SELECTED, handler)
            self.bus.emit(selected())
            assert len(self.bus.pending_tasks()) == 1
            await asyncio.sleep(0.01)
            return self.bus.pending_tasks()

        assert asyncio.run(main()) == []
        assert self.calls == [ev.ELEMENT_SELECTED]

    def test_close_cancels_scheduled_handlers(self):
        async def handler(event):
            await asyncio.sleep(10)

        async def main():
            self.bus.on(ev.ELEMENT_SELECTED, handler)
            self.bus.emit(selected())
            tasks = self.bus.pending_tasks()
            self.bus.close()
            await asyncio.gather(*tasks, return_exceptions=True)
            return tasks

        tasks = asyncio.run(main())
        assert len(tasks) == 1
        assert tasks[0].cancelled()


# ─── 訂閱管理 ────────────────────────────────────────────────────────────────

class TestSubscriptions:
    def setup_method(self):
        self.bus = EventBus()
        self.calls = []

    def test_unsubscribe_callable(self):
        unsubscribe = self.bus.on(ev.ELEMENT_SELECTED, self.calls.append)
        assert unsubscribe() is True
        assert unsubscribe() is False
        self.bus.emit(selected())
        assert self.calls == []

    def test_off_by_id(self):
        unsubscribe = self.bus.on(ev.ELEMENT_SELECTED, self.calls.append)
        assert self.bus.off(unsubscribe.id) is True
        assert not self.bus.has_subscribers(ev.ELEMENT_SELECTED)

    def test_once(self):
        self.bus.once(ev.ELEMENT_SELECTED, self.calls.append)
        self.bus.emit(selected())
        self.bus.emit(selected())
        assert len(self.calls) == 1

    def test_off_all_for_type(self):
        self.bus.on(ev.ELEMENT_SELECTED, self.calls.append)
        self.bus.on(ev.FILE_CHANGED, self.calls.append)
        self.bus.off_all(ev.ELEMENT_SELECTED)
        self.bus.emit(selected())
        self.bus.emit(file_changed())
        assert [e.type for e in self.calls] == [ev.FILE_CHANGED]
        self.bus.off_all()
        assert self.bus.stats()["subscribers"] == 0


# ─── emit_async ──────────────────────────────────────────────────────────────

class TestEmitAsync:
    def test_awaits_all_handlers(self):
        bus = EventBus()
        calls = []

        async def slow(event):
            await asyncio.sleep(0.01)
            calls.append("slow")

        bus.on(ev.FILE_CHANGED, slow)
        bus.on(ev.FILE_CHANGED, lambda e: calls.append("sync"))
        report = asyncio.run(bus.emit_async(file_changed()))
        assert sorted(calls) == ["slow", "sync"]
        assert report.delivered == 2

    def test_async_failure_reported(self):
        bus = EventBus()

        async def boom(event):
            raise RuntimeError("async broke")

        bus.on(ev.FILE_CHANGED, boom)
        report = asyncio.run(bus.emit_async(file_changed()))
        assert report.failed == 1
        assert "async broke" in report.errors[0]


# ─── 歷史 / 統計 ─────────────────────────────────────────────────────────────

class TestHistory:
    def test_history_is_bounded(self):
        bus = EventBus(history_size=3)
        events = [selected() for _ in range(5)]
        for event in events:
            bus.emit(event)
        assert bus.history() == events[-3:]
        assert bus.stats()["total"] == 5
        assert bus.stats()["historySize"] == 3

    def test_history_filters(self):
        bus = EventBus()
        bus.emit(selected(ev.SOURCE_DOM))
        bus.emit(selected(ev.SOURCE_PANEL))
        bus.emit(file_changed())
        assert len(bus.history(event_type=ev.ELEMENT_SELECTED)) == 2
        assert len(bus.history(source=ev.SOURCE_PANEL)) == 1
        assert bus.history(limit=1)[0].type == ev.FILE_CHANGED
        bus.clear_history()
        assert bus.history() == []

    def test_stats_counts(self):
        bus = EventBus()
        bus.emit(selected())
        bus.emit(file_changed())
        stats = bus.stats()
        assert stats["byType"] == {ev.ELEMENT_SELECTED: 1, ev.FILE_CHANGED: 1}
        assert stats["bySource"] == {ev.SOURCE_DOM: 1, ev.SOURCE_FILE_WATCHER: 1}
