"""
Event Bus — 行程內 publish/subscribe

- 訂閱依事件類型與 '*' 萬用頻道索引
- emit 同步依註冊順序呼叫（先精確類型，再萬用）；emit_async 並行呼叫並等待全部完成
- 每個 handler 各自包在獨立的錯誤邊界內，例外只記 log，不影響其他 handler，也不回拋給 emitter
- 固定容量的歷史紀錄（診斷 / 重播用）與 per-type 計數
"""

import asyncio
import inspect
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional

from .logging_config import get_logger

logger = get_logger(__name__)

WILDCARD = "*"


@dataclass
class Subscription:
    id: str
    event_type: str
    handler: Callable
    source: Optional[str] = None
    once: bool = False

    def accepts(self, event) -> bool:
        return self.source is None or getattr(event, "source", None) == self.source


@dataclass
class DispatchReport:
    event_id: str
    delivered: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)


class Unsubscribe:
    """on() 的回傳值：呼叫即取消訂閱；.id 可交給 EventBus.off。"""

    def __init__(self, bus: "EventBus", subscription_id: str):
        self._bus = bus
        self.id = subscription_id

    def __call__(self) -> bool:
        return self._bus.off(self.id)


class EventBus:
    def __init__(self, history_size: int = 100):
        self._by_type: dict[str, list] = {}
        self._by_id: dict[str, Subscription] = {}
        self._ids = itertools.count(1)
        self._history: deque = deque(maxlen=max(1, history_size))
        self._counts_by_type: dict[str, int] = {}
        self._counts_by_source: dict[str, int] = {}
        self._total = 0
        self._tasks: set = set()

    # ─── 訂閱 ─────────────────────────────────────────────────────────────

    def on(self, event_type: str, handler: Callable, source: Optional[str] = None) -> Unsubscribe:
        return self._subscribe(event_type, handler, source, once=False)

    def once(self, event_type: str, handler: Callable, source: Optional[str] = None) -> Unsubscribe:
        return self._subscribe(event_type, handler, source, once=True)

    def _subscribe(self, event_type, handler, source, once) -> Unsubscribe:
        sub = Subscription(f"sub_{next(self._ids)}", event_type, handler, source, once)
        self._by_type.setdefault(event_type, []).append(sub)
        self._by_id[sub.id] = sub
        return Unsubscribe(self, sub.id)

    def off(self, subscription_id: str) -> bool:
        sub = self._by_id.pop(subscription_id, None)
        if sub is None:
            return False
        subs = self._by_type.get(sub.event_type, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._by_type.pop(sub.event_type, None)
        return True

    def off_all(self, event_type: Optional[str] = None) -> None:
        if event_type is None:
            self._by_type.clear()
            self._by_id.clear()
            return
        for sub in self._by_type.pop(event_type, []):
            self._by_id.pop(sub.id, None)

    def has_subscribers(self, event_type: str) -> bool:
        return bool(self._by_type.get(event_type)) or bool(self._by_type.get(WILDCARD))

    # ─── 發送 ─────────────────────────────────────────────────────────────

    def _matching(self, event) -> list:
        subs = list(self._by_type.get(event.type, []))
        if event.type != WILDCARD:
            subs += self._by_type.get(WILDCARD, [])
        matched = [s for s in subs if s.accepts(event)]
        for sub in matched:
            if sub.once:
                self.off(sub.id)
        return matched

    def _record(self, event) -> None:
        self._total += 1
        self._counts_by_type[event.type] = self._counts_by_type.get(event.type, 0) + 1
        source = getattr(event, "source", None)
        self._counts_by_source[source] = self._counts_by_source.get(source, 0) + 1
        self._history.append(event)

    def emit(self, event) -> DispatchReport:
        """同步派送；async handler 會被排進目前的 event loop。"""
        self._record(event)
        report = DispatchReport(event.id)
        for sub in self._matching(event):
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result, sub, event)
                report.delivered += 1
            except Exception as e:
                report.failed += 1
                report.errors.append(f"{sub.id}: {e}")
                logger.error("bus.handler_failed", subscription=sub.id, event_type=event.type, error=str(e), exc_info=True)
        return report

    async def emit_async(self, event) -> DispatchReport:
        """並行執行所有 handler 並等待完成；不保證順序。"""
        self._record(event)
        report = DispatchReport(event.id)
        subs = self._matching(event)
        outcomes = await asyncio.gather(*(self._run(sub, event) for sub in subs))
        for sub, error in zip(subs, outcomes):
            if error is None:
                report.delivered += 1
            else:
                report.failed += 1
                report.errors.append(f"{sub.id}: {error}")
        return report

    async def _run(self, sub: Subscription, event) -> Optional[str]:
        try:
            result = sub.handler(event)
            if inspect.isawaitable(result):
                await result
            return None
        except Exception as e:
            logger.error("bus.handler_failed", subscription=sub.id, event_type=event.type, error=str(e), exc_info=True)
            return str(e)

    def _schedule(self, awaitable, sub: Subscription, event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise RuntimeError("async handler 需要執行中的 event loop（請改用 emit_async）")
        task = loop.create_task(self._guard(awaitable, sub, event))
        # loop 只保留 weak reference，完成前由 bus 持有
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, awaitable, sub: Subscription, event) -> None:
        try:
            await awaitable
        except Exception as e:
            logger.error("bus.handler_failed", subscription=sub.id, event_type=event.type, error=str(e), exc_info=True)

    def pending_tasks(self) -> list:
        return list(self._tasks)

    def close(self) -> None:
        """取消 emit() 排進 loop 但尚未完成的 async handler。"""
        for task in list(self._tasks):
            task.cancel()

    # ─── 歷史 / 統計 ──────────────────────────────────────────────────────

    def history(self, event_type: Optional[str] = None, source: Optional[str] = None, limit: Optional[int] = None) -> list:
        events = [
            e for e in self._history
            if (event_type is None or e.type == event_type) and (source is None or e.source == source)
        ]
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def clear_history(self) -> None:
        self._history.clear()

    def stats(self) -> dict:
        return {
            "total": self._total,
            "byType": dict(self._counts_by_type),
            "bySource": dict(self._counts_by_source),
            "subscribers": len(self._by_id),
            "historySize": len(self._history),
        }
