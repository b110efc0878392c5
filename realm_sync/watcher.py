"""
檔案監看 — watchdog 事件 → FILE_CHANGED / FILE_CREATED / FILE_DELETED

watchdog 在自己的執行緒回呼；這裡只做過濾與 per-path 防抖，
真正的處理透過 run_coroutine_threadsafe 丟回 event loop 執行緒。
"""

import asyncio
import time
from typing import Awaitable, Callable

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from . import events as ev
from .logging_config import get_logger

logger = get_logger(__name__)

_WATCHED_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx", ".mjs", ".css", ".scss", ".sass", ".html")
_IGNORED_PARTS = ("node_modules", "/.git/", "/.next/", "/dist/", "/build/")


class ChangeHandler(FileSystemEventHandler):
    """檔案變更事件處理器，帶 per-path debounce 防抖。

    publish(event_type, src_path) 是 coroutine function，會在 loop 執行緒上執行。
    """

    def __init__(self, publish: Callable[[str, str], Awaitable], loop: asyncio.AbstractEventLoop, debounce: float = 0.2):
        self.publish = publish
        self.loop = loop
        self.debounce_seconds = debounce
        self.last_trigger: dict[str, float] = {}

    def _should_handle(self, event) -> bool:
        if event.is_directory:
            return False
        path = str(event.src_path).replace("\\", "/")
        if not path.endswith(_WATCHED_EXTENSIONS):
            return False
        if any(part in path for part in _IGNORED_PARTS):
            return False
        # 原子寫入用的暫存檔
        name = path.rsplit("/", 1)[-1]
        return not (name.startswith(".") and name.endswith(".tmp"))

    def _dispatch(self, event_type: str, src_path: str) -> None:
        current_time = time.time()
        last = self.last_trigger.get(src_path, 0.0)
        if current_time - last < self.debounce_seconds:
            return
        self.last_trigger[src_path] = current_time
        logger.debug("watch.event", event_type=event_type, file=src_path)
        asyncio.run_coroutine_threadsafe(self.publish(event_type, src_path), self.loop)

    def on_modified(self, event):
        if self._should_handle(event):
            self._dispatch(ev.FILE_CHANGED, str(event.src_path))

    def on_created(self, event):
        if self._should_handle(event):
            self._dispatch(ev.FILE_CREATED, str(event.src_path))

    def on_deleted(self, event):
        if self._should_handle(event):
            self.last_trigger.pop(str(event.src_path), None)
            self._dispatch(ev.FILE_DELETED, str(event.src_path))

    def on_moved(self, event):
        # os.replace 原子寫入在部分平台上以 moved 事件出現
        dest = getattr(event, "dest_path", "")
        if not event.is_directory and str(dest).endswith(_WATCHED_EXTENSIONS):
            self.last_trigger.pop(str(dest), None)
            self._dispatch(ev.FILE_CHANGED, str(dest))


class FileWatcher:
    """包裝 watchdog Observer 的啟停。"""

    def __init__(self, root: str, handler: ChangeHandler):
        self.root = root
        self.handler = handler
        self._observer = None

    def start(self) -> None:
        if self._observer is not None:
            return
        self._observer = Observer()
        self._observer.schedule(self.handler, path=self.root, recursive=True)
        self._observer.start()
        logger.info("watch.started", root=self.root)

    def stop(self) -> None:
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("watch.stopped", root=self.root)

    @property
    def running(self) -> bool:
        return self._observer is not None
