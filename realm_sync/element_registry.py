"""
Element Registry — Extractor 產出元素的索引庫

主索引為 ElementID.hash，另有 by-file / by-component 次索引，讓
clear_file 只需 O(該檔元素數)。Registry 不做任何自動過期判斷：
檔案被外部修改後，唯一的清除方式就是呼叫 clear_file。
"""

from typing import Callable, Optional

from .logging_config import get_logger
from .models import ElementID, ElementInfo

logger = get_logger(__name__)


def _class_overlap(wanted: list, actual: list) -> float:
    if not wanted:
        return 1.0
    return len(set(wanted) & set(actual)) / len(wanted)


class ElementRegistry:
    def __init__(self):
        self._elements: dict[str, ElementInfo] = {}
        self._by_file: dict[str, set] = {}
        self._by_component: dict[str, set] = {}
        self._listeners: list = []

    # ─── 寫入 ─────────────────────────────────────────────────────────────

    def register(self, element: ElementInfo) -> None:
        """同一 ID 重複註冊時以新值取代（衝突策略在上一層處理）。"""
        key = element.hash
        previous = self._elements.get(key)
        if previous is not None:
            self._unindex(previous)
        self._elements[key] = element
        self._by_file.setdefault(element.source_file, set()).add(key)
        self._by_component.setdefault(element.element_id.component_name, set()).add(key)
        self._notify("registered", element)

    def register_many(self, elements) -> int:
        count = 0
        for element in elements:
            self.register(element)
            count += 1
        return count

    def unregister(self, element_id) -> bool:
        key = element_id.hash if isinstance(element_id, ElementID) else str(element_id)
        element = self._elements.pop(key, None)
        if element is None:
            return False
        self._unindex(element)
        return True

    def clear_file(self, path: str) -> int:
        """移除某檔案的全部元素，回傳移除數量。"""
        keys = self._by_file.pop(path, set())
        for key in keys:
            element = self._elements.pop(key, None)
            if element is not None:
                component_keys = self._by_component.get(element.element_id.component_name)
                if component_keys is not None:
                    component_keys.discard(key)
                    if not component_keys:
                        del self._by_component[element.element_id.component_name]
        if keys:
            logger.debug("registry.file_cleared", file=path, count=len(keys))
            self._notify("cleared", {"file": path, "count": len(keys)})
        return len(keys)

    def clear(self) -> None:
        self._elements.clear()
        self._by_file.clear()
        self._by_component.clear()
        self._notify("cleared", {"file": None, "count": 0})

    def _unindex(self, element: ElementInfo) -> None:
        key = element.hash
        file_keys = self._by_file.get(element.source_file)
        if file_keys is not None:
            file_keys.discard(key)
            if not file_keys:
                del self._by_file[element.source_file]
        component_keys = self._by_component.get(element.element_id.component_name)
        if component_keys is not None:
            component_keys.discard(key)
            if not component_keys:
                del self._by_component[element.element_id.component_name]

    # ─── 查詢 ─────────────────────────────────────────────────────────────

    def get(self, element_id) -> Optional[ElementInfo]:
        if isinstance(element_id, ElementID):
            return self._elements.get(element_id.hash)
        return self._elements.get(str(element_id))

    def get_by_hash(self, hash_value: str) -> Optional[ElementInfo]:
        return self._elements.get(hash_value)

    def all_for_file(self, path: str) -> list:
        """依原始碼位置排序，輸出穩定。"""
        elements = [self._elements[k] for k in self._by_file.get(path, ())]
        return sorted(elements, key=lambda e: (e.element_id.location.line, e.element_id.location.column))

    def get_by_component(self, component_name: str) -> list:
        elements = [self._elements[k] for k in self._by_component.get(component_name, ())]
        return sorted(elements, key=lambda e: (e.source_file, e.element_id.location.line))

    def files(self) -> list:
        return sorted(self._by_file)

    def find_by_position(self, path: str, line: int, column: int) -> Optional[ElementInfo]:
        """包含該位置的最內層元素。"""
        best = None
        for element in self.all_for_file(path):
            loc = element.element_id.location
            if not loc.contains(line, column):
                continue
            if best is None or (loc.line, loc.column) >= (
                best.element_id.location.line,
                best.element_id.location.column,
            ):
                best = element
        return best

    def find_by_selector(
        self,
        path: str,
        tag_name: Optional[str] = None,
        element_id: Optional[str] = None,
        classes: Optional[list] = None,
    ) -> list:
        """簡易比對：tag / id 完全相同，class 重疊率 ≥ 0.5。"""
        matches = []
        for element in self.all_for_file(path):
            if tag_name and element.tag_name.lower() != tag_name.lower():
                continue
            if element_id and element.element_id_attr() != element_id:
                continue
            if classes and _class_overlap(classes, element.class_list()) < 0.5:
                continue
            matches.append(element)
        return matches

    def stats(self) -> dict:
        return {
            "total": len(self._elements),
            "files": len(self._by_file),
            "components": len(self._by_component),
        }

    def __len__(self) -> int:
        return len(self._elements)

    def __contains__(self, element_id) -> bool:
        return self.get(element_id) is not None

    # ─── listeners ────────────────────────────────────────────────────────

    def add_listener(self, callback: Callable) -> Callable:
        self._listeners.append(callback)

        def remove():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return remove

    def _notify(self, action: str, payload) -> None:
        for callback in list(self._listeners):
            try:
                callback(action, payload)
            except Exception as e:
                logger.error("registry.listener_failed", action=action, error=str(e), exc_info=True)
