"""
資料模型 — ElementID / ElementInfo / 解析錯誤 / 邊界回傳型別

ElementID 由 (檔案, 元件, AST 路徑, 節點指紋) 決定，不含任何隨機或時間成分：
同一份未變動的檔案重新解析，必得到相同的 ID。
"""

import hashlib
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Mapping, Optional

# Failure.kind 的封閉集合
FAILURE_KINDS = ("parse", "match", "validation", "conflict", "io", "stale", "invalid", "timeout")


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_fingerprint(tag_name: str, id_literal: Optional[str] = None) -> str:
    """節點指紋：只取 tag 與 id 字面值，樣式 / class / 文字變更後 ID 不變。"""
    return _sha256(f"{tag_name}|{id_literal or ''}")[:8]


def compute_hash(source_file: str, component_name: str, ast_path: str, fingerprint: str) -> str:
    return _sha256(f"{source_file}:{component_name}:{ast_path}:{fingerprint}")[:12]


@dataclass(frozen=True)
class SourceLocation:
    """line 為 1-based，column 為 0-based（與 tree-sitter 的 row 差 1）。"""

    line: int
    column: int
    end_line: int = 0
    end_column: int = 0

    def contains(self, line: int, column: int) -> bool:
        if line < self.line or line > self.end_line:
            return False
        if line == self.line and column < self.column:
            return False
        if line == self.end_line and column > self.end_column:
            return False
        return True


@dataclass(frozen=True)
class ElementID:
    hash: str
    source_file: str
    component_name: str
    ast_path: str
    fingerprint: str
    location: SourceLocation = field(default_factory=lambda: SourceLocation(0, 0), compare=False)
    version: int = field(default=0, compare=False)

    @classmethod
    def create(
        cls,
        source_file: str,
        component_name: str,
        ast_path: str,
        fingerprint: str,
        location: Optional[SourceLocation] = None,
        version: int = 0,
    ) -> "ElementID":
        return cls(
            hash=compute_hash(source_file, component_name, ast_path, fingerprint),
            source_file=source_file,
            component_name=component_name,
            ast_path=ast_path,
            fingerprint=fingerprint,
            location=location or SourceLocation(0, 0),
            version=version,
        )

    def with_version(self, version: int) -> "ElementID":
        return replace(self, version=version)

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "sourceFile": self.source_file,
            "componentName": self.component_name,
            "astPath": self.ast_path,
            "fingerprint": self.fingerprint,
            "line": self.location.line,
            "column": self.location.column,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ElementID":
        """由 wire 格式還原；缺少 hash 以外的欄位時用空字串補上。"""
        if not isinstance(data, dict) or not data.get("hash"):
            raise ValueError("realmId 需要 hash 欄位")
        return cls(
            hash=str(data["hash"]),
            source_file=str(data.get("sourceFile", "")),
            component_name=str(data.get("componentName", "")),
            ast_path=str(data.get("astPath", "")),
            fingerprint=str(data.get("fingerprint", "")),
            location=SourceLocation(int(data.get("line", 0) or 0), int(data.get("column", 0) or 0)),
            version=int(data.get("version", 0) or 0),
        )


@dataclass(frozen=True)
class FrameworkMeta:
    framework: str = "unknown"  # react | vue | svelte | html | unknown
    styling: str = "css"  # tailwind | css-modules | styled-components | inline | css
    is_component: bool = False


@dataclass(frozen=True)
class ElementInfo:
    """Extractor 產出的唯讀快照；檔案重新擷取時整批取代。"""

    element_id: ElementID
    tag_name: str
    attributes: Mapping[str, Any]
    text_content: str = ""
    full_text: str = ""
    has_nested_elements: bool = False
    framework: FrameworkMeta = field(default_factory=FrameworkMeta)
    parent_hash: Optional[str] = None
    child_hashes: tuple = ()
    nth_of_type: int = 1

    def __post_init__(self):
        if not isinstance(self.attributes, MappingProxyType):
            object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def hash(self) -> str:
        return self.element_id.hash

    @property
    def source_file(self) -> str:
        return self.element_id.source_file

    def class_list(self) -> list:
        value = self.attributes.get("className", self.attributes.get("class"))
        if not isinstance(value, str) or value.startswith("{"):
            return []
        return value.split()

    def element_id_attr(self) -> Optional[str]:
        value = self.attributes.get("id")
        if isinstance(value, str) and not value.startswith("{"):
            return value
        return None

    def to_dict(self) -> dict:
        attrs = {}
        for key, value in self.attributes.items():
            attrs[key] = dict(value) if isinstance(value, Mapping) else value
        return {
            "realmId": self.element_id.to_dict(),
            "tagName": self.tag_name,
            "attributes": attrs,
            "textContent": self.text_content,
            "fullText": self.full_text,
            "hasNestedElements": self.has_nested_elements,
            "framework": {
                "framework": self.framework.framework,
                "styling": self.framework.styling,
                "isComponent": self.framework.is_component,
            },
            "parentHash": self.parent_hash,
            "children": list(self.child_hashes),
            "nthOfType": self.nth_of_type,
        }


@dataclass(frozen=True)
class ParseError:
    message: str
    line: int = 0
    column: int = 0
    kind: str = "syntax"  # syntax | missing | io | unsupported


@dataclass
class ExtractionResult:
    elements: list = field(default_factory=list)
    errors: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class Failure:
    kind: str
    message: str
    detail: Optional[dict] = None

    def __str__(self) -> str:
        return f"[{self.kind}] {self.message}"


@dataclass(frozen=True)
class Result:
    """邊界方法的回傳值：成功帶 value，失敗帶 failure，不往外丟例外。"""

    value: Any = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def fail(cls, kind: str, message: str, **detail) -> "Result":
        return cls(failure=Failure(kind, message, detail or None))
