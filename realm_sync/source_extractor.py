"""
Source Extractor — 把 JSX/TSX 原始碼解析成可定位的 UI 元素清單

走訪使用顯式 stack（enter / exit 兩階段），同時維護「目前所在元件」
與「目前所在 JSX 元素」兩個 stack；每個元素的 ElementID 只由檔案、元件、
AST 路徑與節點指紋決定，重複擷取同一份檔案結果完全相同。
"""

import os
from dataclasses import replace
from pathlib import Path, PurePosixPath
from typing import Optional

from . import jsx_parser as jp
from .framework_detector import FrameworkDetector, RegexFrameworkDetector
from .logging_config import get_logger
from .models import (
    ElementID,
    ElementInfo,
    ExtractionResult,
    ParseError,
    SourceLocation,
    compute_fingerprint,
)

logger = get_logger(__name__)

DEFAULT_EXTENSIONS = (".tsx", ".jsx", ".js", ".ts")
DEFAULT_IGNORE = ("node_modules", ".next", "dist", "build", ".git", "__pycache__", "coverage")

_FUNCTION_VALUES = ("arrow_function", "function_expression", "function")
_SCOPE_DECLARATIONS = ("function_declaration", "generator_function_declaration", "class_declaration")

_EXIT = object()


def relative_source_path(path, root=None) -> str:
    """統一成相對於工作區的 POSIX 路徑；不在 root 底下則保留原樣。"""
    p = Path(path)
    if root is not None and p.is_absolute():
        try:
            p = p.resolve().relative_to(Path(root).resolve())
        except ValueError:
            pass
    return PurePosixPath(*p.parts).as_posix() if p.parts else str(path)


def _default_component(file_path: str) -> str:
    stem = PurePosixPath(file_path).name.split(".")[0]
    return stem if stem[:1].isupper() else "anonymous"


def _scope_name(node, source: bytes) -> Optional[str]:
    """若節點開啟新的具名元件 scope，回傳名稱。"""
    if node.type in _SCOPE_DECLARATIONS:
        name = node.child_by_field_name("name")
        return jp.node_text(name, source) if name is not None else None
    if node.type in ("variable_declarator", "assignment_expression"):
        target = node.child_by_field_name("name") or node.child_by_field_name("left")
        value = node.child_by_field_name("value") or node.child_by_field_name("right")
        if target is None or value is None or target.type not in ("identifier", "member_expression"):
            return None
        if value.type in _FUNCTION_VALUES:
            return jp.node_text(target, source).split(".")[-1]
        # memo(() => ...) / forwardRef(function () {...})
        if value.type == "call_expression":
            args = value.child_by_field_name("arguments")
            if args is not None and any(a.type in _FUNCTION_VALUES for a in args.named_children):
                return jp.node_text(target, source).split(".")[-1]
    return None


def _number(text: str):
    try:
        return int(text)
    except ValueError:
        try:
            return float(text)
        except ValueError:
            return None


def _style_map(obj, source: bytes) -> Optional[dict]:
    """全部是字串 / 數字值的物件字面值才視為 inline style map。"""
    styles = {}
    for prop in obj.named_children:
        if prop.type == "comment":
            continue
        if prop.type != "pair":
            return None
        key_node = prop.child_by_field_name("key")
        value_node = prop.child_by_field_name("value")
        if key_node is None or value_node is None:
            return None
        if key_node.type in ("string", "number"):
            key = jp.unquote(key_node, source)
        elif key_node.type == "property_identifier":
            key = jp.node_text(key_node, source)
        else:
            return None
        if value_node.type == "string" or jp.is_plain_template(value_node):
            styles[key] = jp.unquote(value_node, source)
        elif value_node.type in ("number", "unary_expression"):
            number = _number(jp.node_text(value_node, source).replace(" ", ""))
            if number is None:
                return None
            styles[key] = number
        else:
            return None
    return styles


def _attribute_value(value, source: bytes):
    if value is None:
        return True
    literal = jp.literal_string(value, source)
    if literal is not None:
        return literal
    if value.type == "jsx_expression":
        inner = jp.expression_of(value)
        if inner is not None and inner.type == "object":
            styles = _style_map(inner, source)
            if styles is not None:
                return styles
        if inner is not None and inner.type == "number":
            number = _number(jp.node_text(inner, source))
            if number is not None:
                return number
        if inner is not None:
            return "{" + jp.node_text(inner, source) + "}"
    # 其他（巢狀 JSX 等）保留原文字，避免資訊遺失
    return jp.node_text(value, source)


def extract_attributes(element, source: bytes) -> dict:
    attrs = {}
    opening = jp.opening_of(element)
    if opening is None:
        return attrs
    for child in opening.named_children:
        if child.type == "jsx_attribute":
            name = "".join(jp.attribute_name(child, source).split())
            attrs[name] = _attribute_value(jp.attribute_value(child), source)
        elif child.type == "jsx_expression":
            # {...props}
            attrs[jp.node_text(child, source)] = True
    return attrs


def _text_piece(node, source: bytes) -> Optional[str]:
    if node.type in jp.TEXT_CHILD_TYPES:
        text = " ".join(jp.node_text(node, source).split())
        return text or None
    if node.type == "jsx_expression":
        literal = jp.literal_string(node, source)
        if literal is not None and literal.strip():
            return literal.strip()
    return None


def direct_text(element, source: bytes) -> str:
    """只取直接子層的文字與字串運算式，巢狀元素的文字不算。"""
    if element.type != "jsx_element":
        return ""
    pieces = [_text_piece(child, source) for child in element.named_children]
    return " ".join(p for p in pieces if p)


def full_text(element, source: bytes) -> str:
    if element.type != "jsx_element":
        return ""
    pieces = []
    stack = list(reversed(element.named_children))
    while stack:
        node = stack.pop()
        piece = _text_piece(node, source)
        if piece:
            pieces.append(piece)
        elif node.type in jp.JSX_ELEMENT_TYPES:
            stack.extend(reversed(node.named_children))
    return " ".join(pieces)


def has_nested_elements(element) -> bool:
    """只看 children（含 `{cond && <x/>}` 這類運算式）；屬性值裡的 JSX 不算。"""
    if element.type != "jsx_element":
        return False
    if jp.child_elements(element):
        return True
    return any(
        next(jp.iter_jsx_elements(child), None) is not None
        for child in element.named_children
        if child.type == "jsx_expression"
    )


class SourceExtractor:
    """解析單一檔案或整個目錄；結果是否註冊由呼叫端決定。"""

    def __init__(self, detector: Optional[FrameworkDetector] = None, root: Optional[str] = None):
        self.detector = detector or RegexFrameworkDetector()
        self.root = root

    # ─── 對外 API ─────────────────────────────────────────────────────────

    def extract(self, content: str, file_path: str) -> ExtractionResult:
        """回傳 (elements, errors)；任何失敗都以 ParseError 表示，不丟例外。"""
        rel_path = relative_source_path(file_path, self.root)
        language = jp.language_for(rel_path)
        if language is None:
            return ExtractionResult([], [ParseError(f"不支援的檔案類型: {rel_path}", kind="unsupported")])
        try:
            source = content.encode("utf-8")
            tree = jp.parse(source, language)
        except Exception as e:  # 解析器邊界：單一壞檔不得中止批次掃描
            logger.error("extract.parse_failed", file=rel_path, error=str(e), exc_info=True)
            return ExtractionResult([], [ParseError(f"解析失敗: {e}")])

        errors = [
            ParseError("語法錯誤" if kind == "syntax" else "缺少語法節點", line, column, kind)
            for kind, line, column in jp.collect_syntax_errors(tree.root_node)
        ]
        framework = self.detector.detect(content, rel_path)
        elements = self._walk(tree.root_node, source, rel_path, framework)
        logger.debug("extract.done", file=rel_path, elements=len(elements), errors=len(errors))
        return ExtractionResult(elements, errors)

    def extract_file(self, path) -> ExtractionResult:
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            return ExtractionResult([], [ParseError(f"無法讀取 {path}: {e}", kind="io")])
        return self.extract(content, str(path))

    def extract_directory(
        self,
        root=None,
        extensions=DEFAULT_EXTENSIONS,
        ignore=DEFAULT_IGNORE,
    ) -> dict:
        """掃描目錄，回傳 { 相對路徑: ExtractionResult }。"""
        root = Path(root or self.root or ".")
        results = {}
        ignore = set(ignore or ())
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in ignore)
            for filename in sorted(filenames):
                if not filename.endswith(tuple(extensions)) or filename.endswith(".d.ts"):
                    continue
                path = Path(dirpath) / filename
                result = self.extract_file(path)
                results[relative_source_path(path, self.root)] = result
                if result.errors:
                    logger.warning("extract.file_errors", file=str(path), errors=len(result.errors))
        return results

    # ─── 走訪 ─────────────────────────────────────────────────────────────

    def _walk(self, root, source: bytes, file_path: str, framework) -> list:
        elements = []
        component_stack = []
        element_stack = []
        occurrences: dict = {}
        default_component = _default_component(file_path)

        stack = [(root, root.type)]
        while stack:
            node, ast_path = stack.pop()
            if node is _EXIT:
                # exit 標記的第二欄是要 pop 的 stack
                ast_path.pop()
                continue

            scope = _scope_name(node, source)
            if scope:
                component_stack.append(scope)
                stack.append((_EXIT, component_stack))

            if node.type in jp.JSX_ELEMENT_TYPES and jp.name_node(node) is not None:
                info = self._build_info(
                    node,
                    source,
                    file_path,
                    component_stack[-1] if component_stack else default_component,
                    ast_path,
                    framework,
                    element_stack[-1] if element_stack else None,
                    occurrences,
                )
                elements.append(info)
                element_stack.append(info.hash)
                stack.append((_EXIT, element_stack))

            children = node.named_children
            for index in range(len(children) - 1, -1, -1):
                child = children[index]
                stack.append((child, f"{ast_path} > {child.type}[{index}]"))

        return self._link_children(elements)

    def _build_info(self, node, source, file_path, component, ast_path, framework, parent_hash, occurrences):
        tag = jp.tag_name(node, source)
        attrs = extract_attributes(node, source)
        id_attr = attrs.get("id")
        fingerprint = compute_fingerprint(tag, id_attr if isinstance(id_attr, str) else None)

        parent_key = jp.node_key(jp.element_parent(node))
        counter_key = (parent_key, tag.lower())
        occurrences[counter_key] = occurrences.get(counter_key, 0) + 1

        start, end = node.start_point, node.end_point
        location = SourceLocation(start[0] + 1, start[1], end[0] + 1, end[1])
        element_id = ElementID.create(file_path, component, ast_path, fingerprint, location)
        return ElementInfo(
            element_id=element_id,
            tag_name=tag,
            attributes=attrs,
            text_content=direct_text(node, source),
            full_text=full_text(node, source),
            has_nested_elements=has_nested_elements(node),
            framework=framework,
            parent_hash=parent_hash,
            nth_of_type=occurrences[counter_key],
        )

    @staticmethod
    def _link_children(elements: list) -> list:
        children: dict = {}
        for info in elements:
            if info.parent_hash:
                children.setdefault(info.parent_hash, []).append(info.hash)
        linked = []
        for info in elements:
            kids = children.get(info.hash)
            if kids:
                info = replace(info, child_hashes=tuple(kids))
            linked.append(info)
        return linked
