"""
tree-sitter 共用工具：JSX/TSX 解析與節點查詢

Extractor 與 Mutation Engine 共用同一套 parser，確保兩邊對
「哪個節點是第幾個 div」的認知一致。
"""

from functools import lru_cache
from pathlib import PurePosixPath
from typing import Optional

from tree_sitter_language_pack import get_parser

# 副檔名 → tree-sitter 語言（.js/.jsx 用 tsx grammar 以支援 JSX）
_LANGUAGE_BY_SUFFIX = {
    ".tsx": "tsx",
    ".jsx": "tsx",
    ".js": "tsx",
    ".mjs": "tsx",
    ".ts": "typescript",
}

JSX_ELEMENT_TYPES = ("jsx_element", "jsx_self_closing_element")
# 在 DOM 上不產生節點的運算式包裝
_TRANSPARENT_WRAPPERS = (
    "jsx_expression",
    "parenthesized_expression",
    "binary_expression",
    "ternary_expression",
)
# 直接文字子節點（不含巢狀元素）
TEXT_CHILD_TYPES = ("jsx_text", "html_character_reference")


def language_for(file_path: Optional[str]) -> Optional[str]:
    if not file_path:
        return "tsx"
    return _LANGUAGE_BY_SUFFIX.get(PurePosixPath(str(file_path).replace("\\", "/")).suffix.lower())


@lru_cache(maxsize=None)
def _parser(language: str):
    return get_parser(language)


def parse(source: bytes, language: str = "tsx"):
    return _parser(language).parse(source)


def collect_syntax_errors(node, limit: int = 50) -> list:
    """回傳 [(kind, line, column)]，kind 為 'syntax'（ERROR）或 'missing'。"""
    found = []
    stack = [node]
    while stack and len(found) < limit:
        current = stack.pop()
        if current.type == "ERROR":
            found.append(("syntax", current.start_point[0] + 1, current.start_point[1]))
            continue
        if current.is_missing:
            found.append(("missing", current.start_point[0] + 1, current.start_point[1]))
            continue
        if current.has_error:
            stack.extend(reversed(current.children))
    return found


def node_text(node, source: bytes) -> str:
    return source[node.start_byte:node.end_byte].decode("utf-8", errors="replace")


def opening_of(element):
    """jsx_element → jsx_opening_element；self-closing 元素自己就是開頭。"""
    if element.type == "jsx_self_closing_element":
        return element
    return element.child_by_field_name("open_tag") or _first_child_of_type(element, "jsx_opening_element")


def closing_of(element):
    if element.type != "jsx_element":
        return None
    return element.child_by_field_name("close_tag") or _first_child_of_type(element, "jsx_closing_element")


def _first_child_of_type(node, node_type: str):
    for child in node.children:
        if child.type == node_type:
            return child
    return None


def name_node(element):
    opening = opening_of(element)
    if opening is None:
        return None
    return opening.child_by_field_name("name")


def tag_name(element, source: bytes) -> str:
    """Member 名稱攤平為 'A.B'，namespace 名稱保留 'ns:name'；Fragment 回傳空字串。"""
    name = name_node(element)
    if name is None:
        return ""
    return "".join(node_text(name, source).split())


def is_plain_tag(element) -> bool:
    """只有單純識別字的 tag 參與 selector 比對（排除 Member / namespace）。"""
    name = name_node(element)
    return name is not None and name.type in ("identifier", "jsx_identifier")


def attribute_nodes(element) -> list:
    opening = opening_of(element)
    if opening is None:
        return []
    return [child for child in opening.named_children if child.type == "jsx_attribute"]


def attribute_name(attr, source: bytes) -> str:
    first = attr.named_children[0] if attr.named_children else None
    return node_text(first, source) if first is not None else ""


def attribute_value(attr):
    """屬性值節點；布林屬性（`<input disabled />`）回傳 None。"""
    named = attr.named_children
    return named[1] if len(named) > 1 else None


def find_attribute(element, name: str, source: bytes):
    for attr in attribute_nodes(element):
        if attribute_name(attr, source) == name:
            return attr
    return None


def unquote(node, source: bytes) -> str:
    text = node_text(node, source)
    if len(text) >= 2 and text[0] in "\"'`" and text[-1] == text[0]:
        return text[1:-1]
    return text


def expression_of(jsx_expression):
    """`{ expr }` 的內層運算式（忽略註解）。"""
    for child in jsx_expression.named_children:
        if child.type != "comment":
            return child
    return None


def is_plain_template(node) -> bool:
    """沒有 ${} 插值的 template string。"""
    return node.type == "template_string" and not any(
        c.type == "template_substitution" for c in node.named_children
    )


def literal_string(node, source: bytes) -> Optional[str]:
    """字串字面值（含 `{"..."}` 與無插值 template），其他回傳 None。"""
    if node is None:
        return None
    if node.type == "jsx_expression":
        node = expression_of(node)
        if node is None:
            return None
    if node.type == "string" or is_plain_template(node):
        return unquote(node, source)
    return None


def child_elements(element) -> list:
    if element.type != "jsx_element":
        return []
    return [c for c in element.named_children if c.type in JSX_ELEMENT_TYPES]


def iter_jsx_elements(root):
    """前序走訪所有 JSX 元素（文件順序），使用顯式 stack 避免遞迴過深。"""
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type in JSX_ELEMENT_TYPES:
            yield node
        stack.extend(reversed(node.children))


def element_parent(element):
    """計算 nth-of-type 用的「父節點」：穿過 `{cond && <x/>}` 這類包裝找到外層 JSX 元素。"""
    parent = element.parent
    while parent is not None and parent.type in _TRANSPARENT_WRAPPERS:
        if parent.parent is None:
            break
        parent = parent.parent
    if parent is not None and parent.type in _TRANSPARENT_WRAPPERS:
        return element.parent
    return parent


def node_key(node) -> tuple:
    return (node.start_byte, node.end_byte, node.type) if node is not None else (None, None, None)
