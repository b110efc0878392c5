"""
Code Mutation Engine — 依 selector 把樣式 / class / 文字變更寫回原始碼

依副檔名選策略：
  - .tsx/.jsx/.js/.ts：tree-sitter 語法樹定位節點，以 byte 區段替換，其餘位元組原封不動
  - .css/.scss/.sass ：selector 區塊文字改寫
  - .html            ：id / class 屬性文字改寫

回傳 None（apply_changes）代表「找不到可改的東西，放棄，不要動檔案」。
任何比對失敗、輸入無法解析或改寫後無法重新解析，都不會產生半套結果。
"""

import json
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Optional

from . import jsx_parser as jp
from .class_merge import ClassMatchPolicy, merge_classes
from .logging_config import get_logger
from .models import Failure
from .selector import ParsedSelector, parse_selector

logger = get_logger(__name__)

CSS_SUFFIXES = (".css", ".scss", ".sass", ".less")
HTML_SUFFIXES = (".html", ".htm")
_IDENTIFIER = re.compile(r"^[A-Za-z_$][\w$]*$")
_JSX_SPECIAL = set("{}<>")


@dataclass
class ChangeSet:
    styles: Optional[dict] = None
    text: Optional[str] = None
    class_name: Optional[str] = None
    classes_to_add: Optional[list] = None
    class_mode: Optional[str] = None  # merge | replace；None 時用引擎預設

    @classmethod
    def from_wire(cls, data: dict) -> "ChangeSet":
        data = data or {}
        text = data.get("text", data.get("textContent"))
        return cls(
            styles=dict(data["styles"]) if isinstance(data.get("styles"), dict) else None,
            text=str(text) if text is not None else None,
            class_name=data.get("className"),
            classes_to_add=list(data.get("tailwindClassesToAdd") or []) or None,
            class_mode=data.get("classMode"),
        )

    def is_empty(self) -> bool:
        return not self.styles and self.text is None and self.class_name is None and not self.classes_to_add

    def describe(self) -> list:
        lines = []
        for key, value in (self.styles or {}).items():
            lines.append(f"style {key}: {value}")
        if self.class_name is not None:
            lines.append(f"className → {self.class_name}")
        if self.classes_to_add:
            lines.append(f"class += {' '.join(self.classes_to_add)}")
        if self.text is not None:
            lines.append(f"text → {self.text!r}")
        return lines


@dataclass
class MutationResult:
    content: Optional[str] = None
    failure: Optional[Failure] = None
    tag_name: Optional[str] = None
    line: Optional[int] = None
    applied: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failure is None and self.content is not None

    @classmethod
    def fail(cls, kind: str, message: str) -> "MutationResult":
        return cls(failure=Failure(kind, message))


@dataclass
class _Edit:
    start: int
    end: int
    text: str
    seq: int


def camel_to_kebab(name: str) -> str:
    if name.startswith("--") or "-" in name:
        return name
    return re.sub(r"([A-Z])", lambda m: "-" + m.group(1).lower(), name)


def kebab_to_camel(name: str) -> str:
    if name.startswith("--") or "-" not in name:
        return name
    head, *rest = name.split("-")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _js_key(key: str) -> str:
    return key if _IDENTIFIER.match(key) else json.dumps(key, ensure_ascii=False)


def _js_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(str(value), ensure_ascii=False)


def _render_text(text: str) -> str:
    if _JSX_SPECIAL & set(text):
        return "{" + json.dumps(text, ensure_ascii=False) + "}"
    return text


def _split_ws(text: str) -> tuple:
    core = text.strip()
    if not core:
        return "", "", ""
    start = text.index(core)
    return text[:start], core, text[start + len(core):]


def apply_edits(source: bytes, edits: list) -> bytes:
    """由後往前套用；同一起點時先產生的 edit 會排在前面。"""
    for edit in sorted(edits, key=lambda e: (e.start, e.seq), reverse=True):
        source = source[:edit.start] + edit.text.encode("utf-8") + source[edit.end:]
    return source


def _strategy_for(file_path: Optional[str]) -> Optional[str]:
    if not file_path:
        return "jsx"
    name = PurePosixPath(str(file_path).replace("\\", "/")).name.lower()
    if name.endswith(CSS_SUFFIXES):
        return "css"
    if name.endswith(HTML_SUFFIXES):
        return "html"
    if jp.language_for(name) is not None:
        return "jsx"
    return None


class CodeMutationEngine:
    """把單一 selector 對應的單一節點改寫；每次呼叫最多動一個節點。"""

    def __init__(self, policy: Optional[ClassMatchPolicy] = None, class_mode: str = "merge"):
        self.policy = policy or ClassMatchPolicy()
        self.class_mode = class_mode

    # ─── 對外 API ─────────────────────────────────────────────────────────

    def apply_changes(self, content: str, selector: str, changes, file_path: Optional[str] = None) -> Optional[str]:
        result = self.mutate(content, selector, changes, file_path)
        return result.content if result.ok else None

    def mutate(self, content: str, selector: str, changes, file_path: Optional[str] = None) -> MutationResult:
        if isinstance(changes, dict):
            changes = ChangeSet.from_wire(changes)
        if changes is None or changes.is_empty():
            return MutationResult.fail("invalid", "沒有任何變更")
        strategy = _strategy_for(file_path)
        if strategy is None:
            return MutationResult.fail("invalid", f"不支援的檔案類型: {file_path}")

        try:
            if strategy == "css":
                result = self._mutate_css(content, selector, changes)
            else:
                parsed = parse_selector(selector)
                if parsed is None:
                    return MutationResult.fail("match", f"無法解析 selector: {selector!r}")
                if strategy == "html":
                    result = self._mutate_html(content, parsed, changes)
                else:
                    result = self._mutate_jsx(content, parsed, changes, jp.language_for(file_path) or "tsx")
        except Exception as e:  # 引擎邊界：壞輸入只讓這次呼叫失敗
            logger.error("mutation.crashed", file=file_path, selector=selector, error=str(e), exc_info=True)
            return MutationResult.fail("parse", f"改寫失敗: {e}")

        if result.ok:
            logger.info("mutation.applied", file=file_path, selector=selector, tag=result.tag_name, changes=len(result.applied))
        else:
            logger.warning("mutation.skipped", file=file_path, selector=selector, reason=str(result.failure))
        return result

    # ─── JSX / TSX ────────────────────────────────────────────────────────

    def _mutate_jsx(self, content: str, parsed: ParsedSelector, changes: ChangeSet, language: str) -> MutationResult:
        source = content.encode("utf-8")
        tree = jp.parse(source, language)
        if tree.root_node.has_error:
            return MutationResult.fail("parse", "原始檔本身有語法錯誤，放棄改寫")

        target = self.find_target(tree.root_node, source, parsed)
        if target is None:
            return MutationResult.fail("match", f"找不到符合 {parsed.raw!r} 的元素")

        edits: list = []
        applied: list = []
        if changes.styles:
            edits += self._style_edits(target, source, changes.styles, len(edits))
            applied.append("styles")
        if changes.class_name is not None or changes.classes_to_add:
            class_edits = self._class_edits(target, source, changes, len(edits))
            if class_edits is not None:
                edits += class_edits
                applied.append("className")
        if changes.text is not None:
            text_edits = self._text_edits(target, source, changes.text, len(edits))
            if text_edits is not None:
                edits += text_edits
                applied.append("text")
        if not applied:
            return MutationResult.fail("match", "元素已找到，但沒有可套用的變更")

        new_source = apply_edits(source, edits)
        if jp.parse(new_source, language).root_node.has_error:
            return MutationResult.fail("validation", "改寫後的原始碼無法重新解析，已捨棄")

        return MutationResult(
            content=new_source.decode("utf-8"),
            tag_name=jp.tag_name(target, source),
            line=target.start_point[0] + 1,
            applied=applied,
        )

    def find_target(self, root, source: bytes, parsed: ParsedSelector):
        """走訪語法樹找目標。nth-of-type 先計數，再檢查 id / class。"""
        counters: dict = {}
        id_only = parsed.element_id is not None and not parsed.explicit_nth
        for element in jp.iter_jsx_elements(root):
            if not jp.is_plain_tag(element):
                continue
            tag = jp.tag_name(element, source)
            lower = tag.lower()
            if parsed.tag and parsed.tag != lower and parsed.tag not in self.policy.rendered_tags(tag):
                continue

            if id_only:
                if self._id_matches(element, source, parsed) and self._classes_match(element, source, parsed, tag):
                    return element
                continue

            key = (jp.node_key(jp.element_parent(element)), parsed.tag or lower)
            counters[key] = counters.get(key, 0) + 1
            if counters[key] != parsed.nth:
                continue
            if parsed.element_id is not None and not self._id_matches(element, source, parsed):
                continue
            if self._classes_match(element, source, parsed, tag):
                return element
        return None

    @staticmethod
    def _id_matches(element, source: bytes, parsed: ParsedSelector) -> bool:
        attr = jp.find_attribute(element, "id", source)
        if attr is None:
            return False
        return jp.literal_string(jp.attribute_value(attr), source) == parsed.element_id

    def _classes_match(self, element, source: bytes, parsed: ParsedSelector, tag: str) -> bool:
        if not parsed.classes:
            return True
        attr = jp.find_attribute(element, "className", source) or jp.find_attribute(element, "class", source)
        if attr is None:
            return True
        literal = jp.literal_string(jp.attribute_value(attr), source)
        if literal is None:
            # 動態 className：字串比對無法否定，視為只比 tag
            return True
        return self.policy.matches(parsed.classes, literal.split(), tag)

    @staticmethod
    def _attribute_insert_point(element) -> int:
        opening = jp.opening_of(element)
        anchor = None
        for child in opening.named_children:
            if child.type in ("jsx_attribute", "jsx_expression", "type_arguments") or child == jp.name_node(element):
                anchor = child
        return anchor.end_byte if anchor is not None else opening.start_byte + 1

    def _style_edits(self, element, source: bytes, styles: dict, seq: int) -> list:
        wanted = [(kebab_to_camel(k), v) for k, v in styles.items() if v is not None]
        if not wanted:
            return []
        attr = jp.find_attribute(element, "style", source)
        if attr is None:
            body = ", ".join(f"{_js_key(k)}: {_js_value(v)}" for k, v in wanted)
            at = self._attribute_insert_point(element)
            return [_Edit(at, at, f" style={{{{ {body} }}}}", seq)]

        value = jp.attribute_value(attr)
        inner = jp.expression_of(value) if value is not None and value.type == "jsx_expression" else None
        if inner is not None and inner.type == "object":
            return self._merge_style_object(inner, source, wanted, seq)

        if inner is not None:
            # style={base} → style={{ ...base, key: value }}
            expr = jp.node_text(inner, source)
            spread = expr if inner.type in ("identifier", "member_expression", "call_expression") else f"({expr})"
            body = ", ".join([f"...{spread}"] + [f"{_js_key(k)}: {_js_value(v)}" for k, v in wanted])
            return [_Edit(inner.start_byte, inner.end_byte, f"{{ {body} }}", seq)]

        # style="a: b" 或布林 style：轉為物件字面值，保留原有宣告
        merged = {}
        if value is not None and value.type == "string":
            for decl in jp.unquote(value, source).split(";"):
                if ":" in decl:
                    k, v = decl.split(":", 1)
                    merged[kebab_to_camel(k.strip())] = v.strip()
        merged.update(dict(wanted))
        body = ", ".join(f"{_js_key(k)}: {_js_value(v)}" for k, v in merged.items())
        return [_Edit(attr.start_byte, attr.end_byte, f"style={{{{ {body} }}}}", seq)]

    @staticmethod
    def _merge_style_object(obj, source: bytes, wanted: list, seq: int) -> list:
        pairs = {}
        props = []
        for prop in obj.named_children:
            if prop.type == "comment":
                continue
            props.append(prop)
            if prop.type == "pair":
                key_node = prop.child_by_field_name("key")
                if key_node is not None:
                    pairs[jp.unquote(key_node, source)] = prop.child_by_field_name("value")

        edits = []
        new = []
        for key, value in wanted:
            node = pairs.get(key)
            if node is None:
                new.append((key, value))
                continue
            current = jp.literal_string(node, source)
            if current is None and node.type == "number":
                current = jp.node_text(node, source)
            if current is not None and current == str(value):
                continue
            edits.append(_Edit(node.start_byte, node.end_byte, _js_value(value), seq + len(edits)))

        if new:
            body = ", ".join(f"{_js_key(k)}: {_js_value(v)}" for k, v in new)
            if props:
                at = props[-1].end_byte
                edits.append(_Edit(at, at, f", {body}", seq + len(edits)))
            else:
                edits.append(_Edit(obj.start_byte, obj.end_byte, f"{{ {body} }}", seq + len(edits)))
        return edits

    def _class_edits(self, element, source: bytes, changes: ChangeSet, seq: int) -> Optional[list]:
        """回傳 None 表示無法套用（例如動態 className 無法合併）。"""
        mode = changes.class_mode or self.class_mode
        attr = jp.find_attribute(element, "className", source)
        attr_name = "className"
        if attr is None and jp.find_attribute(element, "class", source) is not None:
            attr = jp.find_attribute(element, "class", source)
            attr_name = "class"
        value = jp.attribute_value(attr) if attr is not None else None
        existing = jp.literal_string(value, source) if value is not None else ""

        if existing is None and not (mode == "replace" and changes.class_name is not None):
            logger.warning("mutation.dynamic_class", text=jp.node_text(value, source)[:80])
            return None

        if mode == "replace" and changes.class_name is not None:
            new = changes.class_name
        else:
            new = merge_classes(existing or "", changes.class_name or "")
        if changes.classes_to_add:
            new = merge_classes(new, " ".join(changes.classes_to_add))
        new = " ".join(new.split())

        if attr is None:
            at = self._attribute_insert_point(element)
            return [_Edit(at, at, f" {attr_name}={json.dumps(new, ensure_ascii=False)}", seq)]
        if existing is not None and new == existing:
            return []
        if value is not None and value.type == "string":
            quote = jp.node_text(value, source)[0]
            rendered = f"{quote}{new}{quote}" if quote not in new else "{" + json.dumps(new, ensure_ascii=False) + "}"
            return [_Edit(value.start_byte, value.end_byte, rendered, seq)]
        if value is not None and value.type == "jsx_expression" and existing is not None:
            inner = jp.expression_of(value)
            return [_Edit(inner.start_byte, inner.end_byte, json.dumps(new, ensure_ascii=False), seq)]
        # 布林 className 或 replace 模式下的動態 className：整段取代
        return [_Edit(attr.start_byte, attr.end_byte, f"{attr_name}={json.dumps(new, ensure_ascii=False)}", seq)]

    def _text_edits(self, element, source: bytes, text: str, seq: int) -> Optional[list]:
        rendered = _render_text(text)
        if element.type == "jsx_self_closing_element":
            tag = jp.tag_name(element, source)
            at = self._attribute_insert_point(element)
            return [_Edit(at, element.end_byte, f">{rendered}</{tag}>", seq)]

        opening, closing = jp.opening_of(element), jp.closing_of(element)
        if opening is None or closing is None:
            return None
        skip = {jp.node_key(opening), jp.node_key(closing)}
        children = [c for c in element.named_children if jp.node_key(c) not in skip]

        def is_text(node) -> bool:
            if node.type in jp.TEXT_CHILD_TYPES or node.type == "comment":
                return True
            if node.type == "jsx_expression":
                inner = jp.expression_of(node)
                return inner is None or jp.literal_string(node, source) is not None
            return False

        if all(is_text(c) for c in children):
            # 沒有巢狀元素：整段取代，保留前後空白
            start, end = opening.end_byte, closing.start_byte
            lead, core, trail = _split_ws(source[start:end].decode("utf-8"))
            return [_Edit(start, end, f"{lead}{rendered}{trail}", seq)]

        # 有巢狀元素：只改第一段直接文字
        for child in children:
            if child.type == "jsx_text" and jp.node_text(child, source).strip():
                lead, _, trail = _split_ws(jp.node_text(child, source))
                return [_Edit(child.start_byte, child.end_byte, f"{lead}{rendered}{trail}", seq)]
        return None

    # ─── CSS / SCSS ───────────────────────────────────────────────────────

    def _mutate_css(self, content: str, selector: str, changes: ChangeSet) -> MutationResult:
        """在 selector 區塊內更新 / 新增屬性；找不到區塊則附加到檔尾。"""
        if not changes.styles:
            return MutationResult.fail("invalid", "樣式檔只支援 styles 變更")
        selector = (selector or "").strip()
        if not selector or "{" in selector or "}" in selector:
            return MutationResult.fail("match", f"無效的 CSS selector: {selector!r}")

        css_props = {camel_to_kebab(k): str(v) for k, v in changes.styles.items() if v is not None}
        block_pattern = re.compile(rf"(^[ \t]*|[}};]\s*){re.escape(selector)}\s*\{{([^}}]*)\}}", re.MULTILINE)
        match = block_pattern.search(content)
        if match:
            body = match.group(2)
            indent_match = re.search(r"\n([ \t]+)\S", body)
            indent = indent_match.group(1) if indent_match else "  "
            for prop, val in css_props.items():
                prop_pattern = re.compile(rf"(^|[;{{\s])({re.escape(prop)}\s*:\s*)[^;}}]*", re.MULTILINE)
                if prop_pattern.search(body):
                    body = prop_pattern.sub(lambda m: f"{m.group(1)}{m.group(2)}{val}", body, count=1)
                else:
                    stripped = body.rstrip()
                    tail = body[len(stripped):] or "\n"
                    sep = "" if not stripped.strip() or stripped.endswith(";") else ";"
                    body = f"{stripped}{sep}\n{indent}{prop}: {val};{tail}"
            start, end = match.span(2)
            content = content[:start] + body + content[end:]
        else:
            block = f"\n{selector} {{\n"
            for prop, val in css_props.items():
                block += f"  {prop}: {val};\n"
            block += "}\n"
            content = content.rstrip("\n") + "\n" + block if content.strip() else block.lstrip("\n")

        if content.count("{") != content.count("}"):
            return MutationResult.fail("validation", "改寫後大括號不平衡，已捨棄")
        return MutationResult(content=content, tag_name=selector, applied=["styles"])

    # ─── HTML ─────────────────────────────────────────────────────────────

    def _mutate_html(self, content: str, parsed: ParsedSelector, changes: ChangeSet) -> MutationResult:
        """依 id（優先）或第一個 class 找開始標籤，只改第一個命中的元素。"""
        tag = re.escape(parsed.tag) if parsed.tag else r"[a-zA-Z][\w-]*"
        if parsed.element_id:
            attr_re = rf"""\bid\s*=\s*["']{re.escape(parsed.element_id)}["']"""
        elif parsed.classes:
            attr_re = rf"""\bclass\s*=\s*["'][^"']*(?<![\w-]){re.escape(parsed.classes[0])}(?![\w-])[^"']*["']"""
        else:
            return MutationResult.fail("match", "HTML 比對需要 id 或 class")
        pattern = re.compile(rf"<({tag})(\s[^>]*?{attr_re}[^>]*?)(/?)>", re.DOTALL | re.IGNORECASE)
        match = pattern.search(content)
        if match is None:
            return MutationResult.fail("match", f"找不到符合 {parsed.raw!r} 的元素")

        tag_name, attrs, self_close = match.group(1), match.group(2), match.group(3)
        applied = []
        if changes.styles:
            attrs = self._html_merge_style(attrs, changes.styles)
            applied.append("styles")
        if changes.class_name is not None or changes.classes_to_add:
            attrs = self._html_merge_class(attrs, changes)
            applied.append("className")
        new_open = f"<{tag_name}{attrs}{self_close}>"
        content_out = content[:match.start()] + new_open + content[match.end():]

        if changes.text is not None and not self_close:
            close_re = re.compile(rf"</{re.escape(tag_name)}\s*>", re.IGNORECASE)
            inner_start = match.start() + len(new_open)
            close = close_re.search(content_out, inner_start)
            if close is not None and "<" not in content_out[inner_start:close.start()]:
                lead, _, trail = _split_ws(content_out[inner_start:close.start()])
                escaped = changes.text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")
                content_out = content_out[:inner_start] + f"{lead}{escaped}{trail}" + content_out[close.start():]
                applied.append("text")
        if not applied:
            return MutationResult.fail("match", "元素已找到，但沒有可套用的變更")
        return MutationResult(
            content=content_out,
            tag_name=tag_name,
            line=content.count("\n", 0, match.start()) + 1,
            applied=applied,
        )

    @staticmethod
    def _html_merge_style(attrs: str, styles: dict) -> str:
        style_re = re.compile(r"""(\sstyle\s*=\s*)(["'])(.*?)\2""", re.DOTALL)
        match = style_re.search(attrs)
        decls = {}
        if match:
            for decl in match.group(3).split(";"):
                if ":" in decl:
                    k, v = decl.split(":", 1)
                    decls[k.strip()] = v.strip()
        for key, value in styles.items():
            if value is not None:
                decls[camel_to_kebab(key)] = str(value)
        rendered = "; ".join(f"{k}: {v}" for k, v in decls.items())
        if match:
            return attrs[:match.start()] + f'{match.group(1)}"{rendered}"' + attrs[match.end():]
        return attrs.rstrip() + f' style="{rendered}"' + attrs[len(attrs.rstrip()):]

    def _html_merge_class(self, attrs: str, changes: ChangeSet) -> str:
        class_re = re.compile(r"""(\sclass\s*=\s*)(["'])(.*?)\2""", re.DOTALL)
        match = class_re.search(attrs)
        existing = match.group(3) if match else ""
        if (changes.class_mode or self.class_mode) == "replace" and changes.class_name is not None:
            new = changes.class_name
        else:
            new = merge_classes(existing, changes.class_name or "")
        if changes.classes_to_add:
            new = merge_classes(new, " ".join(changes.classes_to_add))
        if match:
            return attrs[:match.start()] + f'{match.group(1)}"{new}"' + attrs[match.end():]
        return attrs.rstrip() + f' class="{new}"' + attrs[len(attrs.rstrip()):]
