"""
DOM selector 解析（受限語法）與反向產生

語法：`tag[#id][.class]*[:nth-of-type(n)]` 以 `>` 串接；原始碼比對只看最後一段。
class token 需容忍 Tailwind 語法：variant 前綴（`md:`、`dark:hover:`）、
方括號任意值（`bg-[#1a2b3c]`、`w-[2.5rem]`）、小數（`w-1.5`）與 CSS escape（`md\\:w-1\\/2`）。
"""

import re
from dataclasses import dataclass, field
from typing import Optional

MAX_SELECTOR_LENGTH = 2048

_NTH_OF_TYPE = re.compile(r":nth-of-type\(\s*(\d+)\s*\)")
_FIRST_OF_TYPE = ":first-of-type"
_TAG = re.compile(r"[A-Za-z][\w-]*")


@dataclass(frozen=True)
class ParsedSelector:
    tag: Optional[str] = None
    element_id: Optional[str] = None
    classes: tuple = ()
    nth: int = 1
    explicit_nth: bool = False
    raw: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.tag or self.element_id or self.classes)


def last_segment(selector: str) -> str:
    """最後一段（忽略方括號內的 `>`，例如 `w-[calc(100%>0)]`）。"""
    depth = 0
    cut = 0
    for i, ch in enumerate(selector):
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth = max(0, depth - 1)
        elif ch == ">" and depth == 0:
            cut = i + 1
    return selector[cut:].strip()


def _read_token(segment: str, start: int) -> tuple:
    """從 start 讀一個 class / id token，回傳 (token, 結束位置)。"""
    out = []
    depth = 0
    i = start
    while i < len(segment):
        ch = segment[i]
        if ch == "\\" and i + 1 < len(segment):
            out.append(segment[i + 1])
            i += 2
            continue
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth = max(0, depth - 1)
        elif depth == 0:
            if ch == "#":
                break
            if ch == ".":
                # `.` 後接數字視為小數（w-1.5），不是新 class
                if not (i + 1 < len(segment) and segment[i + 1].isdigit() and out and out[-1].isdigit()):
                    break
            if ch == ":" and segment.startswith(":nth-of-type(", i):
                break
            if ch == ":" and segment.startswith(_FIRST_OF_TYPE, i):
                break
            if ch.isspace():
                break
        out.append(ch)
        i += 1
    return "".join(out), i


def parse_selector(selector: str) -> Optional[ParsedSelector]:
    """解析 selector 的最後一段；空字串、過長或無法辨識時回傳 None。"""
    if not selector or not isinstance(selector, str) or len(selector) > MAX_SELECTOR_LENGTH:
        return None
    segment = last_segment(selector)
    if not segment:
        return None

    nth = 1
    explicit_nth = False
    match = _NTH_OF_TYPE.search(segment)
    if match:
        nth = int(match.group(1))
        explicit_nth = True
        if nth < 1:
            return None
    elif _FIRST_OF_TYPE in segment:
        explicit_nth = True

    tag = None
    tag_match = _TAG.match(segment)
    pos = 0
    if tag_match:
        tag = tag_match.group(0).lower()
        pos = tag_match.end()

    element_id = None
    classes = []
    while pos < len(segment):
        ch = segment[pos]
        if ch == "#":
            token, pos = _read_token(segment, pos + 1)
            if token:
                element_id = token
        elif ch == ".":
            token, pos = _read_token(segment, pos + 1)
            if token:
                classes.append(token)
        elif ch == ":":
            # 偽類：只認 nth-of-type / first-of-type，其餘略過到下一個 token
            end = segment.find(")", pos) + 1 if segment.startswith(":nth-of-type(", pos) else pos + 1
            while end < len(segment) and segment[end] not in ".#:":
                end += 1
            pos = max(end, pos + 1)
        else:
            pos += 1

    parsed = ParsedSelector(tag, element_id, tuple(classes), nth, explicit_nth, selector)
    return None if parsed.is_empty else parsed


def _escape_class(name: str) -> str:
    return re.sub(r"([:/\[\]#.%()!,])", r"\\\1", name)


def build_selector(info, max_classes: int = 2) -> str:
    """由 ElementInfo 產生 selector（與 DOM 端 getUniqueSelector 同一規則的最後一段）。

    有 id 時只輸出 `#id`；否則 tag + 最多兩個 class + nth-of-type。
    """
    element_id = info.element_id_attr()
    if element_id:
        return f"#{element_id}"
    tag = info.tag_name.lower()
    classes = [_escape_class(c) for c in info.class_list()[:max_classes]]
    suffix = "".join(f".{c}" for c in classes)
    return f"{tag}{suffix}:nth-of-type({info.nth_of_type})"
