"""
Tailwind class 比對與合併

- ClassMatchPolicy：selector 的 class 與原始碼 className 的比對門檻（可設定，不寫死）
- merge_classes：同一屬性群組互斥的 class 由新值取代，並移除其 `dark:` 對應項
"""

import re
from dataclasses import dataclass, field
from typing import Optional

_PALETTE = (
    "slate|gray|zinc|neutral|stone|red|orange|amber|yellow|lime|green|emerald|teal|"
    "cyan|sky|blue|indigo|violet|purple|fuchsia|pink|rose"
)
_COLOR_VALUE = rf"(?:(?:{_PALETTE})-\d{{2,3}}(?:/\d+)?|white|black|transparent|current|inherit|\[(?:#|rgb|hsl|color:)[^\]]*\])"
_SIDES = "x|y|t|r|b|l|s|e"

# (群組名稱, pattern)；比對對象是去掉 variant 前綴後的 utility。順序即優先權。
CLASS_GROUPS = [
    ("textColor", re.compile(rf"^text-{_COLOR_VALUE}$")),
    ("bgColor", re.compile(rf"^bg-{_COLOR_VALUE}$")),
    ("borderColor", re.compile(rf"^border-{_COLOR_VALUE}$")),
    ("fontSize", re.compile(r"^text-(?:xs|sm|base|lg|[2-9]?xl|\[\d[^\]]*\])$")),
    ("fontWeight", re.compile(r"^font-(?:thin|extralight|light|normal|medium|semibold|bold|extrabold|black|\[\d+\])$")),
    ("textAlign", re.compile(r"^text-(?:left|center|right|justify|start|end)$")),
    ("display", re.compile(r"^(?:block|inline-block|inline|flex|inline-flex|grid|inline-grid|hidden|contents|table)$")),
    ("position", re.compile(r"^(?:static|fixed|absolute|relative|sticky)$")),
    ("flexDirection", re.compile(r"^flex-(?:row|col|row-reverse|col-reverse)$")),
    ("justifyContent", re.compile(r"^justify-(?:start|end|center|between|around|evenly|stretch|normal)$")),
    ("alignItems", re.compile(r"^items-(?:start|end|center|baseline|stretch)$")),
    ("opacity", re.compile(r"^opacity-(?:\d+|\[[^\]]+\])$")),
    ("shadow", re.compile(r"^shadow(?:-(?:sm|md|lg|xl|2xl|inner|none|\[[^\]]+\]))?$")),
    ("rounded", re.compile(r"^rounded(?:-(?:none|sm|md|lg|xl|2xl|3xl|full|\[[^\]]+\]))?$")),
]

# 有方向的群組：群組名稱含方向前綴（px 與 p 不互斥）
_SIDED_GROUPS = [
    ("padding", re.compile(rf"^(p(?:{_SIDES})?)-(?:\S+)$")),
    ("margin", re.compile(rf"^-?(m(?:{_SIDES})?)-(?:\S+)$")),
    ("size", re.compile(r"^((?:min-|max-)?[wh])-(?:\S+)$")),
    ("gap", re.compile(r"^(gap(?:-[xy])?)-(?:\S+)$")),
    ("rounded", re.compile(r"^(rounded-(?:t|r|b|l|tl|tr|bl|br|s|e|ss|se|es|ee))(?:-\S+)?$")),
]

DARK_VARIANT = "dark"


def split_variants(cls: str) -> tuple:
    """'dark:hover:bg-[#fff]' → (('dark', 'hover'), 'bg-[#fff]')；方括號內的冒號不切。"""
    parts = []
    depth = 0
    current = []
    for ch in cls:
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth = max(0, depth - 1)
        if ch == ":" and depth == 0:
            parts.append("".join(current))
            current = []
            continue
        current.append(ch)
    parts.append("".join(current))
    return tuple(parts[:-1]), parts[-1]


def class_group(cls: str) -> Optional[tuple]:
    """回傳 (variants, 群組名稱)；非已知屬性群組回傳 None。"""
    variants, utility = split_variants(cls)
    utility = utility.lstrip("!")
    for name, pattern in CLASS_GROUPS:
        if pattern.match(utility):
            return variants, name
    for name, pattern in _SIDED_GROUPS:
        match = pattern.match(utility)
        if match:
            return variants, f"{name}:{match.group(1)}"
    return None


def merge_classes(existing: str, incoming: str) -> str:
    """把 incoming 合併進 existing，輸出穩定（已存在的 class 保持原位置）。

    同群組舊值被新值取代（放回舊值位置）；無 variant 的新值另外移除同群組的 `dark:` 版本。
    """
    result = (existing or "").split()
    for new in (incoming or "").split():
        if new in result:
            continue
        group = class_group(new)
        insert_at = None
        if group is not None:
            variants, name = group
            twins = {(variants, name)}
            if not variants:
                twins.add(((DARK_VARIANT,), name))
            kept = []
            for old in result:
                if class_group(old) in twins:
                    if insert_at is None:
                        insert_at = len(kept)
                    continue
                kept.append(old)
            result = kept
        if insert_at is None:
            result.append(new)
        else:
            result.insert(insert_at, new)
    return " ".join(result)


def remove_classes(existing: str, unwanted) -> str:
    unwanted = set(unwanted or ())
    return " ".join(c for c in (existing or "").split() if c not in unwanted)


# ─── selector class 比對門檻 ─────────────────────────────────────────────────

_DEFAULT_COMPONENT_TAGS = {
    "image": ("img",),
    "link": ("a",),
    "script": ("script",),
    "head": ("head",),
}


@dataclass
class ClassMatchPolicy:
    """class 比對門檻。

    接受條件（任一成立）：
    - 正向比例（selector class 在原始碼中的比例）≥ full_ratio
    - 命中數 ≥ min_matching 且正向比例 ≥ partial_ratio
    - 已知包裝元件（Image/Link/Script）且反向比例（原始碼 class 在 selector 中的比例）≥ reverse_ratio
    """

    full_ratio: float = 1.0
    partial_ratio: float = 0.0
    min_matching: int = 2
    reverse_ratio: float = 0.5
    wrapper_components: tuple = ("Image", "Link", "Script")
    component_tags: dict = field(default_factory=lambda: dict(_DEFAULT_COMPONENT_TAGS))

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ClassMatchPolicy":
        data = data or {}
        policy = cls()
        policy.full_ratio = float(data.get("fullRatio", policy.full_ratio))
        policy.partial_ratio = float(data.get("partialRatio", policy.partial_ratio))
        policy.min_matching = int(data.get("minMatching", policy.min_matching))
        policy.reverse_ratio = float(data.get("reverseRatio", policy.reverse_ratio))
        if data.get("wrapperComponents"):
            policy.wrapper_components = tuple(data["wrapperComponents"])
        for name, tags in (data.get("componentTags") or {}).items():
            policy.component_tags[name.lower()] = tuple(tags) if isinstance(tags, (list, tuple)) else (tags,)
        return policy

    def rendered_tags(self, tag_name: str) -> tuple:
        """原始碼 tag 在 DOM 上會渲染成哪些 tag（next/link → a）。"""
        lower = tag_name.lower()
        return self.component_tags.get(lower, (lower,))

    def matches(self, wanted, source_classes, tag_name: str = "") -> bool:
        wanted = list(wanted or ())
        if not wanted:
            return True
        source = set(source_classes or ())
        matching = sum(1 for c in wanted if c in source)
        ratio = matching / len(wanted)
        if ratio >= self.full_ratio:
            return True
        if matching >= self.min_matching and ratio >= self.partial_ratio:
            return True
        if tag_name in self.wrapper_components and source:
            reverse = sum(1 for c in source if c in set(wanted)) / len(source)
            if reverse >= self.reverse_ratio:
                return True
        return False
