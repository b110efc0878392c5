"""框架 / 樣式策略偵測（regex 啟發式，刻意便宜且近似，不走語法樹）."""

import re
from pathlib import PurePosixPath
from typing import Optional

from .models import FrameworkMeta

_REACT_IMPORT = re.compile(r"""import\s+[^;]*?from\s+['"]react['"]""")
_JSX_SYNTAX = re.compile(r"<[A-Z]|<[a-z]+\s")
_VUE_HINT = re.compile(r"""from\s+['"]vue['"]|<template[\s>]""")
_SVELTE_HINT = re.compile(r"""from\s+['"]svelte""")
_TAILWIND_CLASS = re.compile(
    r"""class(?:Name)?\s*=\s*["'`{][^"'`]*(?:\bflex\b|\bgrid\b|\bp[xytrbl]?-|\bm[xytrbl]?-|\btext-|\bbg-|\bw-|\bh-)"""
)
_CSS_MODULES_IMPORT = re.compile(r"""import\s+\w+\s+from\s+['"][^'"]+\.module\.(?:css|scss|sass)['"]""")
_STYLED_IMPORT = re.compile(r"""import\s+styled\b[^;]*from\s+['"]styled-components['"]""")
_INLINE_STYLE = re.compile(r"style\s*=\s*\{")


class FrameworkDetector:
    """偵測介面：可替換成更嚴格的實作，而不必動到 Extractor 的走訪邏輯。"""

    def detect(self, content: str, file_path: Optional[str] = None) -> FrameworkMeta:
        raise NotImplementedError


class RegexFrameworkDetector(FrameworkDetector):
    """預設偵測器：只看原始文字。"""

    def detect(self, content: str, file_path: Optional[str] = None) -> FrameworkMeta:
        return FrameworkMeta(
            framework=self.detect_framework(content, file_path),
            styling=self.detect_styling(content),
            is_component=self.is_component_file(file_path),
        )

    @staticmethod
    def detect_framework(content: str, file_path: Optional[str] = None) -> str:
        suffix = PurePosixPath(file_path or "").suffix.lower()
        if suffix == ".vue" or _VUE_HINT.search(content):
            return "vue"
        if suffix == ".svelte" or _SVELTE_HINT.search(content):
            return "svelte"
        if suffix in (".html", ".htm"):
            return "html"
        if _REACT_IMPORT.search(content) or _JSX_SYNTAX.search(content):
            return "react"
        return "unknown"

    @staticmethod
    def detect_styling(content: str) -> str:
        # 先後順序即優先權
        if _TAILWIND_CLASS.search(content):
            return "tailwind"
        if _CSS_MODULES_IMPORT.search(content):
            return "css-modules"
        if _STYLED_IMPORT.search(content):
            return "styled-components"
        if _INLINE_STYLE.search(content):
            return "inline"
        return "css"

    @staticmethod
    def is_component_file(file_path: Optional[str]) -> bool:
        if not file_path:
            return False
        name = PurePosixPath(str(file_path).replace("\\", "/")).name
        return bool(name) and name[0].isupper()
