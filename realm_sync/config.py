"""設定檔載入與基本驗證."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .class_merge import ClassMatchPolicy

DEFAULT_CONFIG_PATH = "realm-sync.config.json"

# 已知有效的頂層欄位
_KNOWN_TOP_KEYS = {"source", "sync", "mutation", "transactions", "server", "watch", "logging"}

# 各區塊已知欄位（用於拼字提示）
_KNOWN_SECTION_KEYS = {
    "source": {"root", "extensions", "ignore"},
    "sync": {"debounceMs", "staleAfterMs", "conflictStrategy", "previewMode", "historySize"},
    "mutation": {"classMode", "classMatch", "wrapperComponents"},
    "transactions": {"lockTimeoutSeconds", "maxChangeLogEntries"},
    "server": {"host", "port"},
    "watch": {"debounceSeconds", "enabled"},
    "logging": {"level", "json"},
}

CONFLICT_STRATEGIES = {"last-write-wins", "first-write-wins", "manual"}
CLASS_MODES = {"merge", "replace"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _warn(msg: str) -> None:
    print(f"   ⚠️  [config] {msg}")


def validate_config(cfg: dict) -> None:
    """對 config 做基本欄位驗證，印出警告但不拋例外。"""
    if not cfg:
        return

    # 頂層未知欄位
    for key in cfg:
        if key not in _KNOWN_TOP_KEYS:
            known = ", ".join(sorted(_KNOWN_TOP_KEYS))
            _warn(f"未知頂層欄位 '{key}'（已知欄位：{known}）")

    # 各區塊欄位
    for section, known_keys in _KNOWN_SECTION_KEYS.items():
        section_cfg = cfg.get(section, {})
        if not isinstance(section_cfg, dict):
            _warn(f"'{section}' 應為物件，目前是 {type(section_cfg).__name__}")
            continue
        for key in section_cfg:
            if key not in known_keys:
                known = ", ".join(sorted(known_keys))
                _warn(f"[{section}] 未知欄位 '{key}'（已知欄位：{known}）")

    sync = _section(cfg, "sync")
    strategy = sync.get("conflictStrategy")
    if strategy and strategy not in CONFLICT_STRATEGIES:
        valid = ", ".join(sorted(CONFLICT_STRATEGIES))
        _warn(f"sync.conflictStrategy '{strategy}' 不在已知值中（{valid}）")

    mode = _section(cfg, "mutation").get("classMode")
    if mode and mode not in CLASS_MODES:
        _warn(f"mutation.classMode '{mode}' 不在已知值中（merge, replace）")

    level = _section(cfg, "logging").get("level")
    if level and str(level).upper() not in _LOG_LEVELS:
        _warn(f"logging.level '{level}' 無效，將使用 INFO")

    # 數值欄位
    for section, key in (
        ("sync", "debounceMs"),
        ("sync", "staleAfterMs"),
        ("sync", "historySize"),
        ("transactions", "lockTimeoutSeconds"),
        ("transactions", "maxChangeLogEntries"),
        ("server", "port"),
        ("watch", "debounceSeconds"),
    ):
        val = _section(cfg, section).get(key)
        if val is not None and (not isinstance(val, (int, float)) or isinstance(val, bool) or val < 0):
            _warn(f"{section}.{key} 應為非負數字，目前是 {val!r}")

    # root 存在性提示（不強制）
    root = _section(cfg, "source").get("root")
    if root and not Path(root).exists():
        _warn(f"source.root '{root}' 目錄不存在")


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict:
    """載入 JSON 設定檔，不存在則回傳空 dict；存在則做基本驗證。"""
    path = Path(config_path)
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg: Any = json.load(f)
    except json.JSONDecodeError as e:
        _warn(f"'{config_path}' 不是合法 JSON（{e}），回傳空設定。")
        return {}
    if not isinstance(cfg, dict):
        _warn(f"'{config_path}' 格式錯誤，應為 JSON 物件，回傳空設定。")
        return {}
    validate_config(cfg)
    return cfg


def _section(cfg: dict, name: str) -> dict:
    section = (cfg or {}).get(name, {})
    return section if isinstance(section, dict) else {}


def _number(section: dict, key: str, default):
    val = section.get(key, default)
    if isinstance(val, bool) or not isinstance(val, (int, float)) or val < 0:
        return default
    return val


# ─── 型別化設定 ───────────────────────────────────────────────────────────────


@dataclass
class SyncConfig:
    debounce_ms: int = 50
    stale_after_ms: int = 10_000
    conflict_strategy: str = "last-write-wins"
    preview_mode: bool = True
    history_size: int = 100

    @classmethod
    def from_dict(cls, cfg: dict) -> "SyncConfig":
        sync = _section(cfg, "sync")
        strategy = sync.get("conflictStrategy", cls.conflict_strategy)
        return cls(
            debounce_ms=int(_number(sync, "debounceMs", cls.debounce_ms)),
            stale_after_ms=int(_number(sync, "staleAfterMs", cls.stale_after_ms)),
            conflict_strategy=strategy if strategy in CONFLICT_STRATEGIES else cls.conflict_strategy,
            preview_mode=bool(sync.get("previewMode", cls.preview_mode)),
            history_size=int(_number(sync, "historySize", cls.history_size)) or cls.history_size,
        )


@dataclass
class MutationConfig:
    class_mode: str = "merge"
    policy: ClassMatchPolicy = field(default_factory=ClassMatchPolicy)

    @classmethod
    def from_dict(cls, cfg: dict) -> "MutationConfig":
        mutation = _section(cfg, "mutation")
        mode = mutation.get("classMode", "merge")
        match = dict(mutation.get("classMatch") or {})
        if mutation.get("wrapperComponents"):
            match.setdefault("wrapperComponents", mutation["wrapperComponents"])
        return cls(
            class_mode=mode if mode in CLASS_MODES else "merge",
            policy=ClassMatchPolicy.from_dict(match),
        )


@dataclass
class TransactionConfig:
    lock_timeout_seconds: float = 5.0
    max_change_log_entries: int = 1000

    @classmethod
    def from_dict(cls, cfg: dict) -> "TransactionConfig":
        tx = _section(cfg, "transactions")
        return cls(
            lock_timeout_seconds=float(_number(tx, "lockTimeoutSeconds", cls.lock_timeout_seconds)),
            max_change_log_entries=int(_number(tx, "maxChangeLogEntries", cls.max_change_log_entries)),
        )


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3001

    @classmethod
    def from_dict(cls, cfg: dict) -> "ServerConfig":
        server = _section(cfg, "server")
        return cls(host=str(server.get("host", cls.host)), port=int(_number(server, "port", cls.port)))


@dataclass
class WatchConfig:
    enabled: bool = True
    debounce_seconds: float = 0.2

    @classmethod
    def from_dict(cls, cfg: dict) -> "WatchConfig":
        watch = _section(cfg, "watch")
        return cls(
            enabled=bool(watch.get("enabled", cls.enabled)),
            debounce_seconds=float(_number(watch, "debounceSeconds", cls.debounce_seconds)),
        )


@dataclass
class SourceConfig:
    root: str = "."
    extensions: tuple = (".tsx", ".jsx", ".js", ".ts")
    ignore: tuple = ("node_modules", ".next", "dist", "build", ".git", "__pycache__", "coverage")

    @classmethod
    def from_dict(cls, cfg: dict) -> "SourceConfig":
        source = _section(cfg, "source")
        return cls(
            root=str(source.get("root", cls.root)),
            extensions=tuple(source.get("extensions") or cls.extensions),
            ignore=tuple(source.get("ignore") or cls.ignore),
        )
