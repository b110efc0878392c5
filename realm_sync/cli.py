#!/usr/bin/env python3
"""
realm-sync CLI — 視覺編輯 ↔ JSX/TSX 原始碼同步

  realm-sync extract src/                         # 列出可定位的 UI 元素
  realm-sync apply src/App.tsx --selector 'a.text-sm:nth-of-type(2)' --class-name 'text-sm text-red-500'
  realm-sync serve --port 3001                    # WebSocket 同步伺服器 + 檔案監看
"""

import argparse
import asyncio
import difflib
import json
import sys
from pathlib import Path

from realm_sync import __version__

from .code_mutator import ChangeSet, CodeMutationEngine
from .config import DEFAULT_CONFIG_PATH, MutationConfig, ServerConfig, SourceConfig, WatchConfig, load_config
from .logging_config import configure_logging
from .source_extractor import SourceExtractor
from .transactions import atomic_write


def _print_elements(rel_path: str, result) -> None:
    icon = "⚠️ " if result.errors else "📄"
    print(f"{icon} {rel_path}  ({len(result.elements)} elements)")
    depth = {}
    for info in result.elements:
        level = depth.get(info.parent_hash, -1) + 1
        depth[info.hash] = level
        text = f"  “{info.text_content[:40]}”" if info.text_content else ""
        classes = f" .{'.'.join(info.class_list()[:3])}" if info.class_list() else ""
        print(
            f"   {'  ' * level}<{info.tag_name}{classes}> "
            f"[{info.element_id.component_name}] L{info.element_id.location.line} #{info.hash}{text}"
        )
    for err in result.errors:
        print(f"   ❌ L{err.line}:{err.column} {err.message}")


def cmd_extract(args, config: dict):
    """Extract: 解析檔案或目錄，列出元素樹."""
    target = Path(args.path)
    if not target.exists():
        print(f"❌ 找不到 {target}")
        return 1
    root = target if target.is_dir() else target.parent
    extractor = SourceExtractor(root=str(root))
    if target.is_dir():
        source = SourceConfig.from_dict(config)
        results = extractor.extract_directory(target, source.extensions, source.ignore)
    else:
        results = {target.name: extractor.extract_file(target)}

    if args.json:
        payload = {
            path: {
                "elements": [e.to_dict() for e in result.elements],
                "errors": [{"message": e.message, "line": e.line, "column": e.column, "kind": e.kind} for e in result.errors],
            }
            for path, result in results.items()
        }
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return 0

    total = 0
    for rel_path, result in results.items():
        _print_elements(rel_path, result)
        total += len(result.elements)
    print(f"\n✅ {len(results)} files, {total} elements")
    return 0


def _parse_styles(pairs) -> dict:
    styles = {}
    for pair in pairs or []:
        if "=" not in pair:
            raise ValueError(f"--style 需要 key=value 格式：{pair!r}")
        key, value = pair.split("=", 1)
        styles[key.strip()] = value.strip()
    return styles


def cmd_apply(args, config: dict):
    """Apply: 依 selector 把變更寫回單一檔案."""
    path = Path(args.file)
    if not path.is_file():
        print(f"❌ 找不到檔案 {path}")
        return 1
    try:
        styles = _parse_styles(args.style)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    changes = ChangeSet(
        styles=styles or None,
        text=args.text,
        class_name=args.class_name,
        classes_to_add=args.add_class,
        class_mode=args.class_mode,
    )
    if changes.is_empty():
        print("❌ 沒有指定任何變更（--style / --class-name / --add-class / --text）")
        return 1

    mutation = MutationConfig.from_dict(config)
    engine = CodeMutationEngine(mutation.policy, mutation.class_mode)
    content = path.read_text(encoding="utf-8")
    result = engine.mutate(content, args.selector, changes, str(path))
    if not result.ok:
        print(f"❌ 無法套用：{result.failure}")
        print("   檔案未變更。")
        return 1

    print(f"🎯 {args.selector} → <{result.tag_name}> (line {result.line or '?'})")
    for line in changes.describe():
        print(f"   {line}")
    if result.content == content:
        print("   （內容已是最新，無需寫入）")
        return 0
    if args.dry_run:
        diff = difflib.unified_diff(
            content.splitlines(keepends=True),
            result.content.splitlines(keepends=True),
            fromfile=str(path),
            tofile=f"{path} (new)",
        )
        sys.stdout.writelines(diff)
        print(f"\n   [DRY-RUN] Would write to {path}")
        return 0
    atomic_write(path, result.content)
    print(f"   ✅ Written to {path}")
    return 0


async def _serve(args, config: dict):
    from .runtime import RealmRuntime
    from .server import RealmServer
    from .watcher import ChangeHandler, FileWatcher

    runtime = RealmRuntime(config, root=args.root)
    problems = runtime.index_workspace()
    print(f"📚 Indexed {len(runtime.registry)} elements in {len(runtime.registry.files())} files")
    for rel_path, count in problems.items():
        print(f"   ⚠️  {rel_path}: {count} parse errors")

    watch = WatchConfig.from_dict(config)
    watcher = None
    if watch.enabled and not args.no_watch:
        handler = ChangeHandler(runtime.publish_file_event, asyncio.get_running_loop(), watch.debounce_seconds)
        watcher = FileWatcher(str(runtime.root), handler)
        watcher.start()
        print(f"👀 Watching for changes in '{runtime.root}'...")

    server_config = ServerConfig.from_dict(config)
    server = RealmServer(runtime, args.host or server_config.host, args.port or server_config.port)
    print(f"🔌 Listening on ws://{server.host}:{server.port}")
    print("   Press Ctrl+C to stop.")
    try:
        await server.serve_forever()
    finally:
        if watcher is not None:
            watcher.stop()
        runtime.close()


def cmd_serve(args, config: dict):
    """Serve: WebSocket 同步伺服器 + 檔案監看."""
    try:
        asyncio.run(_serve(args, config))
    except KeyboardInterrupt:
        print("\n👋 Stopping server...")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="realm-sync: Visual edit ↔ Source sync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", "-c", default=DEFAULT_CONFIG_PATH, help="Config path")
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="DEBUG / INFO / WARNING / ERROR (default: config or WARNING)")
    parser.add_argument("--log-json", action="store_true", help="Emit logs as JSON lines")
    sub = parser.add_subparsers(dest="command")

    extract_p = sub.add_parser("extract", help="List addressable UI elements",
        epilog="Examples:\n  realm-sync extract src/\n  realm-sync extract src/App.tsx --json",
        formatter_class=argparse.RawDescriptionHelpFormatter)
    extract_p.add_argument("path", help="Source file or directory")
    extract_p.add_argument("--json", action="store_true", help="Output JSON")

    apply_p = sub.add_parser("apply", help="Write a style/class/text change back to source",
        epilog="Examples:\n  realm-sync apply src/App.tsx --selector '#hero' --style color=red\n"
               "  realm-sync apply src/Nav.tsx --selector 'a.text-sm:nth-of-type(2)' --class-name 'text-sm text-red-500' --dry-run",
        formatter_class=argparse.RawDescriptionHelpFormatter)
    apply_p.add_argument("file", help="Source file (.tsx/.jsx/.css/.html)")
    apply_p.add_argument("--selector", "-s", required=True, help="DOM selector (last segment is matched)")
    apply_p.add_argument("--style", action="append", metavar="KEY=VALUE", help="Inline style (repeatable)")
    apply_p.add_argument("--class-name", help="New className (merged by default)")
    apply_p.add_argument("--add-class", action="append", metavar="CLASS", help="Tailwind class to add (repeatable)")
    apply_p.add_argument("--class-mode", choices=["merge", "replace"], help="How --class-name is applied")
    apply_p.add_argument("--text", help="New text content")
    apply_p.add_argument("--dry-run", action="store_true", help="Print a diff instead of writing")

    serve_p = sub.add_parser("serve", help="Run the sync server with file watching",
        epilog="Examples:\n  realm-sync serve\n  realm-sync serve --root ./app --port 3001 --no-watch",
        formatter_class=argparse.RawDescriptionHelpFormatter)
    serve_p.add_argument("--root", help="Workspace root (default: config source.root)")
    serve_p.add_argument("--host", help="Bind host")
    serve_p.add_argument("--port", type=int, help="Bind port")
    serve_p.add_argument("--no-watch", action="store_true", help="Disable file watching")

    args = parser.parse_args(argv)
    config = load_config(args.config)
    log_cfg = config.get("logging", {}) if isinstance(config.get("logging"), dict) else {}
    configure_logging(args.log_level or log_cfg.get("level", "WARNING"), args.log_json or bool(log_cfg.get("json")))

    if args.command == "extract":
        return cmd_extract(args, config)
    if args.command == "apply":
        return cmd_apply(args, config)
    if args.command == "serve":
        return cmd_serve(args, config)
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
