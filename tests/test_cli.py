"""
CLI 測試：extract / apply 子命令（使用 tmp_path，不汙染實際專案）
"""
import json

import pytest

from realm_sync.cli import _parse_styles, main


NAV_TSX = """export function Nav() {
  return (
    <nav>
      <a className="text-sm" href="/">Home</a>
      <a className="text-sm" href="/about">About</a>
    </nav>
  );
}
"""


@pytest.fixture
def nav_file(tmp_path):
    path = tmp_path / "Nav.tsx"
    path.write_text(NAV_TSX, encoding="utf-8")
    return path


def run(tmp_path, *argv):
    return main(["--config", str(tmp_path / "missing.json"), *argv])


# ─── extract ─────────────────────────────────────────────────────────────────

class TestExtractCommand:
    def test_extract_file(self, tmp_path, nav_file, capsys):
        assert run(tmp_path, "extract", str(nav_file)) == 0
        out = capsys.readouterr().out
        assert "Nav.tsx" in out
        assert "<a .text-sm>" in out
        assert "1 files, 3 elements" in out

    def test_extract_json(self, tmp_path, nav_file, capsys):
        assert run(tmp_path, "extract", str(nav_file), "--json") == 0
        payload = json.loads(capsys.readouterr().out)
        assert [e["tagName"] for e in payload["Nav.tsx"]["elements"]] == ["nav", "a", "a"]

    def test_extract_directory(self, tmp_path, nav_file, capsys):
        assert run(tmp_path, "extract", str(tmp_path)) == 0
        assert "1 files, 3 elements" in capsys.readouterr().out

    def test_extract_missing_path(self, tmp_path, capsys):
        assert run(tmp_path, "extract", str(tmp_path / "nope")) == 1
        assert "找不到" in capsys.readouterr().out


# ─── apply ───────────────────────────────────────────────────────────────────

class TestApplyCommand:
    def test_apply_writes_file(self, tmp_path, nav_file, capsys):
        code = run(tmp_path, "apply", str(nav_file), "--selector", "a.text-sm:nth-of-type(2)", "--class-name", "text-lg")
        assert code == 0
        assert "Written to" in capsys.readouterr().out
        content = nav_file.read_text(encoding="utf-8")
        assert '<a className="text-lg" href="/about">' in content
        assert '<a className="text-sm" href="/">' in content

    def test_dry_run_does_not_write(self, tmp_path, nav_file, capsys):
        code = run(tmp_path, "apply", str(nav_file), "-s", "a", "--style", "color=red", "--dry-run")
        assert code == 0
        out = capsys.readouterr().out
        assert "[DRY-RUN]" in out
        assert '+      <a className="text-sm" href="/" style={{ color: "red" }}>Home</a>' in out
        assert nav_file.read_text(encoding="utf-8") == NAV_TSX

    def test_no_match_exit_code(self, tmp_path, nav_file, capsys):
        code = run(tmp_path, "apply", str(nav_file), "-s", "table", "--text", "x")
        assert code == 1
        assert "檔案未變更" in capsys.readouterr().out
        assert nav_file.read_text(encoding="utf-8") == NAV_TSX

    def test_no_changes_given(self, tmp_path, nav_file, capsys):
        assert run(tmp_path, "apply", str(nav_file), "-s", "a") == 1

    def test_bad_style_pair(self, tmp_path, nav_file, capsys):
        assert run(tmp_path, "apply", str(nav_file), "-s", "a", "--style", "color") == 1
        assert "key=value" in capsys.readouterr().out


class TestMisc:
    def test_parse_styles(self):
        assert _parse_styles(["color=red", "margin-top = 4px"]) == {"color": "red", "margin-top": "4px"}

    def test_no_command_prints_help(self, tmp_path, capsys):
        assert run(tmp_path) == 0
        assert "usage" in capsys.readouterr().out.lower()

    def test_version(self, tmp_path, capsys):
        with pytest.raises(SystemExit):
            run(tmp_path, "--version")
        assert "0.1.0" in capsys.readouterr().out
