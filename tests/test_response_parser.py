"""Tests for lanekit.response_parser — code block extraction and FileMap assembly."""

from __future__ import annotations

import pytest

from lanekit.contracts import CodeBlock
from lanekit.errors import MissingPrimaryFile, NoCodeBlocks
from lanekit.lanes import Lane
from lanekit.response_parser import (
    assemble_file_map,
    extract_code_blocks,
    infer_filename,
    normalise_filename,
    strip_fences,
)


# ── strip_fences ─────────────────────────────────────────────────────────

class TestStripFences:
    def test_removes_outer_fence(self) -> None:
        assert strip_fences("```python\nx = 1\n```") == "x = 1"

    def test_no_fence_unchanged(self) -> None:
        assert strip_fences("plain text") == "plain text"

    def test_unclosed_fence_unchanged(self) -> None:
        text = "```python\nx = 1"
        assert strip_fences(text) == text


# ── extract_code_blocks ──────────────────────────────────────────────────

class TestExtractCodeBlocks:
    def test_language_and_path_in_info_string(self) -> None:
        blocks = extract_code_blocks("```python main.py\nprint('hi')\n```")
        assert len(blocks) == 1
        assert blocks[0].language == "python"
        assert blocks[0].filename == "main.py"
        assert blocks[0].code == "print('hi')\n"

    def test_colon_form(self) -> None:
        blocks = extract_code_blocks("```rust:src/lib.rs\npub fn f() {}\n```")
        assert blocks[0].language == "rust"
        assert blocks[0].filename == "src/lib.rs"

    def test_filename_as_info_string(self) -> None:
        blocks = extract_code_blocks("```main.py\nx = 1\n```")
        assert blocks[0].filename == "main.py"
        assert blocks[0].language == "python"

    def test_heading_above_fence(self) -> None:
        text = "### `app.js`\n\n```js\nconst a = 1;\n```"
        blocks = extract_code_blocks(text)
        assert blocks[0].filename == "app.js"
        assert blocks[0].language == "javascript"

    def test_first_line_comment(self) -> None:
        text = "```python\n# File: utils/helpers.py\ndef f():\n    pass\n```"
        assert extract_code_blocks(text)[0].filename == "utils/helpers.py"

    def test_untagged_block_is_sniffed(self) -> None:
        blocks = extract_code_blocks("```\n<!DOCTYPE html>\n<html></html>\n```")
        assert blocks[0].language == "html"
        assert blocks[0].filename is None

    def test_tag_aliases_are_normalised(self) -> None:
        blocks = extract_code_blocks("```ps1\nWrite-Host 'x'\n```\n```py\nx = 1\n```")
        assert [b.language for b in blocks] == ["powershell", "python"]

    def test_unterminated_final_block_runs_to_end(self) -> None:
        blocks = extract_code_blocks("```python main.py\nx = 1\ny = 2")
        assert blocks[0].code == "x = 1\ny = 2\n"

    def test_empty_blocks_are_skipped_and_indices_stay_dense(self) -> None:
        text = "```python\n\n```\n```python a.py\nx = 1\n```\n```python b.py\ny = 2\n```"
        blocks = extract_code_blocks(text)
        assert [b.index for b in blocks] == [0, 1]

    def test_windows_path_is_normalised(self) -> None:
        blocks = extract_code_blocks("```python .\\pkg\\mod.py\nx = 1\n```")
        assert blocks[0].filename == "pkg/mod.py"

    def test_no_blocks(self) -> None:
        assert extract_code_blocks("no code here") == []
        assert extract_code_blocks("") == []


def test_normalise_filename() -> None:
    assert normalise_filename(" `./src/main.rs` ") == "src/main.rs"
    assert normalise_filename("/abs/path.py") == "abs/path.py"


# ── filename inference ───────────────────────────────────────────────────

class TestInferFilename:
    def test_lane_fallback(self) -> None:
        block = CodeBlock(language="python", code="x = 1\n", index=0)
        assert infer_filename(block, Lane.PYTHON_SCRIPT, set()) == "main.py"

    def test_collision_uses_block_index(self) -> None:
        block = CodeBlock(language="python", code="x = 1\n", index=3)
        assert infer_filename(block, Lane.PYTHON_SCRIPT, {"main.py"}) == "main_3.py"

    def test_unknown_language_is_dropped(self) -> None:
        block = CodeBlock(language="bash", code="ls\n", index=0)
        assert infer_filename(block, Lane.PYTHON_SCRIPT, set()) is None


# ── assemble_file_map ────────────────────────────────────────────────────

class TestAssembleFileMap:
    def test_declared_names_win_over_inferred(self) -> None:
        blocks = [
            CodeBlock(language="python", code="a\n", index=0),
            CodeBlock(language="python", filename="main.py", code="b\n", index=1),
        ]
        fm = assemble_file_map(blocks, Lane.PYTHON_APP)
        assert fm.files["main.py"] == "b\n"
        assert fm.files["main_0.py"] == "a\n"
        assert "main_0.py" in fm.inferred

    def test_primary_is_promoted_from_inferred(self) -> None:
        blocks = [
            CodeBlock(language="rust", code="fn main() {}\n", index=0),
            CodeBlock(language="toml", filename="Cargo.toml", code="[package]\n", index=1),
        ]
        fm = assemble_file_map(blocks, Lane.RUST)
        assert fm.has_primary()
        assert fm.primary_path == "src/main.rs"

    def test_single_declared_file_of_primary_kind_is_promoted(self) -> None:
        blocks = [CodeBlock(language="html", filename="app.html", code="<html></html>\n", index=0)]
        fm = assemble_file_map(blocks, Lane.WEB)
        assert list(fm.files) == ["index.html"]

    def test_missing_primary_raises(self) -> None:
        blocks = [CodeBlock(language="css", filename="styles.css", code="body {}\n", index=0)]
        with pytest.raises(MissingPrimaryFile) as exc_info:
            assemble_file_map(blocks, Lane.WEB)
        assert exc_info.value.primary == "index.html"

    def test_primary_not_required_for_partial_maps(self) -> None:
        blocks = [CodeBlock(language="css", filename="styles.css", code="body {}\n", index=0)]
        fm = assemble_file_map(blocks, Lane.WEB, require_primary=False)
        assert list(fm.files) == ["styles.css"]

    def test_no_blocks_raises(self) -> None:
        with pytest.raises(NoCodeBlocks) as exc_info:
            assemble_file_map([], Lane.WEB, response_length=42)
        assert exc_info.value.response_length == 42

    def test_only_unusable_blocks_raises(self) -> None:
        blocks = [CodeBlock(language="bash", code="ls\n", index=0)]
        with pytest.raises(NoCodeBlocks):
            assemble_file_map(blocks, Lane.PYTHON_SCRIPT)
