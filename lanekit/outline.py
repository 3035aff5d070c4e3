"""Symbol outline of generated files.

Used to describe the files a surgical repair leaves untouched: the
regenerated files are told which names those files export so they keep
calling them correctly.
"""

from __future__ import annotations

from lanekit.contracts import FileMap, detect_language
from lanekit.lang import Symbol, js_intel, markup_intel, powershell_intel, python_intel, rust_intel


def file_symbols(path: str, source: str) -> list[Symbol]:
    """Top-level symbols of one file ([] for data and unknown files)."""
    language = detect_language(path)
    if language == "python":
        return python_intel.extract_symbols(source)
    if language == "javascript":
        return js_intel.extract_symbols(source)
    if language == "rust":
        return rust_intel.extract_symbols(source)
    if language == "powershell":
        return powershell_intel.extract_functions(source)
    if language == "html":
        symbols: list[Symbol] = []
        for block in markup_intel.inline_blocks(source):
            if block.kind == "script":
                symbols.extend(js_intel.extract_symbols(block.code))
        return symbols
    return []


def symbol_contract(file_map: FileMap, exclude: set[str] | None = None) -> dict[str, list[str]]:
    """``{path: [exported names]}`` for every file not in *exclude*."""
    exclude = exclude or set()
    return {
        path: [s.name for s in file_symbols(path, source)]
        for path, source in file_map.files.items()
        if path not in exclude
    }


__all__ = ["file_symbols", "symbol_contract"]
