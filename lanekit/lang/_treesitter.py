"""Shared tree-sitter plumbing: cached parsers, error walks, comment blanking."""

from __future__ import annotations

from functools import lru_cache
from typing import Iterator

import tree_sitter_html
import tree_sitter_javascript
import tree_sitter_rust
from tree_sitter import Language, Node, Parser, Tree

from lanekit.lang import SyntaxIssue

_GRAMMARS = {
    "javascript": tree_sitter_javascript.language,
    "html": tree_sitter_html.language,
    "rust": tree_sitter_rust.language,
}


@lru_cache(maxsize=None)
def get_parser(language: str) -> Parser:
    """Return a (cached) parser for one of the bundled grammars."""
    return Parser(Language(_GRAMMARS[language]()))


def parse(language: str, source: str) -> Tree:
    return get_parser(language).parse(source.encode("utf-8"))


def walk(node: Node) -> Iterator[Node]:
    """Depth-first pre-order traversal."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(current.children))


def error_issues(tree: Tree, *, limit: int = 20) -> list[SyntaxIssue]:
    """Collect ERROR and MISSING nodes as ``SyntaxIssue``s (outermost first)."""
    issues: list[SyntaxIssue] = []
    root = tree.root_node
    if not root.has_error:
        return issues
    for node in walk(root):
        if node.type == "ERROR":
            row, col = node.start_point
            snippet = node.text.decode("utf-8", "replace").strip().splitlines()
            near = snippet[0][:40] if snippet else ""
            issues.append(SyntaxIssue(
                line=row + 1, column=col,
                message=f"syntax error near {near!r}" if near else "syntax error",
                code="ERROR",
            ))
        elif node.is_missing:
            row, col = node.start_point
            issues.append(SyntaxIssue(
                line=row + 1, column=col,
                message=f"missing {node.type!r}",
                code="MISSING",
            ))
        if len(issues) >= limit:
            break
    return issues


def blank_nodes(source: str, tree: Tree, node_types: frozenset[str]) -> str:
    """Replace the text of matching nodes with spaces, keeping newlines.

    Offsets and line numbers of the remaining code are preserved.
    """
    data = bytearray(source.encode("utf-8"))
    for node in walk(tree.root_node):
        if node.type in node_types:
            for i in range(node.start_byte, node.end_byte):
                if data[i] not in (0x0A, 0x0D):
                    data[i] = 0x20
    return data.decode("utf-8", "replace")
