"""HTML / CSS intelligence built on tree-sitter-html.

Pure functions: element outline, mandatory root elements, remote asset
references and inline ``<script>`` / ``<style>`` bodies (with the line they
start on, so their findings map back onto the HTML file).
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field

from lanekit.lang import SyntaxIssue
from lanekit.lang import _treesitter

REQUIRED_ROOT_ELEMENTS: tuple[str, ...] = ("html", "head", "body")

_REMOTE_URL_RE = re.compile(r"^\s*(?:https?:)?//", re.IGNORECASE)
_CSS_IMPORT_RE = re.compile(
    r"""@import\s+(?:url\(\s*)?["']?(?P<url>[^"')\s;]+)""",
    re.IGNORECASE,
)
_NON_SCRIPT_TYPES = frozenset({
    "application/json", "application/ld+json", "text/template", "text/x-template", "importmap",
})


class Element(BaseModel):
    """One start tag found in a document."""

    model_config = ConfigDict(frozen=True)

    tag: str
    attrs: dict[str, str] = Field(default_factory=dict)
    line: int = Field(..., ge=1)


class InlineBlock(BaseModel):
    """Body of an inline ``<script>`` or ``<style>`` element."""

    model_config = ConfigDict(frozen=True)

    kind: str
    code: str
    line_offset: int = Field(..., ge=0, description="Lines before the body starts")
    attrs: dict[str, str] = Field(default_factory=dict)


def syntax_errors(source: str) -> list[SyntaxIssue]:
    if not source.strip():
        return []
    return _treesitter.error_issues(_treesitter.parse("html", source))


def _attributes(tag_node) -> dict[str, str]:
    attrs: dict[str, str] = {}
    for child in tag_node.children:
        if child.type != "attribute":
            continue
        name = ""
        value = ""
        for part in child.children:
            if part.type == "attribute_name":
                name = part.text.decode("utf-8", "replace").lower()
            elif part.type == "attribute_value":
                value = part.text.decode("utf-8", "replace")
            elif part.type == "quoted_attribute_value":
                value = part.text.decode("utf-8", "replace")[1:-1]
        if name:
            attrs[name] = value
    return attrs


def _tag_name(tag_node) -> str:
    for child in tag_node.children:
        if child.type == "tag_name":
            return child.text.decode("utf-8", "replace").lower()
    return ""


def elements(source: str) -> list[Element]:
    """All start / self-closing tags in document order."""
    tree = _treesitter.parse("html", source)
    found: list[Element] = []
    for node in _treesitter.walk(tree.root_node):
        if node.type in ("start_tag", "self_closing_tag"):
            found.append(Element(
                tag=_tag_name(node),
                attrs=_attributes(node),
                line=node.start_point[0] + 1,
            ))
    return found


def missing_root_elements(source: str) -> list[str]:
    """Names from ``REQUIRED_ROOT_ELEMENTS`` that never appear as a tag."""
    present = {el.tag for el in elements(source)}
    return [tag for tag in REQUIRED_ROOT_ELEMENTS if tag not in present]


def inline_blocks(source: str) -> list[InlineBlock]:
    """Inline script and style bodies (scripts with ``src`` are skipped)."""
    tree = _treesitter.parse("html", source)
    blocks: list[InlineBlock] = []
    for node in _treesitter.walk(tree.root_node):
        if node.type not in ("script_element", "style_element"):
            continue
        attrs: dict[str, str] = {}
        body = None
        for child in node.children:
            if child.type == "start_tag":
                attrs = _attributes(child)
            elif child.type == "raw_text":
                body = child
        if body is None:
            continue
        kind = "script" if node.type == "script_element" else "style"
        if kind == "script" and ("src" in attrs or attrs.get("type", "").lower() in _NON_SCRIPT_TYPES):
            continue
        blocks.append(InlineBlock(
            kind=kind,
            code=body.text.decode("utf-8", "replace"),
            line_offset=body.start_point[0],
            attrs=attrs,
        ))
    return blocks


def css_remote_imports(css: str, *, line_offset: int = 0) -> list[tuple[int, str]]:
    """``(line, url)`` for every ``@import`` of a remote stylesheet."""
    found: list[tuple[int, str]] = []
    for m in _CSS_IMPORT_RE.finditer(css):
        url = m.group("url")
        if _REMOTE_URL_RE.match(url):
            found.append((css.count("\n", 0, m.start()) + 1 + line_offset, url))
    return found


def remote_references(source: str) -> list[tuple[int, str]]:
    """``(line, message)`` for externally hosted scripts and stylesheets."""
    found: list[tuple[int, str]] = []
    for el in elements(source):
        if el.tag == "script" and _REMOTE_URL_RE.match(el.attrs.get("src", "")):
            found.append((el.line, f"external script src '{el.attrs['src']}'"))
        elif el.tag == "link":
            href = el.attrs.get("href", "")
            rel = el.attrs.get("rel", "").lower()
            is_style = "stylesheet" in rel or href.lower().split("?")[0].endswith(".css")
            if is_style and _REMOTE_URL_RE.match(href):
                found.append((el.line, f"external stylesheet href '{href}'"))
    for block in inline_blocks(source):
        if block.kind == "style":
            for line, url in css_remote_imports(block.code, line_offset=block.line_offset):
                found.append((line, f"external stylesheet @import '{url}'"))
    found.sort()
    return found


__all__ = [
    "Element",
    "InlineBlock",
    "REQUIRED_ROOT_ELEMENTS",
    "css_remote_imports",
    "elements",
    "inline_blocks",
    "missing_root_elements",
    "remote_references",
    "syntax_errors",
]
