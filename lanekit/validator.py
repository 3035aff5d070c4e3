"""Validator — deterministic static analysis of a generated FileMap.

``Validator.validate(file_map)`` returns the blocking ``ValidationError``
list; ``validate_report`` also returns the advisory warnings.  Validation
is pure: the FileMap is never modified, and re-validating an unchanged map
yields the same result.

Checks, per file (dispatched by extension):

- syntax with the language's own grammar (``ast``, tree-sitter, the
  PowerShell tokenizer or ``pwsh``, ``tomllib``, ``json``, the psd1 reader)
- PowerShell 5.1 compatibility for pinned lanes
- markup structure and remote assets for self-contained lanes
- injection sinks in scripts and inline ``<script>`` bodies
- per-language security denylist (blocking) and warning list
- secret scan

and per lane:

- primary entry point present
- rust: every ``use`` root resolves to a Cargo dependency or a module
  declared anywhere in the FileMap
- powershell_module: manifest completeness, export naming and the
  sandbox denylist
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import PurePosixPath

from lanekit import redactor
from lanekit.contracts import (
    ErrorCategory,
    FileMap,
    ValidationError,
    ValidationReport,
    ValidationWarning,
    detect_language,
)
from lanekit.errors import ParseError
from lanekit.lanes import Lane, LaneProfile, get_profile
from lanekit.lang import SyntaxIssue, js_intel, markup_intel, powershell_intel, python_intel, rust_intel

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Security rules: (message, pattern)
# ---------------------------------------------------------------------------

Rule = tuple[str, re.Pattern[str]]

BLOCKING_RULES: dict[str, tuple[Rule, ...]] = {
    "python": (
        ("dynamic evaluation via eval()", re.compile(r"(?<![\w.])eval\s*\(")),
        ("dynamic execution via exec()", re.compile(r"(?<![\w.])exec\s*\(")),
        ("deserializing untrusted data with pickle", re.compile(r"\b(?:c?pickle|dill)\.loads?\s*\(")),
        ("deserializing untrusted data with marshal", re.compile(r"\bmarshal\.loads?\s*\(")),
        (
            "yaml.load() without SafeLoader",
            re.compile(r"\byaml\.load\s*\((?![^)]*Loader\s*=\s*(?:yaml\.)?(?:Safe|CSafe)Loader)"),
        ),
        ("subprocess call with shell=True", re.compile(r"\bshell\s*=\s*True\b")),
    ),
    "javascript": (
        ("spawning processes via child_process", re.compile(r"""require\(\s*['"]child_process['"]\s*\)""")),
        ("dynamic evaluation via execScript", re.compile(r"\bexecScript\s*\(")),
    ),
    "powershell": (
        ("dynamic evaluation via Invoke-Expression", re.compile(r"(?i)\bInvoke-Expression\b|(?<![\w-])iex\b")),
        ("dynamic evaluation via [ScriptBlock]::Create", re.compile(r"(?i)\[scriptblock\]::Create\s*\(")),
        ("encoded command execution", re.compile(r"(?i)-EncodedCommand\b|-enc\s+[A-Za-z0-9+/=]{16,}")),
        (
            "weakening the execution policy",
            re.compile(r"(?i)\bSet-ExecutionPolicy\b[^\r\n]*\b(?:Unrestricted|Bypass)\b"),
        ),
        ("download-and-run cradle", re.compile(r"(?i)\.DownloadString\s*\(|\bDownloadFile\s*\([^)]*\.ps1")),
    ),
    "rust": (
        (
            "spawning a shell via Command::new",
            re.compile(r"""Command::new\(\s*"(?:sh|bash|zsh|cmd(?:\.exe)?|powershell(?:\.exe)?|pwsh)"\s*\)"""),
        ),
    ),
}

WARNING_RULES: dict[str, tuple[Rule, ...]] = {
    "python": (
        ("os.system() runs through the shell", re.compile(r"\bos\.system\s*\(")),
        ("dynamic import via __import__()", re.compile(r"\b__import__\s*\(")),
        ("TLS verification disabled", re.compile(r"\bverify\s*=\s*False\b")),
        ("tempfile.mktemp() is race-prone", re.compile(r"\btempfile\.mktemp\s*\(")),
    ),
    "javascript": (
        ("document.cookie access", re.compile(r"\bdocument\.cookie\b")),
        ("postMessage to any origin", re.compile(r"""postMessage\([^)]*,\s*['"]\*['"]\s*\)""")),
    ),
    "powershell": (
        ("Start-Process launches external programs", re.compile(r"(?i)\bStart-Process\b")),
        ("plain-text SecureString conversion", re.compile(r"(?i)\bConvertTo-SecureString\b[^\r\n]*-AsPlainText")),
        ("Add-Type compiles inline code", re.compile(r"(?i)\bAdd-Type\b")),
        ("recursive forced deletion", re.compile(r"(?i)\bRemove-Item\b[^\r\n]*-Recurse\b[^\r\n]*-Force\b")),
    ),
    "rust": (
        ("unsafe block", re.compile(r"\bunsafe\s*\{")),
        ("std::mem::transmute", re.compile(r"\bmem::transmute\b")),
    ),
}

# The module lane promises no host side effects beyond its exported API.
MODULE_SANDBOX_RULES: tuple[Rule, ...] = (
    ("native interop via DllImport", re.compile(r"(?i)\bDllImport\b")),
    ("desktop automation via user32", re.compile(r"(?i)\buser32(?:\.dll)?\b")),
    ("desktop automation via SendKeys", re.compile(r"(?i)\bSendKeys\b")),
    ("desktop automation via UI Automation", re.compile(r"(?i)\bUIAutomation\w*|System\.Windows\.Automation\b")),
    ("remote management via Get-WmiObject", re.compile(r"(?i)\bGet-WmiObject\b|\bgwmi\b")),
    ("remote management via Invoke-WmiMethod", re.compile(r"(?i)\bInvoke-WmiMethod\b")),
    ("remote query via Get-CimInstance -ComputerName", re.compile(r"(?i)\bGet-CimInstance\b[^\r\n]*-ComputerName\b")),
    ("remote execution via Invoke-Command -ComputerName", re.compile(r"(?i)\bInvoke-Command\b[^\r\n]*-ComputerName\b")),
    ("remote session via New-PSSession", re.compile(r"(?i)\bNew-PSSession\b")),
    ("remote session via Enter-PSSession", re.compile(r"(?i)\bEnter-PSSession\b")),
    ("network listener via HttpListener", re.compile(r"(?i)\bHttpListener\b")),
    ("network listener via TcpListener", re.compile(r"(?i)\bTcpListener\b")),
    ("raw socket via UdpClient", re.compile(r"(?i)\bUdpClient\b")),
    ("raw socket via Net.Sockets.Socket", re.compile(r"(?i)\bNet\.Sockets\.Socket\b")),
)

MODULE_MANIFEST_FIELDS: tuple[str, ...] = (
    "RootModule", "ModuleVersion", "GUID", "Author", "Description", "FunctionsToExport",
)


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------


class _Findings:
    """Ordered, de-duplicated error / warning accumulator."""

    def __init__(self) -> None:
        self._errors: dict[tuple, ValidationError] = {}
        self._warnings: dict[tuple, ValidationWarning] = {}

    def error(self, file: str, message: str, category: ErrorCategory, line: int | None = None) -> None:
        key = (file, message, line)
        if key not in self._errors:
            self._errors[key] = ValidationError(file=file, message=message, category=category, line=line)

    def warning(self, file: str, message: str, line: int | None = None) -> None:
        key = (file, message, line)
        if key not in self._warnings:
            self._warnings[key] = ValidationWarning(file=file, message=message, line=line)

    def syntax(self, file: str, issues: list[SyntaxIssue]) -> None:
        for issue in issues:
            self.error(file, f"syntax error: {issue.message}", "syntax", issue.line)

    def report(self) -> ValidationReport:
        return ValidationReport(errors=list(self._errors.values()), warnings=list(self._warnings.values()))


def _line_of(text: str, offset: int) -> int:
    return text.count("\n", 0, offset) + 1


def _apply_rules(out: _Findings, path: str, view: str, rules: tuple[Rule, ...], *,
                 blocking: bool, category: ErrorCategory = "security", line_offset: int = 0) -> None:
    for message, pattern in rules:
        for m in pattern.finditer(view):
            line = _line_of(view, m.start()) + line_offset
            if blocking:
                out.error(path, message, category, line)
            else:
                out.warning(path, message, line)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class Validator:
    """Static analysis over a whole FileMap.

    Parameters
    ----------
    pwsh_path:
        Path to a ``pwsh`` binary; when set, PowerShell syntax is checked
        with the real parser (falling back to the built-in tokenizer if it
        cannot be run).
    pwsh_timeout:
        Seconds allowed per ``pwsh`` parse.
    """

    def __init__(self, *, pwsh_path: str | None = None, pwsh_timeout: float = 30.0) -> None:
        self.pwsh_path = pwsh_path
        self.pwsh_timeout = pwsh_timeout

    # -- public API ---------------------------------------------------------

    def validate(self, file_map: FileMap) -> list[ValidationError]:
        """Blocking errors only.  Success iff the list is empty."""
        return self.validate_report(file_map).errors

    def validate_report(self, file_map: FileMap) -> ValidationReport:
        profile = get_profile(file_map.lane)
        out = _Findings()

        if not file_map.has_primary():
            out.error(profile.primary_file, "primary entry point is missing", "structural")

        for path, source in file_map.files.items():
            self._check_file(out, profile, file_map, path, source)
            for hit in redactor.find_secrets(source):
                out.error(path, f"hard-coded secret ({hit.pattern_name}: {hit.masked})", "security", hit.line)

        if profile.lane is Lane.RUST:
            self._check_rust_manifest(out, profile, file_map)
        elif profile.lane is Lane.POWERSHELL_MODULE:
            self._check_module_manifest(out, profile, file_map)

        report = out.report()
        logger.debug(
            "Validated %d files (%s): %d errors, %d warnings",
            len(file_map), profile.lane.value, len(report.errors), len(report.warnings),
        )
        return report

    # -- per-file dispatch --------------------------------------------------

    def _check_file(self, out: _Findings, profile: LaneProfile, file_map: FileMap, path: str, source: str) -> None:
        language = detect_language(path)
        if language == "python":
            self._check_python(out, profile, file_map, path, source)
        elif language == "javascript":
            self._check_javascript(out, path, source)
        elif language == "html":
            self._check_html(out, profile, path, source)
        elif language == "css":
            if profile.self_contained:
                for line, url in markup_intel.css_remote_imports(source):
                    out.error(path, f"external stylesheet @import '{url}' in a self-contained app", "structural", line)
        elif language == "powershell":
            self._check_powershell(out, profile, path, source)
        elif language == "psd1":
            try:
                powershell_intel.read_data_file(source)
            except ParseError as exc:
                out.error(path, f"manifest is not a valid data file: {exc.reason}", "syntax")
        elif language == "rust":
            out.syntax(path, rust_intel.syntax_errors(source))
            view = rust_intel.strip_comments(source)
            _apply_rules(out, path, view, BLOCKING_RULES["rust"], blocking=True)
            _apply_rules(out, path, view, WARNING_RULES["rust"], blocking=False)
        elif language == "toml":
            try:
                rust_intel.parse_cargo(source)
            except ParseError as exc:
                out.error(path, f"invalid TOML: {exc.reason}", "syntax")
        elif language == "json":
            try:
                json.loads(source)
            except json.JSONDecodeError as exc:
                out.error(path, f"invalid JSON: {exc.msg}", "syntax", exc.lineno)

    def _check_python(self, out: _Findings, profile: LaneProfile, file_map: FileMap, path: str, source: str) -> None:
        issues = python_intel.syntax_errors(source)
        out.syntax(path, issues)
        view = python_intel.strip_comments(source)
        _apply_rules(out, path, view, BLOCKING_RULES["python"], blocking=True)
        _apply_rules(out, path, view, WARNING_RULES["python"], blocking=False)

        if issues or profile.lane is not Lane.PYTHON_APP:
            return
        local = set()
        for other in file_map.paths:
            p = PurePosixPath(other)
            if p.suffix == ".py":
                local.add(p.stem)
                local.update(p.parts[:-1])
        manifest = profile.manifest_file
        declared = python_intel.parse_requirements(file_map.files.get(manifest, "")) if manifest else set()
        for module, line in python_intel.undeclared_imports(source, local, declared):
            out.warning(path, f"import '{module}' is not declared in {manifest}", line)

    def _check_javascript(self, out: _Findings, path: str, source: str, *, line_offset: int = 0) -> None:
        out.syntax(path, js_intel.syntax_errors(source, line_offset=line_offset))
        for line, message in js_intel.find_injection_risks(source, line_offset=line_offset):
            out.error(path, message, "security", line)
        view = js_intel.strip_comments(source)
        _apply_rules(out, path, view, BLOCKING_RULES["javascript"], blocking=True, line_offset=line_offset)
        _apply_rules(out, path, view, WARNING_RULES["javascript"], blocking=False, line_offset=line_offset)

    def _check_html(self, out: _Findings, profile: LaneProfile, path: str, source: str) -> None:
        out.syntax(path, markup_intel.syntax_errors(source))
        for tag in markup_intel.missing_root_elements(source):
            out.error(path, f"missing required <{tag}> element", "structural")
        if profile.self_contained:
            for line, message in markup_intel.remote_references(source):
                out.error(path, f"{message} in a self-contained app", "structural", line)
        for block in markup_intel.inline_blocks(source):
            if block.kind == "script":
                self._check_javascript(out, path, block.code, line_offset=block.line_offset)

    def _check_powershell(self, out: _Findings, profile: LaneProfile, path: str, source: str) -> None:
        issues = None
        if self.pwsh_path:
            issues = powershell_intel.parse_with_pwsh(source, self.pwsh_path, timeout=self.pwsh_timeout)
        if issues is None:
            issues = powershell_intel.syntax_errors(source)
        out.syntax(path, issues)

        if profile.min_runtime == "powershell-5.1":
            for line, construct in powershell_intel.compat_issues(source):
                out.error(path, f"{construct} is not supported by Windows PowerShell 5.1", "compatibility", line)

        view = powershell_intel.scan(source).no_comments
        _apply_rules(out, path, view, BLOCKING_RULES["powershell"], blocking=True)
        _apply_rules(out, path, view, WARNING_RULES["powershell"], blocking=False)
        if profile.library:
            _apply_rules(out, path, view, MODULE_SANDBOX_RULES, blocking=True)

    # -- lane checks --------------------------------------------------------

    def _check_rust_manifest(self, out: _Findings, profile: LaneProfile, file_map: FileMap) -> None:
        manifest_path = profile.manifest_file or "Cargo.toml"
        manifest_text = file_map.files.get(manifest_path)
        if manifest_text is None:
            out.error(manifest_path, "Cargo manifest is missing", "structural")
            return
        try:
            manifest = rust_intel.parse_cargo(manifest_text)
        except ParseError:
            return  # already reported as a syntax error

        known: set[str] = set(manifest.dependencies) | rust_intel.RUST_BUILTIN_CRATES
        if manifest.package_name:
            known.add(manifest.package_name.replace("-", "_"))
        rust_files = [p for p in file_map.paths if p.endswith(".rs")]
        for path in rust_files:
            p = PurePosixPath(path)
            known.add(p.parent.name if p.stem == "mod" else p.stem)
            known |= rust_intel.local_names(file_map.files[path])

        for path in rust_files:
            for root, line in rust_intel.use_roots(file_map.files[path]):
                if root in known:
                    continue
                out.error(
                    path,
                    f"unresolved import '{root}': not a dependency in {manifest_path} "
                    "and not a module declared in any file",
                    "structural",
                    line,
                )

    def _check_module_manifest(self, out: _Findings, profile: LaneProfile, file_map: FileMap) -> None:
        manifest_path = profile.manifest_file or "Module.psd1"
        if manifest_path not in file_map:
            others = [p for p in file_map.paths if p.lower().endswith(".psd1")]
            if not others:
                out.error(manifest_path, "module manifest is missing", "structural")
                return
            manifest_path = others[0]
        try:
            data = powershell_intel.read_data_file(file_map.files[manifest_path])
        except ParseError:
            return  # already reported as a syntax error

        fields = {k.lower(): v for k, v in data.items()}
        for name in MODULE_MANIFEST_FIELDS:
            value = fields.get(name.lower())
            if value is None or value == "":
                out.error(manifest_path, f"required manifest field '{name}' is missing", "structural")

        root_module = fields.get("rootmodule")
        if isinstance(root_module, str) and root_module:
            wanted = root_module.replace("\\", "/").lstrip("./")
            if not any(p == wanted or PurePosixPath(p).name == wanted for p in file_map.paths):
                out.error(manifest_path, f"RootModule '{root_module}' does not match any generated file", "structural")

        exported = fields.get("functionstoexport")
        names = [exported] if isinstance(exported, str) else list(exported or [])
        names = [str(n).strip() for n in names if str(n).strip()]
        if "functionstoexport" in fields and (not names or "*" in names):
            out.error(
                manifest_path,
                "FunctionsToExport must list at least one function explicitly (no '*')",
                "structural",
            )
            names = [n for n in names if n != "*"]

        defined: set[str] = set()
        for path, source in file_map.files.items():
            if detect_language(path) == "powershell":
                defined.update(s.name.lower() for s in powershell_intel.extract_functions(source))

        for name in names:
            rule = powershell_intel.naming_violation(name)
            if rule:
                out.error(manifest_path, f"exported function '{name}': {rule}", "structural")
            if name.lower() not in defined:
                out.error(manifest_path, f"exported function '{name}' is not defined in the module", "structural")


def validate(file_map: FileMap) -> list[ValidationError]:
    """Validate with default settings (built-in PowerShell tokenizer)."""
    return Validator().validate(file_map)


def validate_report(file_map: FileMap) -> ValidationReport:
    return Validator().validate_report(file_map)


__all__ = [
    "BLOCKING_RULES",
    "MODULE_MANIFEST_FIELDS",
    "MODULE_SANDBOX_RULES",
    "Validator",
    "WARNING_RULES",
    "validate",
    "validate_report",
]
