"""Post-processing and build backends.

Branding, sandboxed writing of the validated file map, the per-lane
backends that turn a source directory into a distributable artifact, and
the smoke test run on that artifact.

Backends
--------
CopyBackend     web, powershell       -- the sources are the artifact
ZipappBackend   python lanes          -- single-file ``.pyz``
ArchiveBackend  powershell_module     -- ``<Module>.zip`` with the module folder
CargoBackend    rust                  -- ``cargo build --release`` with a timeout
"""

from __future__ import annotations

import asyncio
import html
import logging
import os
import re
import shutil
import subprocess
import sys
import time
import zipapp
import zipfile
from pathlib import Path, PureWindowsPath
from typing import Protocol

from lanekit.contracts import FileMap, detect_language
from lanekit.errors import ParseError, SandboxViolation
from lanekit.lanes import Lane, get_profile
from lanekit.lang import rust_intel

from app.services.pipeline.models import BackendResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MAX_DIAGNOSTIC_CHARS = 4000

_GENERATOR_META_RE = re.compile(r"<meta\b[^>]*\bname\s*=\s*[\"']generator[\"']", re.IGNORECASE)
_HEAD_OPEN_RE = re.compile(r"<head\b[^>]*>", re.IGNORECASE)
_CODING_COOKIE_RE = re.compile(r"^[ \t\f]*#.*?coding[:=]")

_COMMENT_PREFIX: dict[str, str] = {
    "python": "#",
    "powershell": "#",
    "rust": "//",
    "javascript": "//",
}


def slugify(name: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "-", name).strip("-").lower()
    return slug or "app"


def module_name(app_name: str) -> str:
    """PascalCase identifier for PowerShell module folders."""
    words = re.findall(r"[A-Za-z0-9]+", app_name)
    return "".join(w[:1].upper() + w[1:] for w in words) or "Module"


def size_label(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def _truncate(text: str, limit: int = MAX_DIAGNOSTIC_CHARS) -> str:
    if len(text) <= limit:
        return text
    return f"[... {len(text) - limit} chars truncated ...]\n" + text[-limit:]


# ---------------------------------------------------------------------------
# Branding
# ---------------------------------------------------------------------------


def apply_branding(file_map: FileMap, text: str) -> bool:
    """Mark the primary file as generated.  Idempotent.

    HTML gets a ``<meta name="generator">`` tag inside ``<head>``; code
    lanes get a one-line comment header (after any shebang or encoding
    cookie).  Returns True when the file changed.
    """
    primary = file_map.primary_path
    source = file_map.files.get(primary)
    if source is None or not text:
        return False

    language = detect_language(primary)
    if language == "html":
        if _GENERATOR_META_RE.search(source):
            return False
        m = _HEAD_OPEN_RE.search(source)
        if not m:
            return False
        tag = f'\n    <meta name="generator" content="{html.escape(text, quote=True)}">'
        file_map.files[primary] = source[:m.end()] + tag + source[m.end():]
        return True

    prefix = _COMMENT_PREFIX.get(language)
    if prefix is None:
        return False
    header = f"{prefix} {text}"
    lines = source.splitlines(keepends=True)
    if any(line.rstrip("\r\n") == header for line in lines[:3]):
        return False
    keep = 0
    while keep < min(len(lines), 2) and (
        lines[keep].startswith("#!") or _CODING_COOKIE_RE.match(lines[keep])
    ):
        keep += 1
    file_map.files[primary] = "".join(lines[:keep]) + header + "\n" + "".join(lines[keep:])
    return True


# ---------------------------------------------------------------------------
# Sandboxed writer
# ---------------------------------------------------------------------------


def resolve_inside(root: Path, rel_path: str) -> Path:
    """Resolve *rel_path* under *root*, raising ``SandboxViolation`` on escape."""
    root_str = str(root)
    if not rel_path or not rel_path.strip():
        raise SandboxViolation(rel_path or "", root=root_str, reason="path is empty")
    if "\x00" in rel_path:
        raise SandboxViolation(rel_path, root=root_str, reason="path contains null bytes")
    if os.path.isabs(rel_path) or PureWindowsPath(rel_path).is_absolute() or PureWindowsPath(rel_path).drive:
        raise SandboxViolation(rel_path, root=root_str, reason="absolute paths are not allowed")
    components = rel_path.replace("\\", "/").split("/")
    if ".." in components:
        raise SandboxViolation(rel_path, root=root_str, reason="path traversal with '..' is not allowed")

    target = (root / "/".join(components)).resolve()
    try:
        target.relative_to(root)
    except ValueError:
        raise SandboxViolation(rel_path, root=root_str, reason="resolved path is outside the output directory")
    return target


def write_file_map(file_map: FileMap, root: Path | str) -> list[Path]:
    """Write every file under *root* (UTF-8).

    All paths are checked before anything is written, so a single bad path
    leaves the directory untouched.
    """
    base = Path(root)
    base.mkdir(parents=True, exist_ok=True)
    base = base.resolve()
    targets = [(resolve_inside(base, rel), source) for rel, source in file_map.files.items()]
    written: list[Path] = []
    for target, source in targets:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(source, encoding="utf-8")
        written.append(target)
    logger.info("Wrote %d file(s) to %s", len(written), base)
    return written


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class BuildBackend(Protocol):
    async def build(self, source_dir: Path, app_name: str) -> BackendResult: ...


def _result_for(artifact: Path, started: float) -> BackendResult:
    if not artifact.exists():
        return BackendResult(
            success=False,
            build_time_seconds=time.monotonic() - started,
            diagnostic_text=f"expected artifact {artifact} was not produced",
        )
    if artifact.is_dir():
        size = sum(p.stat().st_size for p in artifact.rglob("*") if p.is_file())
    else:
        size = artifact.stat().st_size
    return BackendResult(
        success=True,
        artifact_path=str(artifact),
        size_bytes=size,
        size_label=size_label(size),
        build_time_seconds=time.monotonic() - started,
    )


class CopyBackend:
    """Interpreted lanes whose sources are already the deliverable."""

    def __init__(self, lane: Lane, dist_dir: Path) -> None:
        self.lane = lane
        self.dist_dir = Path(dist_dir)

    async def build(self, source_dir: Path, app_name: str) -> BackendResult:
        started = time.monotonic()
        target = self.dist_dir / slugify(app_name)
        await asyncio.to_thread(shutil.copytree, source_dir, target, dirs_exist_ok=True)
        return _result_for(target / get_profile(self.lane).primary_file, started)


_ZIPAPP_MAIN = 'import runpy\n\nrunpy.run_module("main", run_name="__main__")\n'


class ZipappBackend:
    """Python lanes: a runnable ``.pyz`` whose entry point is ``main.py``."""

    def __init__(self, dist_dir: Path, *, interpreter: str = "/usr/bin/env python3") -> None:
        self.dist_dir = Path(dist_dir)
        self.interpreter = interpreter

    def _build_sync(self, source_dir: Path, target: Path) -> None:
        staging = self.dist_dir / f".{target.stem}-staging"
        if staging.exists():
            shutil.rmtree(staging)
        shutil.copytree(
            source_dir, staging,
            ignore=shutil.ignore_patterns("__pycache__", "*.pyc", "requirements.txt"),
        )
        if not (staging / "__main__.py").exists():
            (staging / "__main__.py").write_text(_ZIPAPP_MAIN, encoding="utf-8")
        try:
            zipapp.create_archive(staging, target=target, interpreter=self.interpreter)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    async def build(self, source_dir: Path, app_name: str) -> BackendResult:
        started = time.monotonic()
        self.dist_dir.mkdir(parents=True, exist_ok=True)
        target = self.dist_dir / f"{slugify(app_name)}.pyz"
        try:
            await asyncio.to_thread(self._build_sync, Path(source_dir), target)
        except (OSError, zipapp.ZipAppError) as exc:
            return BackendResult(success=False, diagnostic_text=f"zipapp failed: {exc}")
        return _result_for(target, started)


class ArchiveBackend:
    """PowerShell modules: ``<Name>.zip`` holding ``<Name>/<module files>``."""

    def __init__(self, dist_dir: Path) -> None:
        self.dist_dir = Path(dist_dir)

    def _build_sync(self, source_dir: Path, name: str, target: Path) -> None:
        with zipfile.ZipFile(target, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in sorted(source_dir.rglob("*")):
                if path.is_file():
                    zf.write(path, arcname=f"{name}/{path.relative_to(source_dir).as_posix()}")

    async def build(self, source_dir: Path, app_name: str) -> BackendResult:
        started = time.monotonic()
        self.dist_dir.mkdir(parents=True, exist_ok=True)
        name = module_name(app_name)
        target = self.dist_dir / f"{name}.zip"
        try:
            await asyncio.to_thread(self._build_sync, Path(source_dir), name, target)
        except OSError as exc:
            return BackendResult(success=False, diagnostic_text=f"archive failed: {exc}")
        return _result_for(target, started)


class CargoBackend:
    """Rust: ``cargo build --release``, killed after *timeout_s*."""

    def __init__(self, dist_dir: Path, *, cargo_path: str = "cargo", timeout_s: float = 600.0) -> None:
        self.dist_dir = Path(dist_dir)
        self.cargo_path = cargo_path
        self.timeout_s = timeout_s

    def _run_sync(self, source_dir: Path) -> tuple[int, str, bool]:
        """Run in a thread so the event loop stays free."""
        try:
            proc = subprocess.run(
                [self.cargo_path, "build", "--release"],
                cwd=source_dir,
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
            return proc.returncode, (proc.stdout or "") + (proc.stderr or ""), False
        except subprocess.TimeoutExpired as exc:
            partial = exc.stderr or b""
            if isinstance(partial, bytes):
                partial = partial.decode("utf-8", errors="replace")
            return -1, partial, True

    def _binary_name(self, source_dir: Path, app_name: str) -> str:
        try:
            manifest = rust_intel.parse_cargo((source_dir / "Cargo.toml").read_text(encoding="utf-8"))
            name = manifest.package_name or slugify(app_name)
        except (OSError, ParseError):
            name = slugify(app_name)
        return name + (".exe" if sys.platform == "win32" else "")

    async def build(self, source_dir: Path, app_name: str) -> BackendResult:
        started = time.monotonic()
        source_dir = Path(source_dir)
        try:
            code, output, killed = await asyncio.to_thread(self._run_sync, source_dir)
        except OSError as exc:
            return BackendResult(success=False, diagnostic_text=f"could not run {self.cargo_path}: {exc}")
        if killed:
            return BackendResult(
                success=False,
                build_time_seconds=time.monotonic() - started,
                diagnostic_text=f"cargo build timed out after {self.timeout_s:.0f}s\n{_truncate(output)}",
            )
        if code != 0:
            return BackendResult(
                success=False,
                build_time_seconds=time.monotonic() - started,
                diagnostic_text=f"cargo build exited with {code}\n{_truncate(output)}",
            )

        binary = source_dir / "target" / "release" / self._binary_name(source_dir, app_name)
        if not binary.exists():
            return _result_for(binary, started)
        self.dist_dir.mkdir(parents=True, exist_ok=True)
        target = self.dist_dir / binary.name
        await asyncio.to_thread(shutil.copy2, binary, target)
        return _result_for(target, started)


def backend_for(lane: Lane, dist_dir: Path, *, cargo_path: str = "cargo", timeout_s: float = 600.0) -> BuildBackend:
    if lane in (Lane.PYTHON_SCRIPT, Lane.PYTHON_APP):
        return ZipappBackend(dist_dir)
    if lane is Lane.POWERSHELL_MODULE:
        return ArchiveBackend(dist_dir)
    if lane is Lane.RUST:
        return CargoBackend(dist_dir, cargo_path=cargo_path, timeout_s=timeout_s)
    return CopyBackend(lane, dist_dir)


# ---------------------------------------------------------------------------
# Smoke test
# ---------------------------------------------------------------------------


def smoke_test(artifact_path: str | Path) -> str | None:
    """Return a problem description, or None when the artifact looks sound."""
    path = Path(artifact_path)
    if not path.exists():
        return f"artifact {path} does not exist"
    if path.is_dir():
        if not any(p.is_file() for p in path.rglob("*")):
            return f"artifact directory {path} is empty"
        return None
    if path.stat().st_size == 0:
        return f"artifact {path} is empty"
    if path.suffix in (".pyz", ".zip"):
        if not zipfile.is_zipfile(path):
            return f"artifact {path} is not a readable archive"
        with zipfile.ZipFile(path) as zf:
            bad = zf.testzip()
        if bad is not None:
            return f"archive member {bad} in {path.name} is corrupt"
    return None


__all__ = [
    "ArchiveBackend",
    "BuildBackend",
    "CargoBackend",
    "CopyBackend",
    "ZipappBackend",
    "apply_branding",
    "backend_for",
    "module_name",
    "resolve_inside",
    "size_label",
    "slugify",
    "smoke_test",
    "write_file_map",
]
