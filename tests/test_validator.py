"""Tests for lanekit.validator — static analysis of generated FileMaps."""

from __future__ import annotations

from lanekit.contracts import FileMap
from lanekit.lanes import Lane
from lanekit.validator import Validator, validate, validate_report


CLEAN_HTML = """<!DOCTYPE html>
<html>
<head><title>List</title><style>body { color: #333; }</style></head>
<body>
<ul id="list"></ul>
<script>
const list = document.getElementById("list");
function add(text) {
  const li = document.createElement("li");
  li.textContent = text;
  list.appendChild(li);
}
add("hello");
</script>
</body>
</html>
"""

MODULE_PSM1 = """function Get-Greeting {
    param([string]$Name)
    "Hello, $Name"
}
Export-ModuleMember -Function Get-Greeting
"""


def _manifest(**overrides) -> str:
    fields = {
        "RootModule": "'Module.psm1'",
        "ModuleVersion": "'1.0.0'",
        "GUID": "'b8f7c1a2-3d4e-4f50-8a9b-0c1d2e3f4a5b'",
        "Author": "'LaneForge'",
        "Description": "'Greeting helpers'",
        "FunctionsToExport": "@('Get-Greeting')",
    }
    fields.update(overrides)
    body = "\n".join(f"    {k} = {v}" for k, v in fields.items() if v is not None)
    return "@{\n" + body + "\n}\n"


def _messages(errors) -> list[str]:
    return [e.message for e in errors]


# ── general ──────────────────────────────────────────────────────────────

class TestGeneral:
    def test_clean_web_app_passes(self) -> None:
        fm = FileMap(lane=Lane.WEB, files={"index.html": CLEAN_HTML})
        assert validate(fm) == []

    def test_missing_primary(self) -> None:
        fm = FileMap(lane=Lane.WEB, files={"app.js": "const a = 1;\n"})
        errors = validate(fm)
        assert errors[0].file == "index.html"
        assert errors[0].message == "primary entry point is missing"
        assert errors[0].category == "structural"

    def test_validation_is_pure_and_idempotent(self) -> None:
        files = {"main.py": "x = eval(input())\n"}
        fm = FileMap(lane=Lane.PYTHON_SCRIPT, files=dict(files))
        first = validate(fm)
        second = validate(fm)
        assert first == second
        assert fm.files == files

    def test_error_string_carries_file_prefix(self) -> None:
        fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "x = eval(input())\n"})
        assert str(validate(fm)[0]).startswith("[main.py] ")

    def test_secret_blocks(self) -> None:
        fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": 'KEY = "AKIA' + "Q" * 16 + '"\n'})
        errors = validate(fm)
        assert any(m.startswith("hard-coded secret (aws_key") for m in _messages(errors))
        assert all(e.category == "security" for e in errors)

    def test_invalid_json(self) -> None:
        fm = FileMap(lane=Lane.WEB, files={"index.html": CLEAN_HTML, "data.json": "{bad"})
        assert any(m.startswith("invalid JSON") for m in _messages(validate(fm)))


# ── python ───────────────────────────────────────────────────────────────

class TestPython:
    def test_syntax_error(self) -> None:
        fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "def f(:\n    pass\n"})
        errors = validate(fm)
        assert errors[0].category == "syntax"
        assert errors[0].message.startswith("syntax error: ")

    def test_blocking_rule(self) -> None:
        fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "import subprocess\nsubprocess.run('ls', shell=True)\n"})
        errors = validate(fm)
        assert _messages(errors) == ["subprocess call with shell=True"]
        assert errors[0].line == 2

    def test_rule_in_comment_is_ignored(self) -> None:
        fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "# never eval(x)\nprint(1)\n"})
        assert validate(fm) == []

    def test_warning_does_not_block(self) -> None:
        fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "import os\nos.system('ls')\n"})
        report = validate_report(fm)
        assert report.ok
        assert [w.message for w in report.warnings] == ["os.system() runs through the shell"]

    def test_undeclared_third_party_import_warns(self) -> None:
        fm = FileMap(lane=Lane.PYTHON_APP, files={
            "main.py": "import requests\nimport helpers\nimport json\n",
            "helpers.py": "X = 1\n",
        })
        report = validate_report(fm)
        assert report.ok
        assert [w.message for w in report.warnings] == ["import 'requests' is not declared in requirements.txt"]

    def test_declared_import_does_not_warn(self) -> None:
        fm = FileMap(lane=Lane.PYTHON_APP, files={
            "main.py": "import yaml\n",
            "requirements.txt": "PyYAML>=6\n",
        })
        assert validate_report(fm).warnings == []


# ── web ──────────────────────────────────────────────────────────────────

class TestWeb:
    def test_external_script(self) -> None:
        html = CLEAN_HTML.replace("<body>", '<body>\n<script src="https://cdn.example.com/lib.js"></script>')
        errors = validate(FileMap(lane=Lane.WEB, files={"index.html": html}))
        assert _messages(errors) == [
            "external script src 'https://cdn.example.com/lib.js' in a self-contained app"
        ]

    def test_css_remote_import(self) -> None:
        fm = FileMap(lane=Lane.WEB, files={
            "index.html": CLEAN_HTML,
            "styles.css": "@import url('https://fonts.example.com/a.css');\n",
        })
        errors = validate(fm)
        assert errors[0].file == "styles.css"
        assert "external stylesheet @import" in errors[0].message

    def test_missing_body(self) -> None:
        fm = FileMap(lane=Lane.WEB, files={"index.html": "<html><head><title>x</title></head></html>\n"})
        assert "missing required <body> element" in _messages(validate(fm))

    def test_inline_script_injection_maps_to_html_line(self) -> None:
        html = (
            "<!DOCTYPE html>\n"
            "<html>\n"
            "<head><title>x</title></head>\n"
            "<body>\n"
            "<script>\n"
            "const q = location.hash;\n"
            "document.body.innerHTML = q;\n"
            "</script>\n"
            "</body>\n"
            "</html>\n"
        )
        errors = validate(FileMap(lane=Lane.WEB, files={"index.html": html}))
        assert len(errors) == 1
        assert errors[0].message == "unsanitized assignment into innerHTML from variable 'q'"
        assert errors[0].line == 7

    def test_dynamic_eval_in_script_file(self) -> None:
        fm = FileMap(lane=Lane.WEB, files={"index.html": CLEAN_HTML, "app.js": "eval(userCode);\n"})
        assert "dynamic evaluation via eval()" in _messages(validate(fm))

    def test_literal_markup_is_allowed(self) -> None:
        fm = FileMap(lane=Lane.WEB, files={"index.html": CLEAN_HTML, "app.js": "el.innerHTML = '<b>hi</b>';\n"})
        assert validate(fm) == []

    def test_external_template_interpolation(self) -> None:
        js = "el.innerHTML = `<p>${response.title}</p>`;\n"
        fm = FileMap(lane=Lane.WEB, files={"index.html": CLEAN_HTML, "app.js": js})
        assert _messages(validate(fm)) == [
            "unsanitized assignment into innerHTML from interpolation '${response.title}' (response)"
        ]

    def test_multiline_template_interpolation(self) -> None:
        js = (
            "const list = document.getElementById(\"list\");\n"
            "list.innerHTML = `\n"
            "  <li>${location.search}</li>\n"
            "`;\n"
        )
        errors = validate(FileMap(lane=Lane.WEB, files={"index.html": CLEAN_HTML, "app.js": js}))
        assert _messages(errors) == [
            "unsanitized assignment into innerHTML from interpolation '${location.search}' (location)"
        ]
        assert errors[0].line == 2

    def test_multiline_template_in_insert_adjacent_html(self) -> None:
        js = (
            "panel.insertAdjacentHTML(\"beforeend\", `\n"
            "  <p>${data.note}</p>\n"
            "`);\n"
        )
        fm = FileMap(lane=Lane.WEB, files={"index.html": CLEAN_HTML, "app.js": js})
        assert any("insertAdjacentHTML" in m for m in _messages(validate(fm)))

    def test_multiline_template_without_external_data_is_allowed(self) -> None:
        js = "el.innerHTML = `\n  <li>${count}</li>\n  <li>done</li>\n`;\n"
        fm = FileMap(lane=Lane.WEB, files={"index.html": CLEAN_HTML, "app.js": js})
        assert validate(fm) == []


# ── powershell ───────────────────────────────────────────────────────────

class TestPowerShell:
    def test_compat_issue_on_pinned_lane(self) -> None:
        fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": "$x = $a ?? 'b'\n"})
        errors = validate(fm)
        assert _messages(errors) == ["null-coalescing operator '??' is not supported by Windows PowerShell 5.1"]
        assert errors[0].category == "compatibility"

    def test_pipeline_chain(self) -> None:
        fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": "Get-Item . && Write-Host ok\n"})
        assert "pipeline chain operator '&&' is not supported by Windows PowerShell 5.1" in _messages(validate(fm))

    def test_operator_inside_string_is_ignored(self) -> None:
        fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": "Write-Host 'a ?? b && c'\n"})
        assert validate(fm) == []

    def test_ambiguous_reference_is_a_syntax_error(self) -> None:
        fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": 'Write-Host "$name: done"\n'})
        errors = validate(fm)
        assert errors[0].category == "syntax"
        assert "Variable reference '$name:' is not valid" in errors[0].message

    def test_unbalanced_brace(self) -> None:
        fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": "function Get-X {\n"})
        assert _messages(validate(fm)) == ["syntax error: Missing closing '}' for '{'."]

    def test_invoke_expression_blocks(self) -> None:
        fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": "Invoke-Expression $cmd\n"})
        assert _messages(validate(fm)) == ["dynamic evaluation via Invoke-Expression"]


# ── powershell module ────────────────────────────────────────────────────

class TestPowerShellModule:
    def _map(self, manifest: str, **extra: str) -> FileMap:
        files = {"Module.psm1": MODULE_PSM1, "Module.psd1": manifest}
        files.update(extra)
        return FileMap(lane=Lane.POWERSHELL_MODULE, files=files)

    def test_complete_module_passes(self) -> None:
        assert validate(self._map(_manifest())) == []

    def test_missing_manifest_field(self) -> None:
        errors = validate(self._map(_manifest(Author=None)))
        assert _messages(errors) == ["required manifest field 'Author' is missing"]
        assert errors[0].file == "Module.psd1"

    def test_wildcard_export_rejected(self) -> None:
        errors = validate(self._map(_manifest(FunctionsToExport="'*'")))
        assert "FunctionsToExport must list at least one function explicitly (no '*')" in _messages(errors)

    def test_unapproved_verb_and_undefined_function(self) -> None:
        errors = validate(self._map(_manifest(FunctionsToExport="@('Get-Greeting', 'Greet-User')")))
        assert _messages(errors) == [
            "exported function 'Greet-User': verb 'Greet' is not an approved PowerShell verb",
            "exported function 'Greet-User' is not defined in the module",
        ]

    def test_function_defined_in_dot_sourced_file(self) -> None:
        manifest = _manifest(FunctionsToExport="@('Get-Greeting', 'Get-Time')")
        fm = self._map(manifest, **{"Public/Get-Time.ps1": "function Get-Time {\n    Get-Date\n}\n"})
        assert validate(fm) == []

    def test_root_module_must_exist(self) -> None:
        errors = validate(self._map(_manifest(RootModule="'Other.psm1'")))
        assert _messages(errors) == ["RootModule 'Other.psm1' does not match any generated file"]

    def test_missing_manifest(self) -> None:
        fm = FileMap(lane=Lane.POWERSHELL_MODULE, files={"Module.psm1": MODULE_PSM1})
        assert _messages(validate(fm)) == ["module manifest is missing"]

    def test_sandbox_denylist(self) -> None:
        psm1 = MODULE_PSM1 + "Invoke-Command -ComputerName $server -ScriptBlock { Get-Date }\n"
        fm = FileMap(lane=Lane.POWERSHELL_MODULE, files={"Module.psm1": psm1, "Module.psd1": _manifest()})
        assert _messages(validate(fm)) == ["remote execution via Invoke-Command -ComputerName"]

    def test_sandbox_rules_only_apply_to_module_lane(self) -> None:
        fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": "$l = New-Object System.Net.HttpListener\n"})
        assert validate(fm) == []


# ── rust ─────────────────────────────────────────────────────────────────

CARGO = """[package]
name = "word-count"
version = "0.1.0"
edition = "2021"

[dependencies]
serde-json = "1"
"""


class TestRust:
    def test_dependencies_and_modules_resolve(self) -> None:
        fm = FileMap(lane=Lane.RUST, files={
            "Cargo.toml": CARGO,
            "src/main.rs": (
                "mod stats;\n"
                "use serde_json::Value;\n"
                "use stats::count;\n"
                "use std::env;\n"
                "fn main() {\n"
                "    let _v: Option<Value> = None;\n"
                "    let _a: Vec<String> = env::args().collect();\n"
                "    println!(\"{}\", count(\"a b\"));\n"
                "}\n"
            ),
            "src/stats.rs": "pub fn count(s: &str) -> usize {\n    s.split_whitespace().count()\n}\n",
        })
        assert validate(fm) == []

    def test_unresolved_crate(self) -> None:
        fm = FileMap(lane=Lane.RUST, files={
            "Cargo.toml": CARGO,
            "src/main.rs": "use rand::Rng;\nfn main() {}\n",
        })
        errors = validate(fm)
        assert len(errors) == 1
        assert errors[0].message.startswith("unresolved import 'rand'")
        assert errors[0].file == "src/main.rs"
        assert errors[0].line == 1

    def test_module_declared_in_another_file_resolves(self) -> None:
        fm = FileMap(lane=Lane.RUST, files={
            "Cargo.toml": CARGO,
            "src/main.rs": "mod util;\nuse helpers::greet;\nfn main() { greet(); }\n",
            "src/util.rs": "pub mod helpers {\n    pub fn greet() {}\n}\n",
        })
        assert validate(fm) == []

    def test_missing_cargo_manifest(self) -> None:
        fm = FileMap(lane=Lane.RUST, files={"src/main.rs": "fn main() {}\n"})
        assert _messages(validate(fm)) == ["Cargo manifest is missing"]

    def test_invalid_toml(self) -> None:
        fm = FileMap(lane=Lane.RUST, files={"Cargo.toml": "[package\n", "src/main.rs": "fn main() {}\n"})
        errors = validate(fm)
        assert errors[0].file == "Cargo.toml"
        assert errors[0].message.startswith("invalid TOML")

    def test_syntax_error(self) -> None:
        fm = FileMap(lane=Lane.RUST, files={"Cargo.toml": CARGO, "src/main.rs": "fn main() {\n    let x = ;\n}\n"})
        assert any(e.category == "syntax" for e in validate(fm))


def test_pwsh_fallback_when_binary_missing() -> None:
    """An unusable pwsh path falls back to the built-in tokenizer."""
    fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": "function Get-X {\n"})
    validator = Validator(pwsh_path="/nonexistent/pwsh", pwsh_timeout=1)
    assert _messages(validator.validate(fm)) == ["syntax error: Missing closing '}' for '{'."]
