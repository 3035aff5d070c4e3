"""Tests for app/services/pipeline/fix_loop.py -- strategy choice, repair loop, learning."""

import pytest

from lanekit.contracts import FileMap, ValidationError
from lanekit.lanes import Lane
from lanekit.repair import AutoRepairer
from lanekit.validator import Validator

from app.errors import GenerationError
from app.services.pipeline.codegen import CodeGenerator, RawResponseLog
from app.services.pipeline.constraint_memory import ConstraintMemory
from app.services.pipeline.fix_loop import FALLBACK_PREFIX, FixLoopController, classify_error
from app.services.pipeline.models import BuildSpec, Full, GenerationContext, Surgical
from tests.conftest import FakeConstraintRepo, FakeLLM, completion, fenced


MAIN_PY = (
    "from a import load\n"
    "from b import save\n"
    "from c import render\n"
    "from d import CONFIG\n"
    "\n"
    "\n"
    "def main():\n"
    "    save(render(load()))\n"
    "\n"
    "\n"
    "if __name__ == \"__main__\":\n"
    "    main()\n"
)
BROKEN_A = "def load(:\n    return []\n"
BROKEN_B = "def save(items)\n    print(items)\n"
C_PY = "def render(items):\n    return ', '.join(items)\n"
D_PY = "CONFIG = {'debug': False}\n"


def _five_file_app() -> FileMap:
    return FileMap(lane=Lane.PYTHON_APP, files={
        "main.py": MAIN_PY,
        "a.py": BROKEN_A,
        "b.py": BROKEN_B,
        "c.py": C_PY,
        "d.py": D_PY,
    })


def _ctx(lane=Lane.PYTHON_APP, **spec_fields) -> GenerationContext:
    spec = BuildSpec(app_name="demo", lane=lane, features=["list items"], **spec_fields)
    return GenerationContext(build_id="b1", lane=lane, spec=spec)


def _controller(llm, tmp_path, repo=None, max_retries=3):
    codegen = CodeGenerator(llm, RawResponseLog(tmp_path / "raw"), model="test-model", max_tokens=8192)
    memory = ConstraintMemory(repo or FakeConstraintRepo())
    return FixLoopController(codegen, memory, AutoRepairer(), Validator(), max_retries=max_retries)


def _err(file, message="broken", source="validator"):
    return ValidationError(file=file, message=message, category="syntax", source=source)


# ---------------------------------------------------------------------------
# Strategy choice
# ---------------------------------------------------------------------------


def test_surgical_when_errors_name_a_strict_subset(tmp_path):
    ctrl = _controller(FakeLLM(), tmp_path)
    strategy = ctrl.choose_strategy([_err("a.py"), _err("b.py"), _err("a.py")], _five_file_app())
    assert strategy == Surgical(files=["a.py", "b.py"])


def test_full_when_an_error_has_no_file(tmp_path):
    ctrl = _controller(FakeLLM(), tmp_path)
    assert isinstance(ctrl.choose_strategy([_err("a.py"), _err("")], _five_file_app()), Full)


def test_full_when_an_error_names_an_unknown_file(tmp_path):
    ctrl = _controller(FakeLLM(), tmp_path)
    assert isinstance(ctrl.choose_strategy([_err("missing.py")], _five_file_app()), Full)


def test_full_when_every_file_is_broken(tmp_path):
    ctrl = _controller(FakeLLM(), tmp_path)
    fm = FileMap(lane=Lane.PYTHON_APP, files={"main.py": "x\n", "a.py": "y\n"})
    assert isinstance(ctrl.choose_strategy([_err("main.py"), _err("a.py")], fm), Full)


# ---------------------------------------------------------------------------
# Surgical regeneration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_surgical_prompt_carries_broken_files_and_symbol_contract(tmp_path):
    fm = _five_file_app()
    errors = Validator().validate(fm)
    assert {e.file for e in errors} == {"a.py", "b.py"}

    llm = FakeLLM([fenced({
        "a.py": "def load():\n    return ['x']\n",
        "b.py": "def save(items):\n    print(items)\n",
    }, "python")])
    result = await _controller(llm, tmp_path).run(fm, errors, _ctx())

    assert result.success
    assert result.attempts == 1
    assert result.strategies == [Surgical(files=["a.py", "b.py"])]

    prompt = llm.calls[0]["messages"][0]["content"]
    assert BROKEN_A in prompt
    assert BROKEN_B in prompt
    assert "- main.py: main" in prompt
    assert "- c.py: render" in prompt
    assert "- d.py: CONFIG" in prompt
    assert "', '.join(items)" not in prompt

    assert fm.files["a.py"] == "def load():\n    return ['x']\n"
    assert fm.files["c.py"] == C_PY
    assert fm.files["main.py"] == MAIN_PY


@pytest.mark.asyncio
async def test_surgical_merge_ignores_unrequested_rewrites(tmp_path):
    fm = _five_file_app()
    errors = Validator().validate(fm)
    llm = FakeLLM([fenced({
        "a.py": "def load():\n    return []\n",
        "b.py": "def save(items):\n    pass\n",
        "c.py": "def render(items):\n    return ''\n",
    }, "python")])
    result = await _controller(llm, tmp_path).run(fm, errors, _ctx())
    assert result.success
    assert fm.files["c.py"] == C_PY


@pytest.mark.asyncio
async def test_ignored_rewrites_are_logged(tmp_path, caplog):
    fm = _five_file_app()
    errors = Validator().validate(fm)
    llm = FakeLLM([fenced({
        "a.py": "def load():\n    return []\n",
        "b.py": "def save(items):\n    pass\n",
        "c.py": "def render(items):\n    return ''\n",
        "d.py": D_PY,
    }, "python")])
    with caplog.at_level("WARNING", logger="app.services.pipeline.fix_loop"):
        await _controller(llm, tmp_path).run(fm, errors, _ctx())
    messages = [r.getMessage() for r in caplog.records]
    assert "Fix iteration 1 ignored unrequested rewrite(s) of c.py" in messages


# ---------------------------------------------------------------------------
# Full regeneration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_prompt_shrinks_to_core_sections_after_first_iteration(tmp_path):
    fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "print(eval('1'))\n"})
    errors = Validator().validate(fm)
    still_bad = fenced({"main.py": "print(eval('2'))\n"}, "python")
    fixed = fenced({"main.py": "print(2)\n"}, "python")
    llm = FakeLLM([still_bad, fixed])

    ctx = _ctx(Lane.PYTHON_SCRIPT, ui_layout="single column")
    result = await _controller(llm, tmp_path).run(fm, errors, ctx)

    assert result.success
    assert result.attempts == 2
    first, second = (c["messages"][0]["content"] for c in llm.calls)
    assert "UI_LAYOUT" in first
    assert "UI_LAYOUT" not in second
    assert "[main.py] dynamic evaluation via eval()" in second
    assert fm.files["main.py"] == "print(2)\n"


@pytest.mark.asyncio
async def test_full_prompt_keeps_errors_from_earlier_iterations(tmp_path):
    fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "print(eval('1'))\n"})
    errors = Validator().validate(fm)
    new_problem = fenced({"main.py": "import pickle\nprint(pickle.loads(b''))\n"}, "python")
    fixed = fenced({"main.py": "print(2)\n"}, "python")
    llm = FakeLLM([new_problem, fixed])

    result = await _controller(llm, tmp_path).run(fm, errors, _ctx(Lane.PYTHON_SCRIPT))

    assert result.success
    second = llm.calls[1]["messages"][0]["content"]
    assert "[main.py] dynamic evaluation via eval()" in second
    assert "[main.py] deserializing untrusted data with pickle" in second
    assert second.index("eval()") < second.index("pickle (line 2)")
    assert second.count("dynamic evaluation via eval()") == 1


@pytest.mark.asyncio
async def test_no_errors_means_no_calls(tmp_path):
    llm = FakeLLM()
    fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "print(1)\n"})
    result = await _controller(llm, tmp_path).run(fm, [], _ctx(Lane.PYTHON_SCRIPT))
    assert result.success
    assert llm.calls == []


# ---------------------------------------------------------------------------
# Retries and learning
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_recurring_error_becomes_one_constraint(tmp_path):
    """Three failed retries with the same error leave exactly one constraint row."""
    source = "Invoke-Expression $cmd\n"
    fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": source})
    errors = Validator().validate(fm)
    response = fenced({"Main.ps1": source}, "powershell")
    llm = FakeLLM([response, response, response])
    repo = FakeConstraintRepo()

    result = await _controller(llm, tmp_path, repo).run(fm, errors, _ctx(Lane.POWERSHELL))

    assert not result.success
    assert result.attempts == 3
    assert len(llm.calls) == 3
    assert len(repo.rows) == 1
    row = next(iter(repo.rows.values()))
    assert row["lane"] == "powershell"
    assert row["hit_count"] == 1
    assert "Invoke-Expression" in row["text"]


@pytest.mark.asyncio
async def test_repeat_failure_bumps_existing_constraint(tmp_path):
    source = "Invoke-Expression $cmd\n"
    repo = FakeConstraintRepo()
    for _ in range(2):
        fm = FileMap(lane=Lane.POWERSHELL, files={"Main.ps1": source})
        llm = FakeLLM([fenced({"Main.ps1": source}, "powershell")])
        await _controller(llm, tmp_path, repo, max_retries=1).run(
            fm, Validator().validate(fm), _ctx(Lane.POWERSHELL),
        )
    assert len(repo.rows) == 1
    assert next(iter(repo.rows.values()))["hit_count"] == 2


@pytest.mark.asyncio
async def test_failure_leaves_callers_map_untouched(tmp_path):
    fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "eval('1')\n"})
    errors = Validator().validate(fm)
    llm = FakeLLM([fenced({"main.py": "eval('2')\n"}, "python")])
    result = await _controller(llm, tmp_path, max_retries=1).run(fm, errors, _ctx(Lane.PYTHON_SCRIPT))
    assert not result.success
    assert fm.files["main.py"] == "eval('1')\n"
    assert result.file_map.files["main.py"] == "eval('2')\n"


@pytest.mark.asyncio
async def test_generation_failures_are_counted_separately(tmp_path):
    fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "eval('1')\n"})
    errors = Validator().validate(fm)
    llm = FakeLLM([
        GenerationError("upstream 500"),
        completion(fenced({"main.py": "print(1)\n"}, "python"), "max_tokens"),
        fenced({"main.py": "print(1)\n"}, "python"),
    ])
    result = await _controller(llm, tmp_path).run(fm, errors, _ctx(Lane.PYTHON_SCRIPT))
    assert result.success
    assert result.generation_failures == 2
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_generation_failures_are_bounded(tmp_path):
    fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "eval('1')\n"})
    errors = Validator().validate(fm)
    llm = FakeLLM([GenerationError("down")] * 3)
    repo = FakeConstraintRepo()
    result = await _controller(llm, tmp_path, repo).run(fm, errors, _ctx(Lane.PYTHON_SCRIPT))
    assert not result.success
    assert result.attempts == 0
    assert result.generation_failures == 3
    assert len(llm.calls) == 3
    assert len(repo.rows) == 1


@pytest.mark.asyncio
async def test_review_errors_are_not_learned(tmp_path):
    fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "print(1)\n"})
    review_error = _err("main.py", "the total is never printed", source="review")
    llm = FakeLLM([GenerationError("down")])
    repo = FakeConstraintRepo()
    result = await _controller(llm, tmp_path, repo, max_retries=1).run(
        fm, [review_error], _ctx(Lane.PYTHON_SCRIPT),
    )
    assert not result.success
    assert repo.rows == {}


@pytest.mark.asyncio
async def test_learning_can_be_disabled(tmp_path):
    fm = FileMap(lane=Lane.PYTHON_SCRIPT, files={"main.py": "eval('1')\n"})
    llm = FakeLLM([GenerationError("down")])
    repo = FakeConstraintRepo()
    await _controller(llm, tmp_path, repo, max_retries=1).run(
        fm, Validator().validate(fm), _ctx(Lane.PYTHON_SCRIPT), learn=False,
    )
    assert repo.rows == {}


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------


def test_classify_compatibility_error():
    err = ValidationError(
        file="Main.ps1",
        message="null-coalescing operator '??' is not supported by Windows PowerShell 5.1",
        category="compatibility",
    )
    text, pattern = classify_error(Lane.POWERSHELL, err)
    assert text.startswith("Target Windows PowerShell 5.1: never use ?? or ??=")
    assert pattern != "fallback"


def test_classify_fills_named_groups():
    err = ValidationError(
        file="src/main.rs",
        message="unresolved import 'rand': not a dependency in Cargo.toml and not a module declared in any file",
        category="structural",
    )
    text, _ = classify_error(Lane.RUST, err)
    assert text.endswith("(e.g. rand)")


def test_classify_fills_lane_placeholders():
    err = ValidationError(file="index.html", message="primary entry point is missing", category="structural")
    assert classify_error(Lane.WEB, err)[0] == "Always include the primary file index.html"
    syntax = ValidationError(file="src/main.rs", message="syntax error: missing ';'", category="syntax")
    assert "valid Rust" in classify_error(Lane.RUST, syntax)[0]


def test_classify_escapes_literal_braces():
    err = ValidationError(
        file="Main.ps1",
        message="Variable reference '$name:' is not valid. ':' was not followed by a valid variable name character.",
        category="syntax",
    )
    text, _ = classify_error(Lane.POWERSHELL, err)
    assert "${name}:" in text


def test_classify_respects_lane_scope():
    err = ValidationError(file="main.py", message="external script src 'x' in a self-contained app", category="structural")
    text, pattern = classify_error(Lane.PYTHON_SCRIPT, err)
    assert text == f"{FALLBACK_PREFIX}external script src 'x' in a self-contained app"
    assert pattern == "fallback"
