"""File for tests."""

from __future__ import annotations

import io
import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml
from commands import CommandDispatcher
from container import BytecodeModule, ModuleBuilder, load_module
from disassembler import BytecodeDisassembler, DisassemblyFormat, default_options
from profile_analyzer import ProfileAnalyzer, ProfileData, load_profile

# Three functions: a global entry, a two-parameter `add` and a `loop` without
# source information whose body branches backwards. Layout of the built image:
# bytecode starts at 200, functions at 200/240/272, file_length 320, plus a
# 4-byte epilogue.
SAMPLE_MODULE: dict[str, Any] = {
    "strings": ["hello"],
    "functions": [
        {
            "name": "global",
            "code": [
                "GET_GLOBAL_OBJECT r0",
                "LOAD_CONST_STRING r1, 0",
                "CREATE_CLOSURE r2, 1",
                "CALL r3, r2, r0",
                "RET r3",
            ],
            "frame_size": 4,
            "source": {"file": "main.js", "line": 1, "column": 1},
        },
        {
            "name": "add",
            "code": ["LOAD_PARAM r0, 1", "LOAD_PARAM r1, 2", "ADD r2, r0, r1", "RET r2"],
            "params": 2,
            "frame_size": 3,
            "source": {"file": "main.js", "line": 3, "column": 5},
        },
        {
            "name": "loop",
            "code": [
                "LOAD_CONST_INT r0, 0",
                "LOAD_CONST_INT r1, 10",
                "LESS r2, r0, r1",
                "JMP_FALSE r2, 16",
                "JMP -16",
                "RET r0",
            ],
            "frame_size": 3,
        },
    ],
    "epilogue": "deadbeef",
}

# function 2 runs its loop header eleven times: 2 + 11 * 3 + 1 = 36 instructions
SAMPLE_PROFILE: dict[str, Any] = {
    "blocks": [
        {"function": 0, "offset": 0, "count": 1},
        {"function": 1, "offset": 0, "count": 1},
        {"function": 2, "offset": 0, "count": 1},
        {"function": 2, "offset": 16, "count": 11},
        {"function": 2, "offset": 40, "count": 1},
    ],
    "trace": [0, 1, 2],
}


def pytest_configure(config: Any) -> None:
    """Configure the tests."""
    config.addinivalue_line(
        "markers",
        "golden_test(pattern): parameterize test with YAML files matching pattern",
    )


def _iter_marker_patterns(node: Any) -> Iterator[str]:
    """Yield pattern strings from golden_test markers on `node`."""
    for m in node.iter_markers(name="golden_test"):
        if m.args:
            yield m.args[0]
        else:
            yield "golden/*.yaml"


def pytest_generate_tests(metafunc: Any) -> None:
    """Generate tests (parametrization) from YAML golden files."""
    if "golden" not in metafunc.fixturenames:
        return

    patterns: list[str] = list(_iter_marker_patterns(metafunc.definition))
    if not patterns:
        patterns = ["golden/*.yaml"]

    root = Path(metafunc.config.rootpath)

    files: list[Path] = []
    for pat in patterns:
        files.extend(sorted(root.glob(pat)))

    if not files:
        return

    params: list[dict[str, Any]] = []
    ids: list[str] = []
    for p in files:
        try:
            with p.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except Exception as e:
            data = {"__yaml_load_error__": str(e), "__path__": str(p)}
        if isinstance(data, dict):
            data.setdefault("__path__", str(p))
            data.setdefault("__name__", p.name)
        params.append(data)
        ids.append(p.name)

    metafunc.parametrize("golden", params, ids=ids)


@pytest.fixture
def sample_module() -> BytecodeModule:
    return load_module(ModuleBuilder.from_dict(SAMPLE_MODULE).build())


@pytest.fixture
def sample_profile() -> ProfileData:
    return load_profile(json.dumps(SAMPLE_PROFILE))


def make_dispatcher(
    module: BytecodeModule,
    profile: ProfileData | None = None,
    fmt: DisassemblyFormat = DisassemblyFormat.PRETTY,
) -> tuple[CommandDispatcher, io.StringIO]:
    """Wire a dispatcher writing into a fresh StringIO."""
    out = io.StringIO()
    analyzer = ProfileAnalyzer(out, module, profile)
    disassembler = BytecodeDisassembler(module, default_options(fmt))
    return CommandDispatcher(out, analyzer, disassembler), out


@pytest.fixture
def dispatcher(sample_module: BytecodeModule) -> tuple[CommandDispatcher, io.StringIO]:
    return make_dispatcher(sample_module)


@pytest.fixture
def profiled_dispatcher(
    sample_module: BytecodeModule, sample_profile: ProfileData
) -> tuple[CommandDispatcher, io.StringIO]:
    return make_dispatcher(sample_module, sample_profile)
