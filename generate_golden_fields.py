#!/usr/bin/env python3
"""
Fill `out.out_stdout` and `out.exit_code` of a golden YAML record by running it.
Usage: python generate_golden_fields.py path/to/golden.yaml
"""

from __future__ import annotations

import io
import json
import logging
import os
import sys
import tempfile
from typing import Any

import yaml

import hbcdump
from container import ModuleBuilder


def write_inputs(doc: dict[str, Any], tmp: str) -> list[str]:
    """Materialize the record's inputs in `tmp` and return the CLI arguments.

    Output goes to `tmp/out.txt`, the debug log to `tmp/hbcdump.log`.
    """
    module_path = os.path.join(tmp, "module.hbc")
    if "module_hex" in doc:
        data = bytes.fromhex(doc["module_hex"])
    else:
        data = ModuleBuilder.from_dict(doc["module"]).build()
    with open(module_path, "wb") as module_f:
        module_f.write(data)

    argv = [module_path, "--out", os.path.join(tmp, "out.txt")]
    if doc.get("commands"):
        argv += ["-c", doc["commands"]]

    if "profile" in doc:
        profile_path = os.path.join(tmp, "profile.json")
        with open(profile_path, "w", encoding="utf-8") as profile_f:
            json.dump(doc["profile"], profile_f)
        argv += ["--profile-file", profile_path]

    if "source_map" in doc:
        map_path = os.path.join(tmp, "module.map")
        with open(map_path, "w", encoding="utf-8") as map_f:
            json.dump(doc["source_map"], map_f)
        argv += ["--source-map", map_path]

    if "config" in doc:
        cfg_path = os.path.join(tmp, "config.yaml")
        with open(cfg_path, "w", encoding="utf-8") as cfg_f:
            yaml.safe_dump(doc["config"], cfg_f)
        argv += ["--config", cfg_path]

    argv += ["--debug", "--logfile", os.path.join(tmp, "hbcdump.log")]
    return argv + [str(a) for a in doc.get("args") or []]


def _release_logging() -> None:
    root = logging.getLogger()
    for h in list(root.handlers):
        h.close()
        root.removeHandler(h)


def run_record(doc: dict[str, Any]) -> tuple[int, str]:
    """Run one record and return (exit code, produced output)."""
    saved_stdin = sys.stdin
    sys.stdin = io.StringIO(doc.get("in_stdin", ""))
    try:
        with tempfile.TemporaryDirectory() as tmp:
            code = hbcdump.main(write_inputs(doc, tmp))
            _release_logging()
            out_path = os.path.join(tmp, "out.txt")
            out = ""
            if os.path.exists(out_path):
                with open(out_path, encoding="utf-8") as out_f:
                    out = out_f.read()
    finally:
        sys.stdin = saved_stdin
    return code, out


def main(path: str) -> None:
    if not os.path.exists(path):
        print("File not found:", path)
        sys.exit(2)

    with open(path, encoding="utf-8") as f:
        doc = yaml.safe_load(f)

    if "module" not in doc and "module_hex" not in doc:
        print("No 'module' or 'module_hex' found in YAML, nothing to run")
        sys.exit(2)

    code, out = run_record(doc)

    target = doc.setdefault("out", {})
    target["out_stdout"] = out
    if code:
        target["exit_code"] = code

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(doc, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    print(f"Updated {path} with out_stdout ({len(out)} chars), exit code {code}.")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: generate_golden_fields.py path/to/golden.yaml")
        sys.exit(1)
    main(sys.argv[1])
