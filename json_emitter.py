"""Streaming JSON writer used for structured function metadata.

Pretty output matches ``json.dumps(doc, indent=indent)`` for the same
document, so callers can emit large trees without building them in memory.
"""

from __future__ import annotations

import json
from typing import Any, TextIO


class JSONEmitter:
    """Write objects, arrays and scalars to `out` as they are produced."""

    def __init__(self, out: TextIO, pretty: bool = True, indent: int = 2) -> None:
        self.out = out
        self.pretty = pretty
        self.indent = indent
        # one [kind, has_items] entry per open container
        self._stack: list[list[Any]] = []
        self._pending_key = False

    def _newline(self, depth: int) -> None:
        if self.pretty:
            self.out.write("\n" + " " * (self.indent * depth))

    def _before_value(self) -> None:
        if not self._stack:
            return
        top = self._stack[-1]
        if top[0] == "dict":
            if not self._pending_key:
                msg = "value emitted inside an object without a key"
                raise ValueError(msg)
            self._pending_key = False
            return
        if top[1]:
            self.out.write(",")
        top[1] = True
        self._newline(len(self._stack))

    def emit_key(self, key: str) -> None:
        if not self._stack or self._stack[-1][0] != "dict":
            msg = f"key {key!r} emitted outside an object"
            raise ValueError(msg)
        if self._pending_key:
            msg = f"key {key!r} emitted while another key awaits its value"
            raise ValueError(msg)
        top = self._stack[-1]
        if top[1]:
            self.out.write(",")
        top[1] = True
        self._newline(len(self._stack))
        self.out.write(json.dumps(key) + (": " if self.pretty else ":"))
        self._pending_key = True

    def emit_value(self, value: str | int | float | bool | None) -> None:
        self._before_value()
        self.out.write(json.dumps(value))

    def emit_key_value(self, key: str, value: str | int | float | bool | None) -> None:
        self.emit_key(key)
        self.emit_value(value)

    def _open(self, kind: str, token: str) -> None:
        self._before_value()
        self.out.write(token)
        self._stack.append([kind, False])

    def _close(self, kind: str, token: str) -> None:
        if not self._stack or self._stack[-1][0] != kind or self._pending_key:
            msg = f"unbalanced close of {kind}"
            raise ValueError(msg)
        _, has_items = self._stack.pop()
        if has_items:
            self._newline(len(self._stack))
        self.out.write(token)

    def open_dict(self) -> None:
        self._open("dict", "{")

    def close_dict(self) -> None:
        self._close("dict", "}")

    def open_array(self) -> None:
        self._open("array", "[")

    def close_array(self) -> None:
        self._close("array", "]")
