"""Bytecode disassembler with raw, pretty and objdump-like output styles."""

from __future__ import annotations

import json
import logging
from enum import Enum, IntFlag
from typing import TextIO

from container import BytecodeModule
from isa import REGISTER_KINDS, Instruction, mnemonic, operands


class DisassemblyOptions(IntFlag):
    """Independent rendering toggles, combined as a bitmask."""

    NONE = 0
    INCLUDE_SOURCE = 1
    INCLUDE_FUNCTION_IDS = 2
    INCLUDE_VIRTUAL_OFFSETS = 4
    PRETTY = 8
    OBJDUMP = 16


class DisassemblyFormat(Enum):
    RAW = "raw"  # legacy format
    PRETTY = "pretty"
    OBJDUMP = "objdump"


def default_options(fmt: DisassemblyFormat) -> DisassemblyOptions:
    """Session baseline: source info and function ids plus the style flag."""
    options = DisassemblyOptions.INCLUDE_SOURCE | DisassemblyOptions.INCLUDE_FUNCTION_IDS
    if fmt is DisassemblyFormat.PRETTY:
        options |= DisassemblyOptions.PRETTY
    elif fmt is DisassemblyFormat.OBJDUMP:
        options |= DisassemblyOptions.OBJDUMP
    return options


class BytecodeDisassembler:
    """Render whole-module or single-function disassembly to a stream."""

    module: BytecodeModule

    def __init__(self, module: BytecodeModule, options: DisassemblyOptions = DisassemblyOptions.NONE) -> None:
        self.module = module
        self._options = options

    @property
    def options(self) -> DisassemblyOptions:
        return self._options

    @options.setter
    def options(self, value: DisassemblyOptions) -> None:
        logging.debug("Disassembler options: %r -> %r", self._options, value)
        self._options = value

    @property
    def function_count(self) -> int:
        return self.module.function_count

    # --- whole module ---
    def disassemble(self, out: TextIO) -> None:
        """Disassemble every function, preceded by module information."""
        if self._options & DisassemblyOptions.OBJDUMP:
            out.write(f"file format hbc-{self.module.header.version}\n\n")
            out.write("Disassembly of section .text:\n\n")
        else:
            self._write_module_info(out)
        for func_id in range(self.function_count):
            if func_id:
                out.write("\n")
            self.disassemble_function(func_id, out)

    def _write_module_info(self, out: TextIO) -> None:
        m = self.module
        out.write("Bytecode File Information:\n")
        out.write(f"  Bytecode version number: {m.header.version}\n")
        out.write(f"  Global function: {m.header.global_function}\n")
        out.write(f"  Function count: {m.function_count}\n")
        out.write(f"  String count: {len(m.strings)}\n")
        out.write(f"  Filename count: {len(m.filenames)}\n")
        out.write(f"  File size: {m.header.file_length} bytes\n")
        out.write(f"  Epilogue size: {len(m.epilogue)} bytes\n")
        out.write("\nGlobal String Table:\n")
        for i, s in enumerate(m.strings):
            out.write(f"  s{i}: {s}\n")
        if m.filenames:
            out.write("\nFilename Table:\n")
            for i, name in enumerate(m.filenames):
                out.write(f"  f{i}: {name}\n")
        out.write("\n")

    # --- single function ---
    def disassemble_function(self, func_id: int, out: TextIO) -> None:
        """Disassemble one function. The caller validates `func_id`."""
        if self._options & DisassemblyOptions.OBJDUMP:
            self._objdump_function(func_id, out)
        else:
            self._listing_function(func_id, out)

    def _location_text(self, func_id: int) -> str | None:
        if not self._options & DisassemblyOptions.INCLUDE_SOURCE:
            return None
        loc = self.module.function_location(func_id)
        if loc is None:
            return None
        filename, line, column = loc
        return f"{filename}:{line}:{column}"

    def _listing_function(self, func_id: int, out: TextIO) -> None:
        fh = self.module.functions[func_id]
        name = self.module.function_name(func_id)
        ident = str(func_id) if self._options & DisassemblyOptions.INCLUDE_FUNCTION_IDS else ""
        out.write(f"Function<{name}>{ident}({fh.param_count} params, {fh.frame_size} registers):\n")
        location = self._location_text(func_id)
        if location is not None:
            out.write(f"  Source location: {location}\n")

        pretty = bool(self._options & DisassemblyOptions.PRETTY)
        offsets = bool(self._options & DisassemblyOptions.INCLUDE_VIRTUAL_OFFSETS)
        body = self.module.instructions(func_id)
        labels = self._jump_labels(func_id) if pretty else {}
        for off, instr, raw in body:
            if off in labels:
                out.write(f"L{labels[off]}:\n")
            prefix = f"    [@ {off}] " if offsets else "    "
            if instr is None:
                text = f"<unknown opcode 0x{raw[0]:02x}>"
            elif pretty:
                text = self._pretty_instruction(off, instr, labels)
            else:
                text = mnemonic(instr)
            out.write(prefix + text + "\n")

    def _jump_labels(self, func_id: int) -> dict[int, int]:
        """Map jump-target offsets inside the function to label numbers."""
        fh = self.module.functions[func_id]
        targets: set[int] = set()
        for off, instr, _raw in self.module.instructions(func_id):
            if instr is None or instr.jump_offset is None:
                continue
            target = off + instr.jump_offset
            if fh.offset <= target < fh.end:
                targets.add(target)
        return {target: n for n, target in enumerate(sorted(targets), start=1)}

    def _pretty_operand(self, off: int, kind: str, value: int, labels: dict[int, int]) -> str:
        if kind in REGISTER_KINDS:
            return f"r{value}"
        if kind == "s":
            s = self.module.get_string(value)
            return json.dumps(s) if s is not None else f"<invalid string {value}>"
        if kind == "f":
            if 0 <= value < self.module.function_count:
                return f"Function<{self.module.function_name(value)}>#{value}"
            return f"<invalid function {value}>"
        if kind == "j":
            label = labels.get(off + value)
            return f"L{label}" if label is not None else str(value)
        return str(value)

    def _pretty_instruction(self, off: int, instr: Instruction, labels: dict[int, int]) -> str:
        ops = [self._pretty_operand(off, kind, value, labels) for kind, value in operands(instr)]
        return f"{instr.opcode.name:<22}{', '.join(ops)}".rstrip()

    def _objdump_function(self, func_id: int, out: TextIO) -> None:
        fh = self.module.functions[func_id]
        name = self.module.function_name(func_id)
        if self._options & DisassemblyOptions.INCLUDE_FUNCTION_IDS:
            name = f"{name}#{func_id}"
        out.write(f"{fh.offset:08x} <{name}>:\n")
        location = self._location_text(func_id)
        if location is not None:
            out.write(f"; {location}\n")
        for off, instr, raw in self.module.instructions(func_id):
            hexbytes = " ".join(f"{b:02x}" for b in raw)
            text = mnemonic(instr) if instr is not None else f"<unknown opcode 0x{raw[0]:02x}>"
            out.write(f"{off:8x}:\t{hexbytes}\t{text}\n")
