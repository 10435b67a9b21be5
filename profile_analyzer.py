"""Basic-block profile loading and statistics queries over a module.

A profile is a JSON document produced by the basic block profiler:

    {
      "blocks": [{"function": 0, "offset": 0, "count": 12}, ...],
      "trace": [0, 2, 1]
    }

`offset` is the byte offset of the block's first instruction inside the
function body; a block runs until the next recorded block of the same
function or the end of the body. `trace` (optional) lists function ids in
execution order and drives the page working-set view.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, TextIO

from config import DEFAULTS
from container import BytecodeModule
from isa import INSTR_SIZE, mnemonic
from json_emitter import JSONEmitter
from source_map import SourceMap

NO_PROFILE_MSG = "Error: no profile data loaded.\n"


class ProfileError(ValueError):
    """Raised when a profile log is malformed or does not match the module."""

    pass


@dataclass(frozen=True)
class BlockRecord:
    function: int
    offset: int
    count: int


@dataclass
class ProfileData:
    blocks: list[BlockRecord] = field(default_factory=list)
    trace: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class BasicBlock:
    """A profiled block resolved against the module (absolute offsets)."""

    function: int
    start: int
    end: int
    count: int

    @property
    def instruction_count(self) -> int:
        return (self.end - self.start) // INSTR_SIZE


def _non_negative_int(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        msg = f"{what} must be a non-negative integer, got {value!r}"
        raise ProfileError(msg)
    return value


def load_profile(text: str) -> ProfileData:
    """Parse profile JSON text. Raises ProfileError."""
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as e:
        msg = f"invalid JSON: {e}"
        raise ProfileError(msg) from e
    if not isinstance(doc, dict) or not isinstance(doc.get("blocks"), list):
        msg = "profile must be an object with a 'blocks' list"
        raise ProfileError(msg)

    blocks: list[BlockRecord] = []
    for i, entry in enumerate(doc["blocks"]):
        if not isinstance(entry, dict):
            msg = f"block {i} is not an object"
            raise ProfileError(msg)
        blocks.append(
            BlockRecord(
                _non_negative_int(entry.get("function"), f"block {i} function"),
                _non_negative_int(entry.get("offset"), f"block {i} offset"),
                _non_negative_int(entry.get("count"), f"block {i} count"),
            )
        )

    trace_doc = doc.get("trace", [])
    if not isinstance(trace_doc, list):
        msg = "'trace' must be a list of function ids"
        raise ProfileError(msg)
    trace = [_non_negative_int(v, f"trace entry {i}") for i, v in enumerate(trace_doc)]
    return ProfileData(blocks, trace)


class ProfileAnalyzer:
    """Answer statistics and lookup queries, writing reports to `out`."""

    def __init__(
        self,
        out: TextIO,
        module: BytecodeModule,
        profile: ProfileData | None = None,
        source_map: SourceMap | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.out = out
        self.module = module
        self.profile = profile
        self.source_map = source_map
        self.config = config if config is not None else dict(DEFAULTS)
        self.blocks: dict[int, list[BasicBlock]] = {}
        self.executed: dict[int, int] = {}
        if profile is not None:
            self._resolve_blocks(profile)

    def _resolve_blocks(self, profile: ProfileData) -> None:
        counts: dict[tuple[int, int], int] = {}
        for rec in profile.blocks:
            if rec.function >= self.module.function_count:
                msg = f"profile references unknown function {rec.function}"
                raise ProfileError(msg)
            size = self.module.functions[rec.function].bytecode_size
            if rec.offset >= size or rec.offset % INSTR_SIZE:
                msg = f"invalid block offset {rec.offset} in function {rec.function}"
                raise ProfileError(msg)
            key = (rec.function, rec.offset)
            counts[key] = counts.get(key, 0) + rec.count

        for func_id in range(self.module.function_count):
            fh = self.module.functions[func_id]
            offsets = sorted(off for fid, off in counts if fid == func_id)
            if not offsets:
                continue
            ends = [fh.offset + off for off in offsets[1:]] + [fh.end]
            resolved = [
                BasicBlock(func_id, fh.offset + off, end, counts[(func_id, off)]) for off, end in zip(offsets, ends)
            ]
            self.blocks[func_id] = resolved
            self.executed[func_id] = sum(b.count * b.instruction_count for b in resolved)

        for fid in profile.trace:
            if fid >= self.module.function_count:
                msg = f"trace references unknown function {fid}"
                raise ProfileError(msg)
        logging.debug(
            "Profile resolved: %d blocks over %d functions, %d trace entries",
            sum(len(b) for b in self.blocks.values()),
            len(self.blocks),
            len(profile.trace),
        )

    # --- helpers ---
    def _function_label(self, func_id: int) -> str:
        label = f"{self.module.function_name(func_id)}#{func_id}"
        loc = self.module.function_location(func_id)
        if loc is not None:
            label += f" [{loc[0]}:{loc[1]}]"
        return label

    def _require_profile(self) -> bool:
        if self.profile is None:
            self.out.write(NO_PROFILE_MSG)
            return False
        return True

    def _block_instructions(self, block: BasicBlock) -> list[tuple[int, str]]:
        result: list[tuple[int, str]] = []
        for off, instr, raw in self.module.instructions(block.function):
            if block.start <= off < block.end:
                text = mnemonic(instr) if instr is not None else f"<unknown opcode 0x{raw[0]:02x}>"
                result.append((off, text))
        return result

    # --- function statistics ---
    def dump_function_stats(self) -> None:
        """Executed instructions per function, hottest first."""
        if not self._require_profile():
            return
        rows = sorted(((n, fid) for fid, n in self.executed.items() if n > 0), key=lambda r: (-r[0], r[1]))
        total = sum(n for n, _ in rows)
        self.out.write(f"{'Function':<48}{'Instructions':>14}{'Percent':>10}\n")
        for n, fid in rows:
            pct = 100.0 * n / total
            self.out.write(f"{self._function_label(fid):<48}{n:>14}{pct:>9.2f}%\n")
        self.out.write(f"\nTotal instructions executed: {total}\n")

    def dump_used_function_ids(self) -> None:
        if not self._require_profile():
            return
        for fid in sorted(self.blocks):
            if any(b.count for b in self.blocks[fid]):
                self.out.write(f"{fid}\n")

    def dump_function_basic_block_stat(self, func_id: int) -> None:
        if not self._require_profile():
            return
        if func_id >= self.module.function_count:
            self.out.write(f"Error: no function with id: {func_id} exists.\n")
            return
        self.out.write(f"Basic blocks of {self._function_label(func_id)}:\n")
        blocks = self.blocks.get(func_id, [])
        if not blocks:
            self.out.write("  no basic block data\n")
            return
        for i, block in enumerate(blocks):
            self.out.write(
                f"  Block {i} [{block.start}, {block.end}) executed {block.count} times, "
                f"{block.instruction_count} instructions\n"
            )
            for off, text in self._block_instructions(block):
                self.out.write(f"    {off}: {text}\n")

    # --- instruction / block statistics ---
    def dump_instruction_stats(self) -> None:
        """Executed count per opcode, most frequent first."""
        if not self._require_profile():
            return
        counter: Counter[str] = Counter()
        for blocks in self.blocks.values():
            for block in blocks:
                for off, instr, raw in self.module.instructions(block.function):
                    if not block.start <= off < block.end:
                        continue
                    name = instr.opcode.name if instr is not None else f"<unknown 0x{raw[0]:02x}>"
                    counter[name] += block.count
        rows = sorted(((n, name) for name, n in counter.items() if n > 0), key=lambda r: (-r[0], r[1]))
        total = sum(n for n, _ in rows)
        self.out.write(f"{'Instruction':<24}{'Executed':>14}{'Percent':>10}\n")
        for n, name in rows:
            self.out.write(f"{name:<24}{n:>14}{100.0 * n / total:>9.2f}%\n")
        self.out.write(f"\nTotal instructions executed: {total}\n")

    def dump_basic_block_stats(self) -> None:
        """Hottest basic blocks, limited by `hot_block_limit` (0 = all)."""
        if not self._require_profile():
            return
        ranked = sorted(
            (b for blocks in self.blocks.values() for b in blocks),
            key=lambda b: (-b.count, b.function, b.start),
        )
        limit = self.config["hot_block_limit"]
        shown = ranked[:limit] if limit else ranked
        self.out.write(f"{'Count':>12}  Block\n")
        for block in shown:
            self.out.write(
                f"{block.count:>12}  {self._function_label(block.function)} @ [{block.start}, {block.end})\n"
            )
        if len(ranked) > len(shown):
            self.out.write(f"... {len(ranked) - len(shown)} more block(s)\n")

    def dump_io(self) -> None:
        """Visualize the page working set as functions are first executed."""
        profile = self.profile
        if profile is None:
            self.out.write(NO_PROFILE_MSG)
            return
        page_size = self.config["page_size"]
        file_length = self.module.header.file_length
        total_pages = max(1, -(-file_length // page_size))

        order = profile.trace or [rec.function for rec in profile.blocks if rec.count]
        self.out.write(f"Page size: {page_size} bytes, module pages: {total_pages}\n")
        self.out.write(f"{'Step':>6}{'Function':>10}{'New pages':>11}{'Working set':>13}\n")
        touched: set[int] = set()
        seen: set[int] = set()
        for fid in order:
            if fid in seen:
                continue
            seen.add(fid)
            fh = self.module.functions[fid]
            last = max(fh.offset, fh.end - 1)
            pages = set(range(fh.offset // page_size, last // page_size + 1))
            new_pages = pages - touched
            touched |= pages
            self.out.write(f"{len(seen):>6}{fid:>10}{len(new_pages):>11}{len(touched):>13}\n")
        self.out.write(f"\nWorking set: {len(touched)}/{total_pages} pages\n")
        self.out.write("[" + "".join("#" if p in touched else "." for p in range(total_pages)) + "]\n")

    def dump_summary(self) -> None:
        m = self.module
        body_size = sum(fh.bytecode_size for fh in m.functions)
        self.out.write("Module summary:\n")
        self.out.write(f"  File size: {m.header.file_length} bytes\n")
        self.out.write(f"  Functions: {m.function_count}\n")
        self.out.write(f"  Strings: {len(m.strings)}\n")
        self.out.write(f"  Filenames: {len(m.filenames)}\n")
        self.out.write(f"  Bytecode size: {m.bytecode_size} bytes\n")
        self.out.write(f"  Instructions: {body_size // INSTR_SIZE}\n")
        self.out.write(f"  Epilogue size: {len(m.epilogue)} bytes\n")
        if self.profile is not None:
            used = sum(1 for n in self.executed.values() if n > 0)
            self.out.write(f"  Functions executed: {used}/{m.function_count}\n")
            self.out.write(f"  Basic blocks recorded: {sum(len(b) for b in self.blocks.values())}\n")
            self.out.write(f"  Instructions executed: {sum(self.executed.values())}\n")

    # --- table lookups ---
    def dump_string(self, string_id: int) -> None:
        s = self.module.get_string(string_id)
        if s is None:
            self.out.write(f"Error: no string with id: {string_id} exists.\n")
            return
        self.out.write(s + "\n")

    def dump_file_name(self, filename_id: int) -> None:
        name = self.module.get_filename(filename_id)
        if name is None:
            self.out.write(f"Error: no filename with id: {filename_id} exists.\n")
            return
        self.out.write(name + "\n")

    # --- structured metadata ---
    def get_function_from_virtual_offset(self, virtual_offset: int) -> int | None:
        return self.module.find_function_at(virtual_offset)

    def _emit_function_info(self, func_id: int, json_out: JSONEmitter) -> None:
        fh = self.module.functions[func_id]
        json_out.open_dict()
        json_out.emit_key_value("functionNumber", func_id)
        json_out.emit_key_value("name", self.module.function_name(func_id))
        json_out.emit_key_value("virtualOffset", fh.offset)
        json_out.emit_key_value("size", fh.bytecode_size)
        json_out.emit_key_value("paramCount", fh.param_count)
        json_out.emit_key_value("frameSize", fh.frame_size)
        loc = self.module.function_location(func_id)
        if loc is not None:
            filename, line, column = loc
            json_out.emit_key("location")
            json_out.open_dict()
            json_out.emit_key_value("file", filename)
            json_out.emit_key_value("line", line)
            json_out.emit_key_value("column", column)
            json_out.close_dict()
            original = self.source_map.get_location_for_address(line, column) if self.source_map else None
            if original is not None:
                json_out.emit_key("originalLocation")
                json_out.open_dict()
                json_out.emit_key_value("file", original.file)
                json_out.emit_key_value("line", original.line)
                json_out.emit_key_value("column", original.column)
                json_out.close_dict()
        if self.profile is not None:
            json_out.emit_key_value("executedInstructions", self.executed.get(func_id, 0))
        json_out.close_dict()

    def dump_function_info(self, func_id: int, json_out: JSONEmitter) -> None:
        if func_id >= self.module.function_count:
            self.out.write(f"Error: no function with id: {func_id} exists.\n")
            return
        self._emit_function_info(func_id, json_out)
        self.out.write("\n")

    def dump_all_function_info(self, json_out: JSONEmitter) -> None:
        json_out.open_array()
        for func_id in range(self.module.function_count):
            self._emit_function_info(func_id, json_out)
        json_out.close_array()
        self.out.write("\n")

    def dump_epilogue(self) -> None:
        data = self.module.epilogue
        width = self.config["hexdump_width"]
        self.out.write(f"Epilogue ({len(data)} bytes):\n")
        for off in range(0, len(data), width):
            chunk = data[off : off + width]
            hexpart = " ".join(f"{b:02x}" for b in chunk)
            text = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
            self.out.write(f"{off:08x}  {hexpart:<{width * 3 - 1}}  |{text}|\n")
