"""Bytecode container: module layout, loader, builder and section walker.

A module is a little-endian byte image laid out as

    header | function headers | string table | string storage |
    filename table | filename storage | bytecode | epilogue

`load_module` validates the image and returns a read-only `BytecodeModule`.
`ModuleBuilder` produces images (used by the golden records and tests).
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Any, TextIO

from isa import INSTR_SIZE, Instruction, decode_instr, parse_instruction

MAGIC = b"HBCM"
VERSION = 1

HEADER_FORMAT = "<4s8I"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 36
FUNCTION_HEADER_FORMAT = "<8I"
FUNCTION_HEADER_SIZE = struct.calcsize(FUNCTION_HEADER_FORMAT)  # 32
TABLE_ENTRY_FORMAT = "<2I"
TABLE_ENTRY_SIZE = struct.calcsize(TABLE_ENTRY_FORMAT)  # 8

NO_FILENAME = 0xFFFFFFFF


class DeserializationError(ValueError):
    """Raised when a byte image is not a valid bytecode module."""

    pass


@dataclass(frozen=True)
class ModuleHeader:
    version: int
    file_length: int
    global_function: int
    function_count: int
    string_count: int
    string_storage_size: int
    filename_count: int
    filename_storage_size: int


@dataclass(frozen=True)
class FunctionHeader:
    offset: int
    bytecode_size: int
    name_id: int
    param_count: int
    frame_size: int
    filename_id: int
    line: int
    column: int

    @property
    def end(self) -> int:
        return self.offset + self.bytecode_size

    @property
    def has_location(self) -> bool:
        return self.filename_id != NO_FILENAME


def _pad4(n: int) -> int:
    return (n + 3) & ~3


def _read_table(
    data: bytes,
    table_off: int,
    count: int,
    storage_off: int,
    storage_size: int,
    what: str,
) -> list[str]:
    """Decode `count` (offset, length) entries pointing into a storage blob."""
    result: list[str] = []
    for i in range(count):
        off, length = struct.unpack_from(TABLE_ENTRY_FORMAT, data, table_off + i * TABLE_ENTRY_SIZE)
        if off + length > storage_size:
            msg = f"{what} {i} lies outside {what} storage"
            raise DeserializationError(msg)
        raw = data[storage_off + off : storage_off + off + length]
        try:
            result.append(raw.decode("utf-8"))
        except UnicodeDecodeError as e:
            msg = f"{what} {i} is not valid UTF-8: {e}"
            raise DeserializationError(msg) from e
    return result


class BytecodeModule:
    """In-memory view of a deserialized module (the provider)."""

    data: bytes
    header: ModuleHeader
    functions: list[FunctionHeader]
    strings: list[str]
    filenames: list[str]

    def __init__(
        self,
        data: bytes,
        header: ModuleHeader,
        functions: list[FunctionHeader],
        strings: list[str],
        filenames: list[str],
    ) -> None:
        self.data = data
        self.header = header
        self.functions = functions
        self.strings = strings
        self.filenames = filenames

        # section boundaries, in file order
        self.function_headers_start = HEADER_SIZE
        self.string_table_start = self.function_headers_start + header.function_count * FUNCTION_HEADER_SIZE
        self.string_storage_start = self.string_table_start + header.string_count * TABLE_ENTRY_SIZE
        self.filename_table_start = self.string_storage_start + header.string_storage_size
        self.filename_storage_start = self.filename_table_start + header.filename_count * TABLE_ENTRY_SIZE
        self.bytecode_start = self.filename_storage_start + header.filename_storage_size

    @property
    def function_count(self) -> int:
        return len(self.functions)

    @property
    def epilogue(self) -> bytes:
        return self.data[self.header.file_length :]

    @property
    def bytecode_size(self) -> int:
        return self.header.file_length - self.bytecode_start

    def get_string(self, string_id: int) -> str | None:
        if 0 <= string_id < len(self.strings):
            return self.strings[string_id]
        return None

    def get_filename(self, filename_id: int) -> str | None:
        if 0 <= filename_id < len(self.filenames):
            return self.filenames[filename_id]
        return None

    def function_name(self, func_id: int) -> str:
        return self.strings[self.functions[func_id].name_id]

    def function_location(self, func_id: int) -> tuple[str, int, int] | None:
        """Return (filename, line, column) of a function, if it has one."""
        fh = self.functions[func_id]
        if not fh.has_location:
            return None
        return self.filenames[fh.filename_id], fh.line, fh.column

    def instructions(self, func_id: int) -> list[tuple[int, Instruction | None, bytes]]:
        """Decode a function body.

        Returns (absolute offset, instruction, raw bytes) triples; the
        instruction is None when the opcode byte is unknown.
        """
        fh = self.functions[func_id]
        result: list[tuple[int, Instruction | None, bytes]] = []
        for off in range(fh.offset, fh.end, INSTR_SIZE):
            raw = self.data[off : off + INSTR_SIZE]
            try:
                instr: Instruction | None = decode_instr(self.data, off)
            except ValueError:
                instr = None
            result.append((off, instr, raw))
        return result

    def find_function_at(self, virtual_offset: int) -> int | None:
        """Return the id of the function whose body contains `virtual_offset`."""
        for func_id, fh in enumerate(self.functions):
            if fh.offset <= virtual_offset < fh.end:
                return func_id
        return None

    def section_ranges(self) -> list[tuple[str, int, int]]:
        """Return (name, start, end) byte ranges of every section, end exclusive."""
        file_length = self.header.file_length
        return [
            ("Header", 0, HEADER_SIZE),
            ("Function headers", self.function_headers_start, self.string_table_start),
            ("String table", self.string_table_start, self.string_storage_start),
            ("String storage", self.string_storage_start, self.filename_table_start),
            ("Filename table", self.filename_table_start, self.filename_storage_start),
            ("Filename storage", self.filename_storage_start, self.bytecode_start),
            ("Bytecode", self.bytecode_start, file_length),
            ("Epilogue", file_length, len(self.data)),
        ]


def load_module(data: bytes) -> BytecodeModule:
    """Deserialize and validate a module image.

    Raises DeserializationError describing the first problem found.
    """
    if len(data) < HEADER_SIZE:
        msg = f"buffer of {len(data)} bytes is smaller than the {HEADER_SIZE}-byte header"
        raise DeserializationError(msg)
    magic, *fields = struct.unpack_from(HEADER_FORMAT, data, 0)
    if magic != MAGIC:
        msg = f"incorrect magic number {magic!r}"
        raise DeserializationError(msg)
    header = ModuleHeader(*fields)
    if header.version != VERSION:
        msg = f"wrong bytecode version, expected {VERSION} but got {header.version}"
        raise DeserializationError(msg)
    if header.file_length > len(data):
        msg = f"bytecode is truncated: header says {header.file_length} bytes, got {len(data)}"
        raise DeserializationError(msg)

    tables_end = (
        HEADER_SIZE
        + header.function_count * FUNCTION_HEADER_SIZE
        + header.string_count * TABLE_ENTRY_SIZE
        + header.string_storage_size
        + header.filename_count * TABLE_ENTRY_SIZE
        + header.filename_storage_size
    )
    if tables_end > header.file_length:
        msg = f"tables end at byte {tables_end}, past the end of the module ({header.file_length})"
        raise DeserializationError(msg)

    functions: list[FunctionHeader] = []
    for i in range(header.function_count):
        off = HEADER_SIZE + i * FUNCTION_HEADER_SIZE
        functions.append(FunctionHeader(*struct.unpack_from(FUNCTION_HEADER_FORMAT, data, off)))

    string_table = HEADER_SIZE + header.function_count * FUNCTION_HEADER_SIZE
    string_storage = string_table + header.string_count * TABLE_ENTRY_SIZE
    strings = _read_table(data, string_table, header.string_count, string_storage, header.string_storage_size, "string")

    filename_table = string_storage + header.string_storage_size
    filename_storage = filename_table + header.filename_count * TABLE_ENTRY_SIZE
    filenames = _read_table(
        data, filename_table, header.filename_count, filename_storage, header.filename_storage_size, "filename"
    )

    for i, fh in enumerate(functions):
        if fh.offset < tables_end or fh.end > header.file_length:
            msg = f"function {i} lies outside the bytecode section"
            raise DeserializationError(msg)
        if fh.bytecode_size % INSTR_SIZE:
            msg = f"function {i} size {fh.bytecode_size} is not a multiple of {INSTR_SIZE}"
            raise DeserializationError(msg)
        if fh.name_id >= header.string_count:
            msg = f"function {i} name id {fh.name_id} out of range"
            raise DeserializationError(msg)
        if fh.has_location and fh.filename_id >= header.filename_count:
            msg = f"function {i} filename id {fh.filename_id} out of range"
            raise DeserializationError(msg)

    if header.function_count and header.global_function >= header.function_count:
        msg = f"global function {header.global_function} out of range"
        raise DeserializationError(msg)

    module = BytecodeModule(bytes(data), header, functions, strings, filenames)
    logging.debug(
        "Loaded module: %d functions, %d strings, %d filenames, %d bytes (+%d epilogue)",
        module.function_count,
        len(strings),
        len(filenames),
        header.file_length,
        len(module.epilogue),
    )
    return module


def print_section_ranges(module: BytecodeModule, out: TextIO, human: bool = False) -> None:
    """Write the byte range of each section, in hex when `human` is set."""
    for name, start, end in module.section_ranges():
        if human:
            out.write(f"{name}: 0x{start:08x}:0x{end:08x}\n")
        else:
            out.write(f"{name}: {start}:{end}\n")


# --- builder ---


@dataclass
class _PendingFunction:
    name_id: int
    code: bytes
    param_count: int
    frame_size: int
    filename_id: int
    line: int
    column: int


@dataclass
class ModuleBuilder:
    """Assemble a module image from strings, filenames and function bodies."""

    strings: list[str] = field(default_factory=list)
    filenames: list[str] = field(default_factory=list)
    functions: list[_PendingFunction] = field(default_factory=list)
    global_function: int = 0
    epilogue: bytes = b""

    def add_string(self, s: str) -> int:
        """Intern a string and return its id."""
        if s in self.strings:
            return self.strings.index(s)
        self.strings.append(s)
        return len(self.strings) - 1

    def add_filename(self, name: str) -> int:
        if name in self.filenames:
            return self.filenames.index(name)
        self.filenames.append(name)
        return len(self.filenames) - 1

    def add_function(
        self,
        name: str,
        code: list[Instruction] | bytes,
        param_count: int = 0,
        frame_size: int = 0,
        filename: str | None = None,
        line: int = 0,
        column: int = 0,
    ) -> int:
        """Append a function and return its id."""
        body = code if isinstance(code, bytes) else b"".join(instr.encode() for instr in code)
        filename_id = NO_FILENAME if filename is None else self.add_filename(filename)
        self.functions.append(
            _PendingFunction(self.add_string(name), body, param_count, frame_size, filename_id, line, column)
        )
        return len(self.functions) - 1

    @staticmethod
    def _storage(items: list[str]) -> tuple[bytes, bytes]:
        table = bytearray()
        storage = bytearray()
        for s in items:
            enc = s.encode("utf-8")
            table += struct.pack(TABLE_ENTRY_FORMAT, len(storage), len(enc))
            storage += enc
        storage += b"\x00" * (_pad4(len(storage)) - len(storage))
        return bytes(table), bytes(storage)

    def build(self) -> bytes:
        """Serialize the module image (epilogue appended after file_length)."""
        string_table, string_storage = self._storage(self.strings)
        filename_table, filename_storage = self._storage(self.filenames)

        bytecode_start = (
            HEADER_SIZE
            + len(self.functions) * FUNCTION_HEADER_SIZE
            + len(string_table)
            + len(string_storage)
            + len(filename_table)
            + len(filename_storage)
        )
        headers = bytearray()
        bodies = bytearray()
        for fn in self.functions:
            headers += struct.pack(
                FUNCTION_HEADER_FORMAT,
                bytecode_start + len(bodies),
                len(fn.code),
                fn.name_id,
                fn.param_count,
                fn.frame_size,
                fn.filename_id,
                fn.line,
                fn.column,
            )
            bodies += fn.code

        file_length = bytecode_start + len(bodies)
        header = struct.pack(
            HEADER_FORMAT,
            MAGIC,
            VERSION,
            file_length,
            self.global_function,
            len(self.functions),
            len(self.strings),
            len(string_storage),
            len(self.filenames),
            len(filename_storage),
        )
        return (
            header
            + bytes(headers)
            + string_table
            + string_storage
            + filename_table
            + filename_storage
            + bytes(bodies)
            + self.epilogue
        )

    @classmethod
    def from_dict(cls, doc: dict[str, Any]) -> ModuleBuilder:
        """Create a builder from a mapping (the `module:` block of golden records).

        Keys: `strings` (list, interned first, in order), `functions` (list of
        mappings with `name`, `code` (list of instruction texts), optional
        `params`, `frame_size`, `source: {file, line, column}`),
        `global_function`, `epilogue` (hex string).
        """
        builder = cls()
        for s in doc.get("strings") or []:
            builder.add_string(str(s))
        for fn in doc.get("functions") or []:
            source = fn.get("source") or {}
            builder.add_function(
                str(fn["name"]),
                [parse_instruction(str(line)) for line in fn.get("code") or []],
                param_count=int(fn.get("params", 0)),
                frame_size=int(fn.get("frame_size", 0)),
                filename=source.get("file"),
                line=int(source.get("line", 0)),
                column=int(source.get("column", 0)),
            )
        builder.global_function = int(doc.get("global_function", 0))
        builder.epilogue = bytes.fromhex(str(doc.get("epilogue", "")))
        return builder
