"""ISA: instruction encodings and helpers."""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass
from enum import IntEnum


class OpCode(IntEnum):
    """Keeps opcodes from all operations."""

    NOP = 0
    RET = 1  # return r[a]
    MOV = 2  # r[a] = r[b]

    LOAD_PARAM = 3  # r[a] = param[imm]
    LOAD_CONST_INT = 4  # r[a] = imm
    LOAD_CONST_STRING = 5  # r[a] = strings[imm]
    LOAD_CONST_UNDEFINED = 6
    LOAD_CONST_NULL = 7

    ADD = 10  # r[a] = r[b] + r[c]
    SUB = 11
    MUL = 12
    DIV = 13
    MOD = 14

    EQ = 20  # r[a] = r[b] == r[c]
    NEQ = 21
    LESS = 22
    LESS_EQ = 23
    GREATER = 24
    NOT = 25  # r[a] = !r[b]

    JMP = 30  # pc += imm
    JMP_TRUE = 31  # if r[a]: pc += imm
    JMP_FALSE = 32

    CALL = 40  # r[a] = r[b](c args)
    CREATE_CLOSURE = 41  # r[a] = closure(function imm)

    GET_GLOBAL_OBJECT = 50
    GET_BY_ID = 51  # r[a] = r[b][strings[imm]]
    PUT_BY_ID = 52  # r[a][strings[imm]] = r[b]
    NEW_OBJECT = 53
    NEW_ARRAY = 54  # r[a] = new Array(imm)

    THROW = 60
    DEBUGGER = 61
    PROFILE_POINT = 62  # basic block marker, imm = point index


# Instruction size is 8 bytes.
# Layout (little-endian):
#   byte 0    : opcode
#   bytes 1-3 : register operands a, b, c
#   bytes 4-7 : signed 32-bit immediate
INSTR_SIZE = 8
INSTR_FORMAT = "<BBBBi"

# Operand kinds, in the order they are written by mnemonic() and read by
# parse_instruction():
#   a/b/c : register
#   i     : immediate integer
#   s     : string table id (immediate)
#   f     : function id (immediate)
#   j     : jump offset in bytes, relative to the start of the instruction
OPERAND_FORMATS: dict[OpCode, str] = {
    OpCode.NOP: "",
    OpCode.RET: "a",
    OpCode.MOV: "ab",
    OpCode.LOAD_PARAM: "ai",
    OpCode.LOAD_CONST_INT: "ai",
    OpCode.LOAD_CONST_STRING: "as",
    OpCode.LOAD_CONST_UNDEFINED: "a",
    OpCode.LOAD_CONST_NULL: "a",
    OpCode.ADD: "abc",
    OpCode.SUB: "abc",
    OpCode.MUL: "abc",
    OpCode.DIV: "abc",
    OpCode.MOD: "abc",
    OpCode.EQ: "abc",
    OpCode.NEQ: "abc",
    OpCode.LESS: "abc",
    OpCode.LESS_EQ: "abc",
    OpCode.GREATER: "abc",
    OpCode.NOT: "ab",
    OpCode.JMP: "j",
    OpCode.JMP_TRUE: "aj",
    OpCode.JMP_FALSE: "aj",
    OpCode.CALL: "abc",
    OpCode.CREATE_CLOSURE: "af",
    OpCode.GET_GLOBAL_OBJECT: "a",
    OpCode.GET_BY_ID: "abs",
    OpCode.PUT_BY_ID: "abs",
    OpCode.NEW_OBJECT: "a",
    OpCode.NEW_ARRAY: "ai",
    OpCode.THROW: "a",
    OpCode.DEBUGGER: "",
    OpCode.PROFILE_POINT: "i",
}

REGISTER_KINDS = frozenset("abc")
JUMP_OPCODES = frozenset({OpCode.JMP, OpCode.JMP_TRUE, OpCode.JMP_FALSE})


@dataclass(frozen=True)
class Instruction:
    """One decoded instruction."""

    opcode: OpCode
    a: int = 0
    b: int = 0
    c: int = 0
    imm: int = 0

    def encode(self) -> bytes:
        return encode_instr(self.opcode, self.a, self.b, self.c, self.imm)

    @property
    def jump_offset(self) -> int | None:
        """Relative jump distance for branch instructions, None otherwise."""
        if self.opcode in JUMP_OPCODES:
            return self.imm
        return None


def encode_instr(opcode: OpCode, a: int = 0, b: int = 0, c: int = 0, imm: int = 0) -> bytes:
    """Encode instruction into 8 bytes.

    Registers are truncated to 8 bits; the immediate must fit a signed 32-bit
    value.
    """
    return struct.pack(INSTR_FORMAT, int(opcode) & 0xFF, a & 0xFF, b & 0xFF, c & 0xFF, int(imm))


def decode_instr(blob: bytes, offset: int) -> Instruction:
    """Decode instruction from bytes at offset.

    Raises EOFError if not enough bytes and ValueError on an unknown opcode.
    """
    b = blob[offset : offset + INSTR_SIZE]
    if len(b) < INSTR_SIZE:
        err = "End of function body"
        raise EOFError(err)
    op, ra, rb, rc, imm = struct.unpack(INSTR_FORMAT, b)
    try:
        opcode = OpCode(op)
    except ValueError as e:
        err = f"unknown opcode 0x{op:02x}"
        raise ValueError(err) from e
    return Instruction(opcode, ra, rb, rc, imm)


def operands(instr: Instruction) -> Iterator[tuple[str, int]]:
    """Yield (kind, value) for every operand of `instr` in format order."""
    for kind in OPERAND_FORMATS[instr.opcode]:
        if kind in REGISTER_KINDS:
            yield kind, getattr(instr, kind)
        else:
            yield kind, instr.imm


def mnemonic(instr: Instruction) -> str:
    """Get operation mnemonic with plain numeric operands."""
    parts = [f"r{value}" if kind in REGISTER_KINDS else str(value) for kind, value in operands(instr)]
    if not parts:
        return instr.opcode.name
    return f"{instr.opcode.name} {', '.join(parts)}"


def parse_instruction(text: str) -> Instruction:
    """Assemble one textual instruction, e.g. ``"ADD 0 1 2"``.

    Operands follow OPERAND_FORMATS order; commas are optional and integers
    accept any Python literal radix prefix.
    """
    parts = text.replace(",", " ").split()
    if not parts:
        err = "empty instruction"
        raise ValueError(err)
    name = parts[0].upper()
    try:
        opcode = OpCode[name]
    except KeyError as e:
        err = f"unknown mnemonic: {parts[0]}"
        raise ValueError(err) from e
    fmt = OPERAND_FORMATS[opcode]
    args = parts[1:]
    if len(args) != len(fmt):
        err = f"{name} expects {len(fmt)} operand(s), got {len(args)}"
        raise ValueError(err)
    fields = {"a": 0, "b": 0, "c": 0, "imm": 0}
    for kind, tok in zip(fmt, args):
        value = int(tok.lstrip("r") if kind in REGISTER_KINDS else tok, 0)
        fields[kind if kind in REGISTER_KINDS else "imm"] = value
    return Instruction(opcode, **fields)
