"""hbcdump command line: load a bytecode module and inspect it interactively.

Exit codes: 0 on success, 1 when the module cannot be deserialized, 2 on a
bad config, -1 for any other fatal input or output problem.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TextIO

from config import ConfigError, load_config
from container import BytecodeModule, DeserializationError, load_module, print_section_ranges
from disassembler import DisassemblyFormat, default_options
from profile_analyzer import ProfileError, load_profile
from session import SessionState, enter_command_loop, parse_startup_commands
from source_map import SourceMapError, parse_source_map

EXIT_FAILURE = -1


def init_logging(logfile: str | None = None, debug: bool = False, console: bool = False) -> None:
    """Configure the root logger.

    DEBUG level when `debug` is set, CRITICAL otherwise. Records go to
    `logfile` when one is given, to stderr when not; `console` also echoes
    them to stderr alongside the file (only when debugging).
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.CRITICAL
    root.setLevel(lvl)

    if debug:
        fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        fmt = "%(levelname)-5s %(message)s"

    handler: logging.Handler
    if logfile:
        handler = logging.FileHandler(logfile, mode="w", encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(lvl)
    handler.setFormatter(logging.Formatter(fmt))
    root.addHandler(handler)

    if logfile and debug and console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="hbcdump", description="Interactive bytecode module inspector.")
    ap.add_argument("input", help="input bytecode module")
    ap.add_argument("--out", "-o", default=None, help="write command output to this file instead of stdout")
    ap.add_argument("--source-map", default=None, help="source map used to resolve original locations")
    ap.add_argument("-c", dest="commands", default="", help="';'-separated commands to run before the prompt")

    fmt = ap.add_mutually_exclusive_group()
    fmt.add_argument(
        "--raw-disassemble",
        dest="disassemble_format",
        action="store_const",
        const=DisassemblyFormat.RAW,
        help="plain mnemonic listing",
    )
    fmt.add_argument(
        "--pretty-disassemble",
        dest="disassemble_format",
        action="store_const",
        const=DisassemblyFormat.PRETTY,
        help="annotated listing with labels and resolved operands (default)",
    )
    fmt.add_argument(
        "--objdump-disassemble",
        dest="disassemble_format",
        action="store_const",
        const=DisassemblyFormat.OBJDUMP,
        help="objdump-style listing with offsets and raw bytes",
    )
    ap.set_defaults(disassemble_format=DisassemblyFormat.PRETTY)

    ap.add_argument(
        "--mode",
        choices=("instruction", "function"),
        default=None,
        help="print the given statistics after the -c commands and exit",
    )
    ap.add_argument("--profile-file", default=None, help="basic block profile log (JSON)")
    ap.add_argument(
        "--show-section-ranges",
        action="store_true",
        help="print the byte range of every module section and exit",
    )
    ap.add_argument("--human", action="store_true", help="print section ranges in hex")

    ap.add_argument("--config", default=None, help="path to yaml config")
    ap.add_argument("--debug", action="store_true", help="enable debug logging")
    ap.add_argument("--logfile", default=None, help="write log records to this file instead of stderr")
    ap.add_argument("--console", action="store_true", help="also echo logs to stderr (only with --debug and --logfile)")
    return ap


def _fail_open(path: str, e: OSError) -> int:
    print(f"Error: fail to open file: {path}: {e.strerror or e}", file=sys.stderr)
    return EXIT_FAILURE


def _run(args: argparse.Namespace) -> int:
    try:
        data = Path(args.input).read_bytes()
    except OSError as e:
        return _fail_open(args.input, e)

    try:
        module = load_module(data)
    except DeserializationError as e:
        print(f"Error: fail to deserializing bytecode: {e}", file=sys.stderr)
        return 1

    if not args.out:
        return _serve(args, module, sys.stdout)
    try:
        out = open(args.out, "w", encoding="utf-8")
    except OSError as e:
        return _fail_open(args.out, e)
    with out:
        return _serve(args, module, out)


def _serve(args: argparse.Namespace, module: BytecodeModule, out: TextIO) -> int:
    startup_commands = parse_startup_commands(args.commands)
    if args.mode:
        startup_commands += [args.mode, "quit"]

    source_map = None
    if args.source_map:
        try:
            text = Path(args.source_map).read_text(encoding="utf-8")
        except OSError as e:
            return _fail_open(args.source_map, e)
        try:
            source_map = parse_source_map(text)
        except SourceMapError as e:
            print(f"Error: fail to parse source map: {args.source_map}: {e}", file=sys.stderr)
            return EXIT_FAILURE

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e, file=sys.stderr)
        return 2

    state = SessionState(
        module=module,
        out=out,
        options=default_options(args.disassemble_format),
        source_map=source_map,
        config=cfg,
    )

    if not args.profile_file:
        if args.show_section_ranges:
            print_section_ranges(module, out, args.human)
            return 0
        enter_command_loop(state, startup_commands)
        return 0

    try:
        profile_text = Path(args.profile_file).read_text(encoding="utf-8")
    except OSError as e:
        return _fail_open(args.profile_file, e)
    try:
        state.profile = load_profile(profile_text)
        enter_command_loop(state, startup_commands)
    except ProfileError as e:
        print(f"Error: fail to parse profile file: {args.profile_file}: {e}", file=sys.stderr)
        return EXIT_FAILURE
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)
    logging.debug("CLI: %r", args)
    return _run(args)


if __name__ == "__main__":
    sys.exit(main())
