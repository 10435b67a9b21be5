"""Source map (revision 3) parser.

Only the parts needed to map a generated (line, column) back to an original
location are decoded: `sources`, `sourceRoot` and the base64-VLQ `mappings`.
"""

from __future__ import annotations

import bisect
import json
import logging
from dataclasses import dataclass
from typing import Any

BASE64_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_BASE64_VALUES = {ch: i for i, ch in enumerate(BASE64_CHARS)}

VLQ_SHIFT = 5
VLQ_CONTINUATION = 1 << VLQ_SHIFT
VLQ_MASK = VLQ_CONTINUATION - 1


class SourceMapError(ValueError):
    """Raised when a source map cannot be parsed."""

    pass


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int  # 1-based
    column: int  # 1-based


@dataclass(frozen=True)
class Segment:
    generated_column: int  # 0-based
    source_index: int | None = None
    source_line: int = 0  # 0-based
    source_column: int = 0  # 0-based


def decode_vlq(text: str) -> list[int]:
    """Decode one base64-VLQ segment into signed integers."""
    values: list[int] = []
    shift = 0
    acc = 0
    for ch in text:
        digit = _BASE64_VALUES.get(ch)
        if digit is None:
            msg = f"invalid base64 character {ch!r} in mappings"
            raise SourceMapError(msg)
        acc += (digit & VLQ_MASK) << shift
        if digit & VLQ_CONTINUATION:
            shift += VLQ_SHIFT
            continue
        negative = acc & 1
        acc >>= 1
        values.append(-acc if negative else acc)
        acc = 0
        shift = 0
    if shift:
        msg = f"truncated VLQ value in segment {text!r}"
        raise SourceMapError(msg)
    return values


class SourceMap:
    """Decoded mapping table, one sorted segment list per generated line."""

    def __init__(self, sources: list[str], lines: list[list[Segment]]) -> None:
        self.sources = sources
        self.lines = lines

    def get_location_for_address(self, line: int, column: int) -> SourceLocation | None:
        """Map a 1-based generated (line, column) to its original location."""
        if not 1 <= line <= len(self.lines):
            return None
        segments = self.lines[line - 1]
        columns = [seg.generated_column for seg in segments]
        idx = bisect.bisect_right(columns, column - 1) - 1
        if idx < 0:
            return None
        seg = segments[idx]
        if seg.source_index is None:
            return None
        return SourceLocation(self.sources[seg.source_index], seg.source_line + 1, seg.source_column + 1)


def _decode_mappings(mappings: str, source_count: int) -> list[list[Segment]]:
    lines: list[list[Segment]] = []
    # source index/line/column are relative to the previous segment across
    # lines, the generated column resets on every line
    source_index = 0
    source_line = 0
    source_column = 0
    for line_text in mappings.split(";"):
        generated_column = 0
        segments: list[Segment] = []
        for seg_text in line_text.split(","):
            if not seg_text:
                continue
            fields = decode_vlq(seg_text)
            if len(fields) not in (1, 4, 5):
                msg = f"segment {seg_text!r} has {len(fields)} fields"
                raise SourceMapError(msg)
            generated_column += fields[0]
            if len(fields) == 1:
                segments.append(Segment(generated_column))
                continue
            source_index += fields[1]
            source_line += fields[2]
            source_column += fields[3]
            if not 0 <= source_index < source_count:
                msg = f"source index {source_index} out of range"
                raise SourceMapError(msg)
            segments.append(Segment(generated_column, source_index, source_line, source_column))
        segments.sort(key=lambda s: s.generated_column)
        lines.append(segments)
    return lines


def parse_source_map(text: str) -> SourceMap:
    """Parse source map JSON text. Raises SourceMapError."""
    try:
        doc: Any = json.loads(text)
    except json.JSONDecodeError as e:
        msg = f"invalid JSON: {e}"
        raise SourceMapError(msg) from e
    if not isinstance(doc, dict):
        msg = "source map is not a JSON object"
        raise SourceMapError(msg)
    if doc.get("version") != 3:
        msg = f"unsupported source map version: {doc.get('version')!r}"
        raise SourceMapError(msg)
    sources = doc.get("sources")
    mappings = doc.get("mappings")
    if not isinstance(sources, list) or not all(isinstance(s, str) for s in sources):
        msg = "'sources' must be a list of strings"
        raise SourceMapError(msg)
    if not isinstance(mappings, str):
        msg = "'mappings' must be a string"
        raise SourceMapError(msg)
    root = doc.get("sourceRoot") or ""
    if not isinstance(root, str):
        msg = "'sourceRoot' must be a string"
        raise SourceMapError(msg)
    if root and not root.endswith("/"):
        root += "/"

    lines = _decode_mappings(mappings, len(sources))
    logging.debug("Parsed source map: %d sources, %d generated lines", len(sources), len(lines))
    return SourceMap([root + s for s in sources], lines)
