from __future__ import annotations

import io
import json

import pytest
from json_emitter import JSONEmitter


def emit_doc(em: JSONEmitter) -> None:
    em.open_dict()
    em.emit_key_value("name", "f\"q\"")
    em.emit_key("list")
    em.open_array()
    em.emit_value(1)
    em.emit_value(None)
    em.open_dict()
    em.close_dict()
    em.open_array()
    em.close_array()
    em.close_array()
    em.emit_key_value("ok", True)
    em.close_dict()


@pytest.mark.parametrize("indent", [0, 2, 4])
def test_pretty_matches_json_dumps(indent: int) -> None:
    out = io.StringIO()
    emit_doc(JSONEmitter(out, indent=indent))
    doc = json.loads(out.getvalue())
    assert out.getvalue() == json.dumps(doc, indent=indent)


def test_compact() -> None:
    out = io.StringIO()
    emit_doc(JSONEmitter(out, pretty=False))
    assert out.getvalue() == '{"name":"f\\"q\\"","list":[1,null,{},[]],"ok":true}'


def test_top_level_scalar() -> None:
    out = io.StringIO()
    JSONEmitter(out).emit_value("x")
    assert out.getvalue() == '"x"'


def test_misuse_raises() -> None:
    em = JSONEmitter(io.StringIO())
    with pytest.raises(ValueError, match="outside an object"):
        em.emit_key("k")
    em.open_dict()
    with pytest.raises(ValueError, match="without a key"):
        em.emit_value(1)
    em.emit_key("k")
    with pytest.raises(ValueError, match="awaits its value"):
        em.emit_key("j")
    with pytest.raises(ValueError, match="unbalanced close"):
        em.close_dict()
    em.emit_value(1)
    with pytest.raises(ValueError, match="unbalanced close of array"):
        em.close_array()
