from __future__ import annotations

import pytest

from core.builder_code import MARKER_8021, append_builder_code, build_suffix, has_builder_code


def test_suffix_layout() -> None:
    suffix = build_suffix("proofwell")
    assert suffix[0] == len("proofwell")
    assert suffix[1:10] == b"proofwell"
    assert suffix[10:11] == b"\x00"
    assert suffix[11:] == MARKER_8021
    assert len(suffix) == 1 + 9 + 1 + 16


def test_append_keeps_calldata_prefix_intact() -> None:
    calldata = bytes.fromhex("a9059cbb") + b"\x01" * 64
    tagged = append_builder_code(calldata, "proofwell")
    assert tagged.startswith(calldata)
    assert has_builder_code(tagged)
    assert not has_builder_code(calldata)


def test_empty_calldata_still_tagged() -> None:
    assert has_builder_code(append_builder_code(b"", "x"))


@pytest.mark.parametrize("code", ["", "a" * 256])
def test_rejects_out_of_range_codes(code: str) -> None:
    with pytest.raises(ValueError):
        build_suffix(code)


def test_rejects_non_ascii_code() -> None:
    with pytest.raises(UnicodeEncodeError):
        build_suffix("prööfwell")
