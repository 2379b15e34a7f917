"""
Attribution suffix (ERC-8021 builder code).

Appended to the calldata of every transaction the agent submits so chain
explorers and attribution indexers can tell agent-authored transactions apart:

    [calldata][length: 1 byte][code: ASCII][schema id: 0x00][marker: 16 bytes]

Indexers only look at the tail, so the suffix never changes how the target
contract decodes its arguments.
"""

MARKER_8021 = bytes.fromhex("00000000000000000000000000008021")
SCHEMA_ID = b"\x00"


def build_suffix(code: str) -> bytes:
    raw = code.encode("ascii")
    if not raw or len(raw) > 255:
        raise ValueError(f"builder code must be 1..255 ASCII bytes, got {len(raw)}")
    return bytes([len(raw)]) + raw + SCHEMA_ID + MARKER_8021


def append_builder_code(calldata: bytes, code: str) -> bytes:
    return bytes(calldata) + build_suffix(code)


def has_builder_code(calldata: bytes) -> bool:
    return bytes(calldata).endswith(MARKER_8021)

