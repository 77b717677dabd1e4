"""
Dictionary codec: LZW compression with a 16-bit code space.

Text is encoded to UTF-8 before compression so the initial dictionary of
256 single-byte entries covers every possible input.  Token streams travel
inside JSON as base64 over little-endian 16-bit code words.

    payload = compress_payload(text)
    assert decompress(payload.tokens) == text
"""

from __future__ import annotations

import base64
import binascii
import struct
from dataclasses import dataclass

from .errors import CorruptDataError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Number of single-byte entries the dictionary starts with.
INITIAL_DICT_SIZE: int = 256

#: Dictionary capacity; codes are always in ``[0, MAX_DICT_SIZE)``.
MAX_DICT_SIZE: int = 65536

_ENCODING = "utf-8"
_ERRORS = "surrogatepass"


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


@dataclass
class CompressedPayload:
    """An LZW token stream plus the sizes needed to report a ratio."""

    tokens: list[int]
    original_size: int
    compressed_size: int

    @property
    def ratio(self) -> float:
        """Percentage of bytes saved, 0 for empty input."""
        if self.original_size == 0:
            return 0.0
        return (1 - self.compressed_size / self.original_size) * 100

    def to_dict(self) -> dict:
        return {
            "data": to_base64(self.tokens),
            "original_size": self.original_size,
            "compressed_size": self.compressed_size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CompressedPayload":
        tokens = from_base64(data.get("data", ""))
        return cls(
            tokens=tokens,
            original_size=int(data.get("original_size", 0)),
            compressed_size=int(data.get("compressed_size", 2 * len(tokens))),
        )


# ---------------------------------------------------------------------------
# LZW
# ---------------------------------------------------------------------------


def compress(text: str) -> list[int]:
    """
    Compress *text* into a list of dictionary codes.

    The scan is greedy: the current match is extended while the dictionary
    knows it, then the code of the longest known match is emitted and the
    extended sequence is registered under the next free id.  Once
    ``MAX_DICT_SIZE`` entries exist, emission continues without growth.
    """
    if not text:
        return []

    data = text.encode(_ENCODING, _ERRORS)
    dictionary: dict[bytes, int] = {bytes([i]): i for i in range(INITIAL_DICT_SIZE)}
    next_code = INITIAL_DICT_SIZE

    tokens: list[int] = []
    current = b""
    for byte in data:
        combined = current + bytes([byte])
        if combined in dictionary:
            current = combined
            continue
        tokens.append(dictionary[current])
        if next_code < MAX_DICT_SIZE:
            dictionary[combined] = next_code
            next_code += 1
        current = bytes([byte])

    if current:
        tokens.append(dictionary[current])
    return tokens


def decompress(tokens: list[int]) -> str:
    """
    Rebuild the text that produced *tokens*.

    Raises :class:`CorruptDataError` when a code is out of range, refers to
    an entry that cannot exist yet, or the bytes are not valid UTF-8.
    """
    if tokens is None or len(tokens) == 0:
        return ""

    dictionary: dict[int, bytes] = {i: bytes([i]) for i in range(INITIAL_DICT_SIZE)}
    next_code = INITIAL_DICT_SIZE

    first = tokens[0]
    if not isinstance(first, int) or not 0 <= first < INITIAL_DICT_SIZE:
        raise CorruptDataError(f"Invalid first code {first!r}")

    previous = dictionary[first]
    out = bytearray(previous)

    for position, code in enumerate(tokens[1:], start=1):
        if not isinstance(code, int) or code < 0:
            raise CorruptDataError(f"Invalid code {code!r} at position {position}")
        if code in dictionary:
            entry = dictionary[code]
        elif code == next_code and next_code < MAX_DICT_SIZE:
            # Sequence registered by the step that emitted this code.
            entry = previous + previous[:1]
        else:
            raise CorruptDataError(
                f"Code {code} at position {position} references unknown entry "
                f"(next id {next_code})"
            )

        out += entry
        if next_code < MAX_DICT_SIZE:
            dictionary[next_code] = previous + entry[:1]
            next_code += 1
        previous = entry

    try:
        return bytes(out).decode(_ENCODING, _ERRORS)
    except UnicodeDecodeError as exc:
        raise CorruptDataError("Decompressed bytes are not valid UTF-8") from exc


# ---------------------------------------------------------------------------
# Binary transport
# ---------------------------------------------------------------------------


def to_base64(tokens: list[int]) -> str:
    """Pack *tokens* as little-endian 16-bit words and base64-encode them."""
    if not tokens:
        return ""
    try:
        raw = struct.pack(f"<{len(tokens)}H", *tokens)
    except struct.error as exc:
        raise CorruptDataError("Token out of 16-bit range") from exc
    return base64.b64encode(raw).decode("ascii")


def from_base64(encoded: str) -> list[int]:
    """Inverse of :func:`to_base64`."""
    if not encoded:
        return []
    try:
        raw = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CorruptDataError("Payload is not valid base64") from exc
    if len(raw) % 2:
        raise CorruptDataError("Payload has an odd number of bytes")
    return list(struct.unpack(f"<{len(raw) // 2}H", raw))


# ---------------------------------------------------------------------------
# Convenience
# ---------------------------------------------------------------------------


def compress_payload(text: str) -> CompressedPayload:
    tokens = compress(text)
    return CompressedPayload(
        tokens=tokens,
        original_size=len(text.encode(_ENCODING, _ERRORS)),
        compressed_size=2 * len(tokens),
    )


def compress_to_base64(text: str) -> str:
    return to_base64(compress(text))


def decompress_from_base64(encoded: str) -> str:
    return decompress(from_base64(encoded))


def compression_ratio(original: str, payload: CompressedPayload) -> dict:
    """Size report in the shape stored alongside exports."""
    original_size = len(original.encode(_ENCODING, _ERRORS))
    ratio = (1 - payload.compressed_size / original_size) * 100 if original_size else 0.0
    return {
        "originalSize": original_size,
        "compressedSize": payload.compressed_size,
        "ratio": ratio,
        "savings": original_size - payload.compressed_size,
    }
