"""
GGUF metadata reader.

Only the header and the key/value section are decoded; tensor data is never
touched. File layout::

    magic        4 bytes  b"GGUF"
    version      uint32   1..3, byte order detected from this field
    tensor_count uint32 (v1) | uint64 (v2+)
    kv_count     uint32 (v1) | uint64 (v2+)
    kv_count x (string key, uint32 type tag, typed value)

Dotted keys are folded into a nested dict, so ``general.architecture``
ends up as ``metadata["general"]["architecture"]``.
"""

from __future__ import annotations

import enum
import io
import logging
import struct
from pathlib import Path
from typing import Any, BinaryIO

from .errors import (
    InvalidFormatError,
    TruncatedInputError,
    UnsupportedTypeError,
    UnsupportedVersionError,
)

__all__ = [
    "BULKY_KEYS",
    "BinaryReader",
    "GGUFValueType",
    "decode_value",
    "insert_key_path",
    "parse_gguf_metadata",
    "read_gguf_metadata",
    "skip_value",
]

logger = logging.getLogger(__name__)

GGUF_MAGIC = b"GGUF"
MIN_VERSION = 1
MAX_VERSION = 3

# Tokenizer tables run to megabytes; quick mode skips them.
BULKY_KEYS = frozenset(
    {
        "tokenizer.ggml.tokens",
        "tokenizer.ggml.scores",
        "tokenizer.ggml.token_type",
        "tokenizer.ggml.merges",
        "tokenizer.ggml.added_tokens",
    }
)


class GGUFValueType(enum.IntEnum):
    UINT8 = 0
    INT8 = 1
    UINT16 = 2
    INT16 = 3
    UINT32 = 4
    INT32 = 5
    FLOAT32 = 6
    BOOL = 7
    STRING = 8
    ARRAY = 9
    UINT64 = 10
    INT64 = 11
    FLOAT64 = 12


# Big-endian: BinaryReader.read() has already normalised the byte order.
_SCALAR_FORMATS: dict[GGUFValueType, str] = {
    GGUFValueType.UINT8: ">B",
    GGUFValueType.INT8: ">b",
    GGUFValueType.UINT16: ">H",
    GGUFValueType.INT16: ">h",
    GGUFValueType.UINT32: ">I",
    GGUFValueType.INT32: ">i",
    GGUFValueType.FLOAT32: ">f",
    GGUFValueType.UINT64: ">Q",
    GGUFValueType.INT64: ">q",
    GGUFValueType.FLOAT64: ">d",
}

_FIXED_WIDTHS: dict[GGUFValueType, int] = {
    **{t: struct.calcsize(fmt) for t, fmt in _SCALAR_FORMATS.items()},
    GGUFValueType.BOOL: 1,
}


class BinaryReader:
    """
    Sequential reader over a binary file handle.

    ``read()`` returns primitives in big-endian order: when the stream is
    little-endian the bytes are reversed before being handed out.
    ``read_bytes()`` returns payloads untouched.
    """

    def __init__(self, fh: BinaryIO) -> None:
        self._fh = fh
        self.offset = 0
        self.little_endian = False
        fh.seek(0, io.SEEK_END)
        self._size = fh.tell()
        fh.seek(0)

    def read_bytes(self, n: int) -> bytes:
        if n > self._size - self.offset:
            raise TruncatedInputError(
                f"not a valid gguf file: expected {n} bytes at offset "
                f"{self.offset}, file is {self._size} bytes"
            )
        data = self._fh.read(n)
        if len(data) < n:
            raise TruncatedInputError(
                f"not a valid gguf file: expected {n} bytes at offset "
                f"{self.offset}, got {len(data)}"
            )
        self.offset += n
        return data

    def read(self, n: int) -> bytes:
        data = self.read_bytes(n)
        return data[::-1] if self.little_endian else data

    def unpack(self, fmt: str) -> Any:
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))[0]

    def skip(self, n: int) -> None:
        if self.offset + n > self._size:
            raise TruncatedInputError(
                f"not a valid gguf file: cannot skip {n} bytes at offset "
                f"{self.offset}, file is {self._size} bytes"
            )
        self._fh.seek(n, io.SEEK_CUR)
        self.offset += n


def _value_type(tag: int) -> GGUFValueType:
    try:
        return GGUFValueType(tag)
    except ValueError:
        raise UnsupportedTypeError(tag) from None


def _read_length(reader: BinaryReader, version: int) -> int:
    return reader.unpack(">I" if version == 1 else ">Q")


def decode_value(reader: BinaryReader, tag: int, version: int) -> Any:
    """Decode one value of type *tag*; arrays are decoded recursively."""
    value_type = _value_type(tag)
    if value_type is GGUFValueType.BOOL:
        return reader.read(1)[0] != 0
    if value_type is GGUFValueType.STRING:
        length = _read_length(reader, version)
        return reader.read_bytes(length).decode("utf-8", errors="replace")
    if value_type is GGUFValueType.ARRAY:
        element_type = _value_type(reader.unpack(">I"))
        length = _read_length(reader, version)
        return [decode_value(reader, element_type, version) for _ in range(length)]
    return reader.unpack(_SCALAR_FORMATS[value_type])


def skip_value(reader: BinaryReader, tag: int, version: int) -> None:
    """Advance *reader* past one value of type *tag* without decoding it."""
    value_type = _value_type(tag)
    if value_type is GGUFValueType.STRING:
        reader.skip(_read_length(reader, version))
    elif value_type is GGUFValueType.ARRAY:
        element_type = _value_type(reader.unpack(">I"))
        length = _read_length(reader, version)
        width = _FIXED_WIDTHS.get(element_type)
        if width is not None:
            reader.skip(width * length)
        else:
            for _ in range(length):
                skip_value(reader, element_type, version)
    else:
        reader.skip(_FIXED_WIDTHS[value_type])


def insert_key_path(tree: dict[str, Any], key: str, value: Any) -> None:
    """
    Store *value* under the dotted *key* in *tree*.

    When a scalar and a longer key share a prefix, the scalar moves to a
    ``value`` entry of the branch so neither is lost.
    """
    *parents, leaf = key.split(".")
    node = tree
    for part in parents:
        if part not in node:
            node[part] = {}
        elif not isinstance(node[part], dict):
            node[part] = {"value": node[part]}
        node = node[part]
    if isinstance(node.get(leaf), dict):
        node[leaf]["value"] = value
    else:
        node[leaf] = value


def _read_version(reader: BinaryReader) -> int:
    raw = reader.read_bytes(4)
    version = int.from_bytes(raw, "little")
    if MIN_VERSION <= version <= MAX_VERSION:
        reader.little_endian = True
        return version
    version = int.from_bytes(raw, "big")
    if MIN_VERSION <= version <= MAX_VERSION:
        return version
    raise UnsupportedVersionError(
        f"not a valid gguf file: unsupported version {raw.hex()}"
    )


def read_gguf_metadata(fh: BinaryIO, quick: bool = False) -> dict[str, Any]:
    """
    Decode the GGUF header from an open binary handle.

    With *quick* set, the values of :data:`BULKY_KEYS` are skipped and
    recorded as empty lists.
    """
    reader = BinaryReader(fh)
    if reader.read_bytes(4) != GGUF_MAGIC:
        raise InvalidFormatError(
            "not a valid gguf file: not starting with GGUF magic number"
        )

    version = _read_version(reader)
    metadata: dict[str, Any] = {"version": version}
    metadata["tensor_count"] = _read_length(reader, version)
    metadata["kv_count"] = _read_length(reader, version)
    logger.debug(
        "GGUF v%d (%s-endian), %d tensors, %d keys",
        version,
        "little" if reader.little_endian else "big",
        metadata["tensor_count"],
        metadata["kv_count"],
    )

    for _ in range(metadata["kv_count"]):
        key = decode_value(reader, GGUFValueType.STRING, version)
        tag = reader.unpack(">I")
        if quick and key in BULKY_KEYS:
            skip_value(reader, tag, version)
            value: Any = []
        else:
            value = decode_value(reader, tag, version)
        insert_key_path(metadata, key, value)
    return metadata


def parse_gguf_metadata(path: str | Path, quick: bool = False) -> dict[str, Any]:
    """Decode the GGUF header of the file at *path*."""
    with open(path, "rb") as fh:
        return read_gguf_metadata(fh, quick=quick)
