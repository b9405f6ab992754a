from __future__ import annotations

import struct
from enum import Enum
from typing import Any, Sequence


class FramingError(ValueError):
    pass


class WireType(str, Enum):
    INT32 = "int32"
    UINT32 = "uint32"
    INT64 = "int64"
    UINT64 = "uint64"
    DOUBLE = "double"
    STRING = "string"


# Native byte order, standard sizes: both peers must share an architecture.
_STRUCTS: dict[WireType, struct.Struct] = {
    WireType.INT32: struct.Struct("=i"),
    WireType.UINT32: struct.Struct("=I"),
    WireType.INT64: struct.Struct("=q"),
    WireType.UINT64: struct.Struct("=Q"),
    WireType.DOUBLE: struct.Struct("=d"),
}
_LENGTH = _STRUCTS[WireType.UINT32]


def encode(wire_type: WireType, value: Any) -> bytes:
    if wire_type is WireType.STRING:
        raw = value.encode("utf-8") if isinstance(value, str) else bytes(value)
        if len(raw) > 0xFFFFFFFF:
            msg = f"String of {len(raw)} bytes does not fit a uint32 length prefix"
            raise FramingError(msg)
        return _LENGTH.pack(len(raw)) + raw
    try:
        return _STRUCTS[wire_type].pack(value)
    except struct.error as exc:
        msg = f"Cannot encode {value!r} as {wire_type.value}: {exc}"
        raise FramingError(msg) from exc


def encode_values(types: Sequence[WireType], values: Sequence[Any]) -> bytes:
    if len(types) != len(values):
        msg = f"Expected {len(types)} values, got {len(values)}"
        raise FramingError(msg)
    return b"".join(encode(t, v) for t, v in zip(types, values))


class Reader:
    __slots__ = ("_data", "_offset")

    def __init__(self, data: bytes | bytearray | memoryview) -> None:
        self._data = memoryview(data)
        self._offset = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def read(self, wire_type: WireType) -> Any:
        if wire_type is WireType.STRING:
            size = self._unpack(_LENGTH)
            return bytes(self._take(size))
        return self._unpack(_STRUCTS[wire_type])

    def _unpack(self, fmt: struct.Struct) -> Any:
        return fmt.unpack(self._take(fmt.size))[0]

    def _take(self, size: int) -> memoryview:
        if size > self.remaining:
            msg = f"Truncated payload: need {size} bytes, {self.remaining} available"
            raise FramingError(msg)
        chunk = self._data[self._offset : self._offset + size]
        self._offset += size
        return chunk


def decode_values(types: Sequence[WireType], data: bytes | bytearray | memoryview) -> tuple[Any, ...]:
    reader = Reader(data)
    values = tuple(reader.read(t) for t in types)
    if reader.remaining:
        msg = f"{reader.remaining} trailing bytes after payload"
        raise FramingError(msg)
    return values


def decode(wire_type: WireType, data: bytes | bytearray | memoryview) -> Any:
    return decode_values((wire_type,), data)[0]
