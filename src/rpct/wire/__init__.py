from __future__ import annotations

from rpct.wire.codec import FramingError, Reader, WireType, decode, decode_values, encode, encode_values

__all__ = ["FramingError", "Reader", "WireType", "decode", "decode_values", "encode", "encode_values"]
