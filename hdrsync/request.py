"""Header exchange request and its protobuf wire encoding."""

from __future__ import annotations

from dataclasses import dataclass

_MAX_UINT64 = (1 << 64) - 1

_FIELD_ORIGIN = 1
_FIELD_AMOUNT = 2

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_BYTES = 2
_WIRE_FIXED32 = 5


def _encode_varint(value: int) -> bytes:
    out = bytearray()
    while value > 0x7F:
        out.append((value & 0x7F) | 0x80)
        value >>= 7
    out.append(value)
    return bytes(out)


def _decode_varint(data: bytes, pos: int) -> tuple[int, int]:
    result = 0
    for shift in range(0, 70, 7):
        if pos >= len(data):
            raise ValueError("request: unexpected end of data")
        byte = data[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _MAX_UINT64, pos
    raise ValueError("request: integer overflow")


def _skip(data: bytes, pos: int, wire: int) -> int:
    if wire == _WIRE_VARINT:
        _, pos = _decode_varint(data, pos)
        return pos
    if wire == _WIRE_FIXED64:
        end = pos + 8
    elif wire == _WIRE_FIXED32:
        end = pos + 4
    elif wire == _WIRE_BYTES:
        length, pos = _decode_varint(data, pos)
        end = pos + length
    else:
        raise ValueError(f"request: illegal wire type {wire}")
    if end > len(data):
        raise ValueError("request: unexpected end of data")
    return end


@dataclass(frozen=True)
class ExtendedHeaderRequest:
    """Request for ``amount`` headers in ascending order from height ``origin``."""

    origin: int = 0
    amount: int = 0

    def __post_init__(self) -> None:
        for name in ("origin", "amount"):
            value = getattr(self, name)
            if not 0 <= value <= _MAX_UINT64:
                raise ValueError(f"request: {name} out of unsigned 64-bit range: {value}")

    def marshal_binary(self) -> bytes:
        """Serialize the request to protobuf bytes."""
        return marshal_extended_header_request(self)

    @classmethod
    def unmarshal_binary(cls, data: bytes) -> ExtendedHeaderRequest:
        """Parse a request from protobuf bytes."""
        return unmarshal_extended_header_request(data)


def marshal_extended_header_request(request: ExtendedHeaderRequest) -> bytes:
    """Serialize a request to protobuf bytes, omitting zero fields."""
    out = bytearray()
    for number, value in ((_FIELD_ORIGIN, request.origin), (_FIELD_AMOUNT, request.amount)):
        if value:
            out += _encode_varint(number << 3 | _WIRE_VARINT)
            out += _encode_varint(value)
    return bytes(out)


def unmarshal_extended_header_request(data: bytes) -> ExtendedHeaderRequest:
    """Parse protobuf bytes into a request; unknown fields are skipped."""
    data = bytes(data)
    fields = {_FIELD_ORIGIN: 0, _FIELD_AMOUNT: 0}
    pos = 0
    while pos < len(data):
        key, pos = _decode_varint(data, pos)
        number, wire = key >> 3, key & 0x7
        if number == 0:
            raise ValueError("request: illegal tag 0")
        if number in fields:
            if wire != _WIRE_VARINT:
                raise ValueError(f"request: wrong wire type {wire} for field {number}")
            fields[number], pos = _decode_varint(data, pos)
        else:
            pos = _skip(data, pos, wire)
    return ExtendedHeaderRequest(origin=fields[_FIELD_ORIGIN], amount=fields[_FIELD_AMOUNT])