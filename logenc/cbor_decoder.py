"""Decoding of binary (CBOR) log records into JSON text."""

from __future__ import annotations

import ipaddress
import math
import struct
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import BinaryIO, Optional, Union

from logenc.cbor_encoder import (
    ADDITIONAL_BOOL_FALSE,
    ADDITIONAL_BOOL_TRUE,
    ADDITIONAL_BREAK,
    ADDITIONAL_FLOAT16,
    ADDITIONAL_FLOAT32,
    ADDITIONAL_FLOAT64,
    ADDITIONAL_INFINITE_COUNT,
    ADDITIONAL_NULL,
    ADDITIONAL_TIMESTAMP,
    ADDITIONAL_UINT8,
    ADDITIONAL_UINT16,
    ADDITIONAL_UINT32,
    ADDITIONAL_UINT64,
    MAJOR_ARRAY,
    MAJOR_BYTE_STRING,
    MAJOR_MAP,
    MAJOR_NEGATIVE_INT,
    MAJOR_SIMPLE_AND_FLOAT,
    MAJOR_TAGS,
    MAJOR_UNSIGNED_INT,
    MAJOR_UTF8_STRING,
    MASK_OUT_ADDITIONAL_TYPE,
    MASK_OUT_MAJOR_TYPE,
    TAG_EMBEDDED_JSON,
    TAG_HEX_STRING,
    TAG_NETWORK_ADDR,
    TAG_NETWORK_PREFIX,
)

FLOAT32_SIZE = 4
FLOAT64_SIZE = 8

_BREAK = MAJOR_SIMPLE_AND_FLOAT | ADDITIONAL_BREAK
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_NANOS_PER_SECOND = 1_000_000_000

_ESCAPES = {
    0x22: b'\\"',
    0x5C: b"\\\\",
    0x08: b"\\b",
    0x0C: b"\\f",
    0x0A: b"\\n",
    0x0D: b"\\r",
    0x09: b"\\t",
}

Data = Union[bytes, bytearray, memoryview]


class CborDecodeError(ValueError):
    """Raised when CBOR input is malformed or uses an unsupported type.

    ``partial`` holds the JSON produced before the error, when known.
    """

    def __init__(self, message: str, partial: Optional[bytes] = None) -> None:
        super().__init__(message)
        self.partial = partial


class CborReader:
    """A cursor over a byte buffer with one byte of look-ahead."""

    def __init__(self, data: Data) -> None:
        self._data = bytes(data)
        self._pos = 0

    def read_byte(self) -> int:
        if self._pos >= len(self._data):
            raise CborDecodeError("Tried to Read 1 Byte.. But hit end of file")
        value = self._data[self._pos]
        self._pos += 1
        return value

    def read_n(self, n: int) -> bytes:
        if n < 0 or self._pos + n > len(self._data):
            self._pos = len(self._data)
            raise CborDecodeError(f"Tried to Read {n} Bytes.. But hit end of file")
        chunk = self._data[self._pos:self._pos + n]
        self._pos += n
        return chunk

    def peek(self) -> int:
        if self._pos >= len(self._data):
            raise CborDecodeError("EOF")
        return self._data[self._pos]

    def unread_byte(self) -> None:
        if self._pos == 0:
            raise CborDecodeError("cannot unread before the first byte")
        self._pos -= 1

    def has_more(self) -> bool:
        return self._pos < len(self._data)


def _split(head: int) -> tuple[int, int]:
    return head & MASK_OUT_ADDITIONAL_TYPE, head & MASK_OUT_MAJOR_TYPE


def _decode_argument(reader: CborReader, minor: int) -> int:
    if minor <= 23:
        return minor
    sizes = {
        ADDITIONAL_UINT8: 1,
        ADDITIONAL_UINT16: 2,
        ADDITIONAL_UINT32: 4,
        ADDITIONAL_UINT64: 8,
    }
    size = sizes.get(minor)
    if size is None:
        raise CborDecodeError(
            f"Invalid Additional Type: {minor} in decodeInteger (expected <28)"
        )
    return int.from_bytes(reader.read_n(size), "big")


def decode_integer(reader: CborReader) -> int:
    """Decode a positive or negative integer."""
    major, minor = _split(reader.read_byte())
    if major not in (MAJOR_UNSIGNED_INT, MAJOR_NEGATIVE_INT):
        raise CborDecodeError(
            f"Major type is: {major} in decodeInteger!! (expected 0 or 1)"
        )
    value = _decode_argument(reader, minor)
    return value if major == MAJOR_UNSIGNED_INT else -1 - value


def decode_float(reader: CborReader) -> tuple[float, int]:
    """Decode a float; return the value and its encoded width in bytes."""
    major, minor = _split(reader.read_byte())
    if major != MAJOR_SIMPLE_AND_FLOAT:
        raise CborDecodeError(f"Incorrect Major type is: {major} in decodeFloat")
    if minor == ADDITIONAL_FLOAT16:
        raise CborDecodeError("float16 is not suppported in decodeFloat")
    if minor == ADDITIONAL_FLOAT32:
        (value,) = struct.unpack(">f", reader.read_n(4))
        return value, FLOAT32_SIZE
    if minor == ADDITIONAL_FLOAT64:
        (value,) = struct.unpack(">d", reader.read_n(8))
        return value, FLOAT64_SIZE
    raise CborDecodeError(f"Invalid Additional Type: {minor} in decodeFloat")


def _rune_size(data: bytes, i: int) -> int:
    """Length of the valid UTF-8 sequence at ``i``, or 0 if it is invalid."""
    lead = data[i]
    if 0xC2 <= lead <= 0xDF:
        size = 2
    elif 0xE0 <= lead <= 0xEF:
        size = 3
    elif 0xF0 <= lead <= 0xF4:
        size = 4
    else:
        return 0
    chunk = data[i:i + size]
    if len(chunk) < size:
        return 0
    try:
        chunk.decode("utf-8")
    except UnicodeDecodeError:
        return 0
    return size


def _escape_json(data: bytes) -> bytes:
    out = bytearray()
    i = 0
    while i < len(data):
        b = data[i]
        if b >= 0x80:
            size = _rune_size(data, i)
            if size == 0:
                out += b"\\ufffd"
                i += 1
            else:
                out += data[i:i + size]
                i += size
            continue
        if 0x20 <= b <= 0x7E and b not in (0x22, 0x5C):
            out.append(b)
        else:
            out += _ESCAPES.get(b) or (b"\\u00%02x" % b)
        i += 1
    return bytes(out)


def decode_string(reader: CborReader, no_quotes: bool) -> bytes:
    """Decode a byte string, verbatim and optionally wrapped in quotes."""
    major, minor = _split(reader.read_byte())
    if major != MAJOR_BYTE_STRING:
        raise CborDecodeError(f"Major type is: {major} in decodeString")
    payload = reader.read_n(_decode_argument(reader, minor))
    return payload if no_quotes else b'"' + payload + b'"'


def decode_utf8_string(reader: CborReader) -> bytes:
    """Decode a text string as a quoted, JSON-escaped string."""
    major, minor = _split(reader.read_byte())
    if major != MAJOR_UTF8_STRING:
        raise CborDecodeError(f"Major type is: {major} in decodeUTF8String")
    payload = reader.read_n(_decode_argument(reader, minor))
    return b'"' + _escape_json(payload) + b'"'


def _at_break(reader: CborReader) -> bool:
    if reader.peek() == _BREAK:
        reader.read_byte()
        return True
    return False


def _emit_array(reader: CborReader, out: bytearray) -> None:
    out += b"["
    major, minor = _split(reader.read_byte())
    if major != MAJOR_ARRAY:
        raise CborDecodeError(f"Major type is: {major} in array2Json")
    unspecified = minor == ADDITIONAL_INFINITE_COUNT
    count = 0 if unspecified else _decode_argument(reader, minor)
    i = 0
    while unspecified or i < count:
        if unspecified and _at_break(reader):
            break
        _emit_one(reader, out)
        if unspecified:
            if _at_break(reader):
                break
            out += b","
        elif i + 1 < count:
            out += b","
        i += 1
    out += b"]"


def _emit_map(reader: CborReader, out: bytearray) -> None:
    major, minor = _split(reader.read_byte())
    if major != MAJOR_MAP:
        raise CborDecodeError(f"Major type is: {major} in map2Json")
    unspecified = minor == ADDITIONAL_INFINITE_COUNT
    count = 0 if unspecified else _decode_argument(reader, minor)
    out += b"{"
    i = 0
    while unspecified or i < count:
        if unspecified and _at_break(reader):
            break
        _emit_one(reader, out)
        if i % 2 == 0:
            out += b":"
        elif unspecified:
            if _at_break(reader):
                break
            out += b","
        elif i + 1 < count:
            out += b","
        i += 1
    out += b"}"


def array_to_json(reader: CborReader) -> bytes:
    """Decode an array into JSON."""
    out = bytearray()
    _emit_array(reader, out)
    return bytes(out)


def map_to_json(reader: CborReader) -> bytes:
    """Decode a map into a JSON object."""
    out = bytearray()
    _emit_map(reader, out)
    return bytes(out)


def _ip_to_4(octets: bytes) -> Optional[bytes]:
    if len(octets) == 4:
        return octets
    if len(octets) == 16 and octets[:12] == b"\x00" * 10 + b"\xff\xff":
        return octets[12:]
    return None


def _ip_text(octets: bytes) -> str:
    v4 = _ip_to_4(octets)
    if v4 is not None:
        return str(ipaddress.IPv4Address(v4))
    if len(octets) == 16:
        return ipaddress.IPv6Address(octets).compressed
    if not octets:
        return "<nil>"
    return "?" + octets.hex()


def _prefix_text(octets: bytes, length: int) -> str:
    bits = 32 if len(octets) == 4 else 128
    if not 0 <= length <= bits:
        return "<nil>"
    v4 = _ip_to_4(octets)
    if v4 is not None:
        if bits == 128:
            length = max(0, length - 96)
        return f"{ipaddress.IPv4Address(v4)}/{length}"
    if len(octets) != 16 or bits != 128:
        return "<nil>"
    return f"{ipaddress.IPv6Address(octets).compressed}/{length}"


def _format_time(total_nanos: int, with_fraction: bool) -> bytes:
    secs, nanos = divmod(total_nanos, _NANOS_PER_SECOND)
    try:
        dt = _EPOCH + timedelta(seconds=secs)
    except OverflowError as err:
        raise CborDecodeError(f"timestamp out of range: {secs}") from err
    text = (
        f"{dt.year:04d}-{dt.month:02d}-{dt.day:02d}"
        f"T{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d}"
    )
    if with_fraction and nanos:
        text += "." + f"{nanos:09d}".rstrip("0")
    return b'"' + (text + "Z").encode("ascii") + b'"'


def _decode_timestamp(reader: CborReader) -> bytes:
    head = reader.read_byte()
    reader.unread_byte()
    major = head & MASK_OUT_ADDITIONAL_TYPE
    if major in (MAJOR_UNSIGNED_INT, MAJOR_NEGATIVE_INT):
        return _format_time(decode_integer(reader) * _NANOS_PER_SECOND, False)
    if major == MAJOR_SIMPLE_AND_FLOAT:
        value, _ = decode_float(reader)
        if not math.isfinite(value):
            raise CborDecodeError(f"TS float is not finite: {value}")
        secs = int(value)
        nanos = int((value - secs) * 1e9)
        return _format_time(secs * _NANOS_PER_SECOND + nanos, True)
    raise CborDecodeError(f"TS format is neigther int nor float: {major}")


def decode_tag_data(reader: CborReader) -> bytes:
    """Decode a tagged value: timestamps, embedded JSON, addresses and hex."""
    major, minor = _split(reader.read_byte())
    if major != MAJOR_TAGS:
        raise CborDecodeError(f"Major type is: {major} in decodeTagData")
    if minor == ADDITIONAL_TIMESTAMP:
        return _decode_timestamp(reader)
    if minor != ADDITIONAL_UINT16:
        raise CborDecodeError(f"Unsupported Additional Type: {minor} in decodeTagData")

    tag = _decode_argument(reader, minor)
    if tag == TAG_EMBEDDED_JSON:
        data_major = reader.read_byte() & MASK_OUT_ADDITIONAL_TYPE
        if data_major != MAJOR_BYTE_STRING:
            raise CborDecodeError(
                f"Unsupported embedded Type: {data_major} in decodeEmbeddedJSON"
            )
        reader.unread_byte()
        return decode_string(reader, True)

    if tag == TAG_NETWORK_ADDR:
        octets = decode_string(reader, True)
        if len(octets) == 6:
            text = ":".join(f"{b:02x}" for b in octets)
        elif len(octets) in (4, 16):
            text = _ip_text(octets)
        else:
            raise CborDecodeError(
                f"Unexpected Network Address length: {len(octets)} (expected 4,6,16)"
            )
        return b'"' + text.encode("ascii") + b'"'

    if tag == TAG_NETWORK_PREFIX:
        if reader.read_byte() != MAJOR_MAP | 0x1:
            raise CborDecodeError("IP Prefix is NOT of MAP of 1 elements as expected")
        octets = decode_string(reader, True)
        length = decode_integer(reader)
        return b'"' + _prefix_text(octets, length).encode("ascii") + b'"'

    if tag == TAG_HEX_STRING:
        octets = decode_string(reader, True)
        return b'"' + octets.hex().encode("ascii") + b'"'

    raise CborDecodeError(f"Unsupported Additional Tag Type: {tag} in decodeTagData")


def _shortest_float32(value: float) -> str:
    for digits in range(0, 10):
        text = format(value, f".{digits}e")
        if struct.unpack(">f", struct.pack(">f", float(text)))[0] == value:
            return text
    return repr(value)


def _fixed_notation(text: str) -> bytes:
    return format(Decimal(text).normalize(), "f").encode("ascii")


def decode_simple_float(reader: CborReader) -> bytes:
    """Decode true, false, null or a float into its JSON text."""
    major, minor = _split(reader.read_byte())
    if major != MAJOR_SIMPLE_AND_FLOAT:
        raise CborDecodeError(f"Major type is: {major} in decodeSimpleFloat")
    if minor == ADDITIONAL_BOOL_TRUE:
        return b"true"
    if minor == ADDITIONAL_BOOL_FALSE:
        return b"false"
    if minor == ADDITIONAL_NULL:
        return b"null"
    if minor in (ADDITIONAL_FLOAT16, ADDITIONAL_FLOAT32, ADDITIONAL_FLOAT64):
        reader.unread_byte()
        value, width = decode_float(reader)
        if math.isnan(value):
            return b'"NaN"'
        if math.isinf(value):
            return b'"+Inf"' if value > 0 else b'"-Inf"'
        if width == FLOAT32_SIZE:
            return _fixed_notation(_shortest_float32(value))
        return _fixed_notation(repr(value))
    raise CborDecodeError(f"Invalid Additional Type: {minor} in decodeSimpleFloat")


def _emit_one(reader: CborReader, out: bytearray) -> None:
    major = reader.peek() & MASK_OUT_ADDITIONAL_TYPE
    if major in (MAJOR_UNSIGNED_INT, MAJOR_NEGATIVE_INT):
        out += str(decode_integer(reader)).encode("ascii")
    elif major == MAJOR_BYTE_STRING:
        out += decode_string(reader, False)
    elif major == MAJOR_UTF8_STRING:
        out += decode_utf8_string(reader)
    elif major == MAJOR_ARRAY:
        _emit_array(reader, out)
    elif major == MAJOR_MAP:
        _emit_map(reader, out)
    elif major == MAJOR_TAGS:
        out += decode_tag_data(reader)
    else:
        out += decode_simple_float(reader)


def decode_one_object(reader: CborReader) -> bytes:
    """Decode the next object of any type into JSON."""
    out = bytearray()
    _emit_one(reader, out)
    return bytes(out)


def cbor_to_json_many(data: Union[Data, BinaryIO]) -> bytes:
    """Decode every object in ``data``, one JSON line per object.

    On malformed input a CborDecodeError is raised whose ``partial``
    attribute holds the output produced so far.
    """
    if hasattr(data, "read"):
        data = data.read()
    reader = CborReader(data)
    out = bytearray()
    try:
        while reader.has_more():
            _emit_one(reader, out)
            out += b"\n"
    except CborDecodeError as err:
        err.partial = bytes(out)
        raise
    return bytes(out)


def is_binary(data: Data) -> bool:
    """True if the log record looks binary rather than JSON text."""
    return len(data) > 0 and data[0] > 0x7F


def _decode_all_lenient(data: Data) -> bytes:
    try:
        return cbor_to_json_many(data)
    except CborDecodeError as err:
        return err.partial or b""


def decode_if_binary_to_string(data: Data) -> str:
    """Return the record as text, decoding every object if it is binary."""
    raw = _decode_all_lenient(data) if is_binary(data) else bytes(data)
    return raw.decode("utf-8", errors="replace")


def decode_object_to_str(data: Data) -> str:
    """Return the record as text, decoding a single object if it is binary."""
    raw = decode_one_object(CborReader(data)) if is_binary(data) else bytes(data)
    return raw.decode("utf-8", errors="replace")


def decode_if_binary_to_bytes(data: Data) -> bytes:
    """Return the record as bytes, decoding every object if it is binary."""
    if is_binary(data):
        return _decode_all_lenient(data)
    return bytes(data)