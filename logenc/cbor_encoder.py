"""Binary (CBOR) encoding of log values, appended to an existing buffer."""

from __future__ import annotations

import ipaddress
import json
import math
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional, Sequence, Union

# Major types, already shifted into the top three bits.
MAJOR_OFFSET = 5
MAJOR_UNSIGNED_INT = 0 << MAJOR_OFFSET
MAJOR_NEGATIVE_INT = 1 << MAJOR_OFFSET
MAJOR_BYTE_STRING = 2 << MAJOR_OFFSET
MAJOR_UTF8_STRING = 3 << MAJOR_OFFSET
MAJOR_ARRAY = 4 << MAJOR_OFFSET
MAJOR_MAP = 5 << MAJOR_OFFSET
MAJOR_TAGS = 6 << MAJOR_OFFSET
MAJOR_SIMPLE_AND_FLOAT = 7 << MAJOR_OFFSET

MASK_OUT_ADDITIONAL_TYPE = 7 << MAJOR_OFFSET
MASK_OUT_MAJOR_TYPE = 31

ADDITIONAL_MAX = 23

ADDITIONAL_BOOL_FALSE = 20
ADDITIONAL_BOOL_TRUE = 21
ADDITIONAL_NULL = 22

ADDITIONAL_UINT8 = 24
ADDITIONAL_UINT16 = 25
ADDITIONAL_UINT32 = 26
ADDITIONAL_UINT64 = 27

ADDITIONAL_FLOAT16 = 25
ADDITIONAL_FLOAT32 = 26
ADDITIONAL_FLOAT64 = 27
ADDITIONAL_BREAK = 31

ADDITIONAL_TIMESTAMP = 1

TAG_NETWORK_ADDR = 260
TAG_NETWORK_PREFIX = 261
TAG_EMBEDDED_JSON = 262
TAG_HEX_STRING = 263

ADDITIONAL_INFINITE_COUNT = 31

FLOAT32_NAN = b"\xfa\x7f\xc0\x00\x00"
FLOAT32_POS_INFINITY = b"\xfa\x7f\x80\x00\x00"
FLOAT32_NEG_INFINITY = b"\xfa\xff\x80\x00\x00"
FLOAT64_NAN = b"\xfb\x7f\xf8\x00\x00\x00\x00\x00\x00"
FLOAT64_POS_INFINITY = b"\xfb\x7f\xf0\x00\x00\x00\x00\x00\x00"
FLOAT64_NEG_INFINITY = b"\xfb\xff\xf0\x00\x00\x00\x00\x00\x00"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MICROSECOND = timedelta(microseconds=1)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address, str, bytes]
IPPrefix = Union[
    ipaddress.IPv4Network,
    ipaddress.IPv6Network,
    ipaddress.IPv4Interface,
    ipaddress.IPv6Interface,
    str,
]


def append_type_prefix(dst: bytes, major: int, number: int) -> bytes:
    """Append a major type with an explicit 1, 2, 4 or 8 byte argument."""
    if number < 0:
        raise ValueError(f"CBOR argument must not be negative: {number}")
    if number < 1 << 8:
        size, minor = 1, ADDITIONAL_UINT8
    elif number < 1 << 16:
        size, minor = 2, ADDITIONAL_UINT16
    elif number < 1 << 32:
        size, minor = 4, ADDITIONAL_UINT32
    elif number < 1 << 64:
        size, minor = 8, ADDITIONAL_UINT64
    else:
        raise OverflowError(f"CBOR argument does not fit in 64 bits: {number}")
    return bytes(dst) + bytes([major | minor]) + number.to_bytes(size, "big")


def _head(dst: bytes, major: int, number: int) -> bytes:
    if 0 <= number <= ADDITIONAL_MAX:
        return bytes(dst) + bytes([major | number])
    return append_type_prefix(dst, major, number)


def _tag16(dst: bytes, tag: int) -> bytes:
    return bytes(dst) + bytes([MAJOR_TAGS | ADDITIONAL_UINT16]) + tag.to_bytes(2, "big")


def append_embedded_json(dst: bytes, data: bytes) -> bytes:
    """Append a tag marking embedded JSON followed by the JSON as a byte string."""
    dst = _tag16(dst, TAG_EMBEDDED_JSON)
    return _head(dst, MAJOR_BYTE_STRING, len(data)) + bytes(data)


def _default_marshal(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _ip_bytes(ip: IPAddress) -> bytes:
    if isinstance(ip, (bytes, bytearray)):
        return bytes(ip)
    if isinstance(ip, str):
        ip = ipaddress.ip_address(ip)
    return ip.packed


def _mac_bytes(mac: Union[bytes, bytearray, str]) -> bytes:
    if isinstance(mac, (bytes, bytearray)):
        return bytes(mac)
    separator = "-" if "-" in mac else ":"
    return bytes(int(part, 16) for part in mac.split(separator))


def _unix_parts(t: datetime) -> tuple[int, int]:
    """Whole seconds since the epoch (floored) and the remaining microseconds."""
    if t.tzinfo is None:
        t = t.replace(tzinfo=timezone.utc)
    delta = t - _EPOCH
    return delta.days * 86400 + delta.seconds, delta.microseconds


def _microseconds(d: timedelta) -> int:
    return d // _ONE_MICROSECOND


@dataclass(frozen=True)
class CborEncoder:
    """Appends CBOR encoded log values to a buffer and returns the result."""

    marshal: Callable[[Any], bytes] = field(default=_default_marshal)

    # -- structure -------------------------------------------------------

    def append_key(self, dst: bytes, key: str) -> bytes:
        if len(dst) < 1:
            dst = self.append_begin_marker(dst)
        return self.append_string(dst, key)

    def append_begin_marker(self, dst: bytes) -> bytes:
        return bytes(dst) + bytes([MAJOR_MAP | ADDITIONAL_INFINITE_COUNT])

    def append_end_marker(self, dst: bytes) -> bytes:
        return bytes(dst) + bytes([MAJOR_SIMPLE_AND_FLOAT | ADDITIONAL_BREAK])

    def append_object_data(self, dst: bytes, obj: bytes) -> bytes:
        # The object carries its own begin marker, which must not be copied.
        return bytes(dst) + bytes(obj[1:])

    def append_array_start(self, dst: bytes) -> bytes:
        return bytes(dst) + bytes([MAJOR_ARRAY | ADDITIONAL_INFINITE_COUNT])

    def append_array_end(self, dst: bytes) -> bytes:
        return bytes(dst) + bytes([MAJOR_SIMPLE_AND_FLOAT | ADDITIONAL_BREAK])

    def append_array_delim(self, dst: bytes) -> bytes:
        return bytes(dst)

    def append_line_break(self, dst: bytes) -> bytes:
        return bytes(dst)

    def _append_array(self, dst: bytes, vals: Sequence[Any], append_one) -> bytes:
        if not vals:
            return self.append_array_end(self.append_array_start(dst))
        dst = _head(dst, MAJOR_ARRAY, len(vals))
        for val in vals:
            dst = append_one(dst, val)
        return dst

    # -- scalars ---------------------------------------------------------

    def append_nil(self, dst: bytes) -> bytes:
        return bytes(dst) + bytes([MAJOR_SIMPLE_AND_FLOAT | ADDITIONAL_NULL])

    def append_bool(self, dst: bytes, val: bool) -> bytes:
        minor = ADDITIONAL_BOOL_TRUE if val else ADDITIONAL_BOOL_FALSE
        return bytes(dst) + bytes([MAJOR_SIMPLE_AND_FLOAT | minor])

    def append_bools(self, dst: bytes, vals: Sequence[bool]) -> bytes:
        return self._append_array(dst, list(vals), self.append_bool)

    def append_int(self, dst: bytes, val: int) -> bytes:
        if val < 0:
            return _head(dst, MAJOR_NEGATIVE_INT, -val - 1)
        return _head(dst, MAJOR_UNSIGNED_INT, val)

    def append_ints(self, dst: bytes, vals: Sequence[int]) -> bytes:
        return self._append_array(dst, list(vals), self.append_int)

    def append_uint(self, dst: bytes, val: int) -> bytes:
        if val < 0:
            raise ValueError(f"unsigned value must not be negative: {val}")
        return _head(dst, MAJOR_UNSIGNED_INT, val)

    def append_uints(self, dst: bytes, vals: Sequence[int]) -> bytes:
        return self._append_array(dst, list(vals), self.append_uint)

    def append_float32(self, dst: bytes, val: float) -> bytes:
        if math.isnan(val):
            return bytes(dst) + FLOAT32_NAN
        try:
            packed = struct.pack(">f", val)
        except OverflowError:
            packed = None
        if packed is None or math.isinf(val):
            return bytes(dst) + (FLOAT32_POS_INFINITY if val > 0 else FLOAT32_NEG_INFINITY)
        return bytes(dst) + bytes([MAJOR_SIMPLE_AND_FLOAT | ADDITIONAL_FLOAT32]) + packed

    def append_floats32(self, dst: bytes, vals: Sequence[float]) -> bytes:
        return self._append_array(dst, list(vals), self.append_float32)

    def append_float64(self, dst: bytes, val: float) -> bytes:
        if math.isnan(val):
            return bytes(dst) + FLOAT64_NAN
        if math.isinf(val):
            return bytes(dst) + (FLOAT64_POS_INFINITY if val > 0 else FLOAT64_NEG_INFINITY)
        return (
            bytes(dst)
            + bytes([MAJOR_SIMPLE_AND_FLOAT | ADDITIONAL_FLOAT64])
            + struct.pack(">d", val)
        )

    def append_floats64(self, dst: bytes, vals: Sequence[float]) -> bytes:
        return self._append_array(dst, list(vals), self.append_float64)

    # -- strings and bytes -----------------------------------------------

    def append_string(self, dst: bytes, s: str) -> bytes:
        data = s.encode("utf-8")
        return _head(dst, MAJOR_UTF8_STRING, len(data)) + data

    def append_strings(self, dst: bytes, vals: Sequence[str]) -> bytes:
        vals = list(vals)
        dst = _head(dst, MAJOR_ARRAY, len(vals))
        for val in vals:
            dst = self.append_string(dst, val)
        return dst

    def append_stringer(self, dst: bytes, val: Optional[object]) -> bytes:
        if val is None:
            return self.append_nil(dst)
        return self.append_string(dst, str(val))

    def append_stringers(self, dst: bytes, vals: Iterable[Optional[object]]) -> bytes:
        dst = self.append_array_start(dst)
        for val in vals:
            dst = self.append_stringer(dst, val)
        return self.append_array_end(dst)

    def append_bytes(self, dst: bytes, data: bytes) -> bytes:
        return _head(dst, MAJOR_BYTE_STRING, len(data)) + bytes(data)

    def append_interface(self, dst: bytes, obj: Any) -> bytes:
        try:
            marshaled = self.marshal(obj)
        except (TypeError, ValueError) as err:
            return self.append_string(dst, f"marshaling error: {err}")
        return append_embedded_json(dst, marshaled)

    # -- network and hex -------------------------------------------------

    def append_ip_addr(self, dst: bytes, ip: IPAddress) -> bytes:
        return self.append_bytes(_tag16(dst, TAG_NETWORK_ADDR), _ip_bytes(ip))

    def append_ip_prefix(self, dst: bytes, prefix: IPPrefix) -> bytes:
        if isinstance(prefix, str):
            prefix = ipaddress.ip_interface(prefix)
        if isinstance(prefix, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
            address, length = prefix.ip.packed, prefix.network.prefixlen
        else:
            address, length = prefix.network_address.packed, prefix.prefixlen
        dst = _tag16(dst, TAG_NETWORK_PREFIX)
        # A prefix is a map of one pair: the address and the mask length.
        dst = bytes(dst) + bytes([MAJOR_MAP | 1])
        dst = self.append_bytes(dst, address)
        return self.append_uint(dst, length & 0xFF)

    def append_mac_addr(self, dst: bytes, mac: Union[bytes, str]) -> bytes:
        return self.append_bytes(_tag16(dst, TAG_NETWORK_ADDR), _mac_bytes(mac))

    def append_hex(self, dst: bytes, data: bytes) -> bytes:
        return self.append_bytes(_tag16(dst, TAG_HEX_STRING), data)

    # -- time ------------------------------------------------------------

    def append_time(self, dst: bytes, t: datetime, fmt: str = "") -> bytes:
        """Append a timestamp tag; the format argument is ignored."""
        secs, micros = _unix_parts(t)
        dst = bytes(dst) + bytes([MAJOR_TAGS | ADDITIONAL_TIMESTAMP])
        if micros == 0:
            if secs < 0:
                return append_type_prefix(dst, MAJOR_NEGATIVE_INT, -secs - 1)
            return append_type_prefix(dst, MAJOR_UNSIGNED_INT, secs)
        nanos = micros * 1000
        return self.append_float64(dst, float(secs) * 1.0 + float(nanos) * 1e-9)

    def append_times(self, dst: bytes, vals: Sequence[datetime], fmt: str = "") -> bytes:
        return self._append_array(
            dst, list(vals), lambda d, t: self.append_time(d, t, fmt)
        )

    def append_duration(
        self, dst: bytes, d: timedelta, unit: timedelta, use_int: bool
    ) -> bytes:
        d_us, unit_us = _microseconds(d), _microseconds(unit)
        if unit_us == 0:
            raise ZeroDivisionError("duration unit must not be zero")
        if use_int:
            quotient = abs(d_us) // abs(unit_us)
            if (d_us < 0) != (unit_us < 0):
                quotient = -quotient
            return self.append_int(dst, quotient)
        return self.append_float64(dst, d_us / unit_us)

    def append_durations(
        self, dst: bytes, vals: Sequence[timedelta], unit: timedelta, use_int: bool
    ) -> bytes:
        return self._append_array(
            dst, list(vals), lambda b, d: self.append_duration(b, d, unit, use_int)
        )