"""JSON encoding of log values, appended to an existing buffer."""

from __future__ import annotations

import ipaddress
import json
import math
import re
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Sequence, Union

TIME_FORMAT_UNIX = ""
TIME_FORMAT_UNIX_MS = "UNIXMS"
TIME_FORMAT_UNIX_MICRO = "UNIXMICRO"
TIME_FORMAT_UNIX_NANO = "UNIXNANO"
TIME_FORMAT_RFC3339 = "RFC3339"
TIME_FORMAT_RFC3339_NANO = "RFC3339NANO"

_UNIX_DIVISORS = {
    TIME_FORMAT_UNIX_MS: 1_000_000,
    TIME_FORMAT_UNIX_MICRO: 1_000,
    TIME_FORMAT_UNIX_NANO: 1,
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MICROSECOND = timedelta(microseconds=1)
_NANOS_PER_SECOND = 1_000_000_000

# Any byte outside printable ASCII, or a quote or backslash, needs attention.
_NEEDS_ESCAPE = re.compile(rb"[^\x20\x21\x23-\x5b\x5d-\x7e]")

_ESCAPES = {
    0x22: b'\\"',
    0x5C: b"\\\\",
    0x08: b"\\b",
    0x0C: b"\\f",
    0x0A: b"\\n",
    0x0D: b"\\r",
    0x09: b"\\t",
}

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address, str, bytes]
IPPrefix = Union[
    ipaddress.IPv4Network,
    ipaddress.IPv6Network,
    ipaddress.IPv4Interface,
    ipaddress.IPv6Interface,
    str,
]


def _default_marshal(obj: Any) -> bytes:
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


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


def _escape(data: bytes) -> bytes:
    """JSON-escape raw bytes; invalid UTF-8 becomes \\ufffd."""
    if not _NEEDS_ESCAPE.search(data):
        return data
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


def _quote(data: bytes) -> bytes:
    return b'"' + _escape(data) + b'"'


def _fixed(text: str) -> bytes:
    return format(Decimal(text).normalize(), "f").encode("ascii")


def _to_float32(val: float) -> float:
    try:
        return struct.unpack(">f", struct.pack(">f", val))[0]
    except OverflowError:
        return math.copysign(math.inf, val)


def _shortest_float32(val: float) -> str:
    for digits in range(9):
        text = format(val, f".{digits}e")
        if _to_float32(float(text)) == val:
            return text
    return repr(val)


def _append_float(dst: bytes, val: float, single: bool) -> bytes:
    # JSON has no NaN or Infinity; they are stored as strings instead.
    if math.isnan(val):
        return bytes(dst) + b'"NaN"'
    if single:
        val = _to_float32(val)
    if math.isinf(val):
        return bytes(dst) + (b'"+Inf"' if val > 0 else b'"-Inf"')
    text = _shortest_float32(val) if single else repr(val)
    return bytes(dst) + _fixed(text)


def _ipv6_text(ip: ipaddress.IPv6Address) -> str:
    mapped = ip.ipv4_mapped
    if mapped is not None:
        return str(mapped)
    return ip.compressed


def _ip_text(ip: IPAddress) -> str:
    if isinstance(ip, (bytes, bytearray)):
        octets = bytes(ip)
        if len(octets) == 4:
            return str(ipaddress.IPv4Address(octets))
        if len(octets) == 16:
            return _ipv6_text(ipaddress.IPv6Address(octets))
        if not octets:
            return "<nil>"
        return "?" + octets.hex()
    if isinstance(ip, str):
        ip = ipaddress.ip_address(ip)
    if isinstance(ip, ipaddress.IPv6Address):
        return _ipv6_text(ip)
    return str(ip)


def _prefix_text(prefix: IPPrefix) -> str:
    if isinstance(prefix, str):
        prefix = ipaddress.ip_interface(prefix)
    if isinstance(prefix, (ipaddress.IPv4Interface, ipaddress.IPv6Interface)):
        address, length = prefix.ip, prefix.network.prefixlen
    else:
        address, length = prefix.network_address, prefix.prefixlen
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        if length < 96:
            return "<nil>"
        return f"{address.ipv4_mapped}/{length - 96}"
    return f"{_ip_text(address)}/{length}"


def _mac_text(mac: Union[bytes, bytearray, str]) -> str:
    if isinstance(mac, str):
        separator = "-" if "-" in mac else ":"
        parts = mac.split(separator)
        if any(len(part) != 2 for part in parts):
            raise ValueError(f"invalid MAC address: {mac!r}")
        mac = bytes(int(part, 16) for part in parts)
    return ":".join(f"{b:02x}" for b in mac)


def _as_utc(t: datetime) -> datetime:
    if t.tzinfo is None:
        return t.replace(tzinfo=timezone.utc)
    return t


def _unix_nanos(t: datetime) -> int:
    delta = _as_utc(t) - _EPOCH
    seconds = delta.days * 86400 + delta.seconds
    return seconds * _NANOS_PER_SECOND + delta.microseconds * 1000


def _trunc_div(n: int, d: int) -> int:
    quotient = abs(n) // abs(d)
    return -quotient if (n < 0) != (d < 0) else quotient


def _rfc3339(t: datetime, with_fraction: bool) -> str:
    t = _as_utc(t)
    if with_fraction:
        text = t.isoformat(timespec="microseconds")
        head, _, rest = text.partition(".")
        fraction, offset = rest[:6].rstrip("0"), rest[6:]
        text = head + ("." + fraction if fraction else "") + offset
    else:
        text = t.isoformat(timespec="seconds")
    if text.endswith("+00:00"):
        text = text[:-6] + "Z"
    return text


@dataclass(frozen=True)
class JsonEncoder:
    """Appends JSON encoded log values to a buffer and returns the result."""

    marshal: Callable[[Any], bytes] = field(default=_default_marshal)

    # -- structure -------------------------------------------------------

    def append_key(self, dst: bytes, key: str) -> bytes:
        dst = bytes(dst)
        if dst[-1] != ord("{"):
            dst += b","
        return self.append_string(dst, key) + b":"

    def append_begin_marker(self, dst: bytes) -> bytes:
        return bytes(dst) + b"{"

    def append_end_marker(self, dst: bytes) -> bytes:
        return bytes(dst) + b"}"

    def append_object_data(self, dst: bytes, obj: bytes) -> bytes:
        dst, obj = bytes(dst), bytes(obj)
        if obj[:1] == b"{":
            obj = obj[1:]
        if len(dst) > 1:
            dst += b","
        return dst + obj

    def append_array_start(self, dst: bytes) -> bytes:
        return bytes(dst) + b"["

    def append_array_end(self, dst: bytes) -> bytes:
        return bytes(dst) + b"]"

    def append_array_delim(self, dst: bytes) -> bytes:
        dst = bytes(dst)
        return dst + b"," if dst else dst

    def append_line_break(self, dst: bytes) -> bytes:
        return bytes(dst) + b"\n"

    @staticmethod
    def _append_list(dst: bytes, vals: Iterable[Any], append_one) -> bytes:
        items = b",".join(append_one(b"", val) for val in vals)
        return bytes(dst) + b"[" + items + b"]"

    # -- scalars ---------------------------------------------------------

    def append_nil(self, dst: bytes) -> bytes:
        return bytes(dst) + b"null"

    def append_bool(self, dst: bytes, val: bool) -> bytes:
        return bytes(dst) + (b"true" if val else b"false")

    def append_bools(self, dst: bytes, vals: Sequence[bool]) -> bytes:
        return self._append_list(dst, vals, self.append_bool)

    def append_int(self, dst: bytes, val: int) -> bytes:
        return bytes(dst) + str(int(val)).encode("ascii")

    def append_ints(self, dst: bytes, vals: Sequence[int]) -> bytes:
        return self._append_list(dst, vals, self.append_int)

    def append_uint(self, dst: bytes, val: int) -> bytes:
        if val < 0:
            raise ValueError(f"unsigned value must not be negative: {val}")
        return bytes(dst) + str(int(val)).encode("ascii")

    def append_uints(self, dst: bytes, vals: Sequence[int]) -> bytes:
        return self._append_list(dst, vals, self.append_uint)

    def append_float32(self, dst: bytes, val: float) -> bytes:
        return _append_float(dst, val, single=True)

    def append_floats32(self, dst: bytes, vals: Sequence[float]) -> bytes:
        return self._append_list(dst, vals, self.append_float32)

    def append_float64(self, dst: bytes, val: float) -> bytes:
        return _append_float(dst, val, single=False)

    def append_floats64(self, dst: bytes, vals: Sequence[float]) -> bytes:
        return self._append_list(dst, vals, self.append_float64)

    # -- strings and bytes -----------------------------------------------

    def append_string(self, dst: bytes, s: str) -> bytes:
        return bytes(dst) + _quote(s.encode("utf-8", errors="surrogatepass"))

    def append_strings(self, dst: bytes, vals: Sequence[str]) -> bytes:
        return self._append_list(dst, vals, self.append_string)

    def append_stringer(self, dst: bytes, val: Optional[object]) -> bytes:
        if val is None:
            return self.append_interface(dst, None)
        return self.append_string(dst, str(val))

    def append_stringers(self, dst: bytes, vals: Iterable[Optional[object]]) -> bytes:
        return self._append_list(dst, vals, self.append_stringer)

    def append_bytes(self, dst: bytes, data: bytes) -> bytes:
        return bytes(dst) + _quote(bytes(data))

    def append_hex(self, dst: bytes, data: bytes) -> bytes:
        return bytes(dst) + b'"' + bytes(data).hex().encode("ascii") + b'"'

    def append_interface(self, dst: bytes, obj: Any) -> bytes:
        try:
            marshaled = self.marshal(obj)
        except (TypeError, ValueError) as err:
            return self.append_string(dst, f"marshaling error: {err}")
        return bytes(dst) + bytes(marshaled)

    # -- network ---------------------------------------------------------

    def append_ip_addr(self, dst: bytes, ip: IPAddress) -> bytes:
        return self.append_string(dst, _ip_text(ip))

    def append_ip_prefix(self, dst: bytes, prefix: IPPrefix) -> bytes:
        return self.append_string(dst, _prefix_text(prefix))

    def append_mac_addr(self, dst: bytes, mac: Union[bytes, str]) -> bytes:
        return self.append_string(dst, _mac_text(mac))

    # -- time ------------------------------------------------------------

    def append_time(self, dst: bytes, t: datetime, fmt: str = TIME_FORMAT_RFC3339) -> bytes:
        """Append a time as a Unix number or as a string in ``fmt``.

        ``fmt`` is one of the TIME_FORMAT_* constants or a strftime pattern.
        """
        if fmt == TIME_FORMAT_UNIX:
            return self.append_int(dst, _unix_nanos(t) // _NANOS_PER_SECOND)
        if fmt in _UNIX_DIVISORS:
            return self.append_int(dst, _trunc_div(_unix_nanos(t), _UNIX_DIVISORS[fmt]))
        if fmt == TIME_FORMAT_RFC3339:
            text = _rfc3339(t, with_fraction=False)
        elif fmt == TIME_FORMAT_RFC3339_NANO:
            text = _rfc3339(t, with_fraction=True)
        else:
            text = t.strftime(fmt)
        return bytes(dst) + b'"' + text.encode("utf-8") + b'"'

    def append_times(
        self, dst: bytes, vals: Sequence[datetime], fmt: str = TIME_FORMAT_RFC3339
    ) -> bytes:
        return self._append_list(dst, vals, lambda b, t: self.append_time(b, t, fmt))

    def append_duration(
        self, dst: bytes, d: timedelta, unit: timedelta, use_int: bool
    ) -> bytes:
        d_us, unit_us = d // _ONE_MICROSECOND, unit // _ONE_MICROSECOND
        if unit_us == 0:
            raise ZeroDivisionError("duration unit must not be zero")
        if use_int:
            return self.append_int(dst, _trunc_div(d_us, unit_us))
        return self.append_float64(dst, d_us / unit_us)

    def append_durations(
        self, dst: bytes, vals: Sequence[timedelta], unit: timedelta, use_int: bool
    ) -> bytes:
        return self._append_list(
            dst, vals, lambda b, d: self.append_duration(b, d, unit, use_int)
        )