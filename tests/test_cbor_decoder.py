import io
import json
from datetime import datetime, timezone

import pytest

from logenc.cbor_decoder import (
    CborDecodeError,
    CborReader,
    array_to_json,
    cbor_to_json_many,
    decode_float,
    decode_if_binary_to_bytes,
    decode_if_binary_to_string,
    decode_integer,
    decode_object_to_str,
    decode_one_object,
    decode_simple_float,
    decode_string,
    decode_tag_data,
    decode_utf8_string,
    is_binary,
    map_to_json,
)
from logenc.cbor_encoder import CborEncoder

ENC = CborEncoder()

INTEGER_CASES = [
    (0, b"\x00"), (1, b"\x01"), (2, b"\x02"), (3, b"\x03"), (8, b"\x08"),
    (9, b"\x09"), (10, b"\x0a"), (22, b"\x16"), (23, b"\x17"),
    (24, b"\x18\x18"), (25, b"\x18\x19"), (26, b"\x18\x1a"), (100, b"\x18\x64"),
    (254, b"\x18\xfe"), (255, b"\x18\xff"),
    (256, b"\x19\x01\x00"), (257, b"\x19\x01\x01"), (1000, b"\x19\x03\xe8"),
    (0xFFFF, b"\x19\xff\xff"),
    (0x10000, b"\x1a\x00\x01\x00\x00"), (0x7FFFFFFE, b"\x1a\x7f\xff\xff\xfe"),
    (1000000, b"\x1a\x00\x0f\x42\x40"),
    (-1, b"\x20"), (-2, b"\x21"), (-3, b"\x22"), (-10, b"\x29"), (-21, b"\x34"),
    (-22, b"\x35"), (-23, b"\x36"), (-24, b"\x37"),
    (-25, b"\x38\x18"), (-26, b"\x38\x19"), (-100, b"\x38\x63"),
    (-254, b"\x38\xfd"), (-255, b"\x38\xfe"), (-256, b"\x38\xff"),
    (-257, b"\x39\x01\x00"), (-258, b"\x39\x01\x01"), (-1000, b"\x39\x03\xe7"),
    (-0x10001, b"\x3a\x00\x01\x00\x00"), (-0x7FFFFFFE, b"\x3a\x7f\xff\xff\xfd"),
    (-1000000, b"\x3a\x00\x0f\x42\x3f"),
]

_LONG = "<------------------------------------  This is a 100 character string ----------------------------->" * 3
_EMOJI = "emoji \u2764\ufe0f!".encode("utf-8")

STRING_CASES = [
    (b"\x60", b""),
    (b"\x61\x5c", b"\\\\"),
    (b"\x61\x00", b"\\u0000"),
    (b"\x61\x01", b"\\u0001"),
    (b"\x61\x02", b"\\u0002"),
    (b"\x61\x03", b"\\u0003"),
    (b"\x61\x04", b"\\u0004"),
    (b"\x61*", b"*"),
    (b"\x61a", b"a"),
    (b"\x64IETF", b"IETF"),
    (b"\x78\x1eabcdefghijklmnopqrstuvwxyzABCD", b"abcdefghijklmnopqrstuvwxyzABCD"),
    (b"\x79\x01\x2c" + _LONG.encode(), _LONG.encode()),
    (b"\x6d" + _EMOJI, _EMOJI),
]

INT_ARRAY_CASES = [
    (b"\x84\x20\x00\x18\xc8\x14", b"[-1,0,200,20]"),
    (b"\x84\x38\xc7\x29\x18\xc8\x19\x01\x90", b"[-200,-10,200,400]"),
    (b"\x83\x01\x02\x03", b"[1,2,3]"),
    (
        b"\x98\x19\x01\x02\x03\x04\x05\x06\x07\x08\x09\x0a\x0b\x0c\x0d\x0e\x0f"
        b"\x10\x11\x12\x13\x14\x15\x16\x17\x18\x18\x18\x19",
        b"[1,2,3,4,5,6,7,8,9,10,11,12,13,14,15,16,17,18,19,20,21,22,23,24,25]",
    ),
]

INFINITE_ARRAY_CASES = [
    (b"\x9f\x20\x00\x18\xc8\x14\xff", b"[-1,0,200,20]"),
    (b"\x9f\x38\xc7\x29\x18\xc8\x19\x01\x90\xff", b"[-200,-10,200,400]"),
    (b"\x9f\x01\x02\x03\xff", b"[1,2,3]"),
    (
        b"\x9f\x01\x02\x03\x04\x05\x06\x07\x08\x09\x0a\x0b\x0c\x0d\x0e\x0f"
        b"\x10\x11\x12\x13\x14\x15\x16\x17\x18\x18\x18\x19\xff",
        b"[1,2,3,4,5,6,7,8,9,10,11,12,13,14,15,16,17,18,19,20,21,22,23,24,25]",
    ),
]

BOOL_ARRAY_CASES = [
    (b"\x83\xf5\xf4\xf5", b"[true,false,true]"),
    (b"\x86\xf5\xf4\xf4\xf5\xf4\xf5", b"[true,false,false,true,false,true]"),
]

MAP_CASES = [
    (b"\xa2\x64IETF\x20", b'{"IETF":-1}'),
    (b"\xa2\x65Array\x84\x20\x00\x18\xc8\x14", b'{"Array":[-1,0,200,20]}'),
    (b"\xbf\x64IETF\x20\xff", b'{"IETF":-1}'),
    (b"\xbf\x65Array\x84\x20\x00\x18\xc8\x14\xff", b'{"Array":[-1,0,200,20]}'),
]

FLOAT32_CASES = [
    (0.0, b"\xfa\x00\x00\x00\x00"),
    (1.0, b"\xfa\x3f\x80\x00\x00"),
    (1.5, b"\xfa\x3f\xc0\x00\x00"),
    (65504.0, b"\xfa\x47\x7f\xe0\x00"),
    (-4.0, b"\xfa\xc0\x80\x00\x00"),
    (0.00006103515625, b"\xfa\x38\x80\x00\x00"),
]

COMPOSITE_CASES = [
    (
        b"\xbf\x64IETF\x20\x65Array\x9f\x20\x00\x18\xc8\x14\xff\xff",
        b'{"IETF":-1,"Array":[-1,0,200,20]}\n',
    ),
    (
        b"\xbf\x64IETF\x64YES!\x65Array\x9f\x20\x00\x18\xc8\x14\xff\xff",
        b'{"IETF":"YES!","Array":[-1,0,200,20]}\n',
    ),
]

NEGATIVE_CASES = [
    (b"\xb9\x64IETF\x20\x65Array\x9f\x20\x00\x18\xc8\x14",
     "Tried to Read 18 Bytes.. But hit end of file"),
    (b"\xbf\x64IETF\x20\x65Array\x9f\x20\x00\x18\xc8\x14", "EOF"),
    (b"\xbf\x14IETF\x20\x65Array\x9f\x20\x00\x18\xc8\x14",
     "Tried to Read 40736 Bytes.. But hit end of file"),
    (b"\xbf\x64IETF", "EOF"),
    (b"\xbf\x64IETF\x20\x65Array\x9f\x20\x00\x18\xc8\xff\xff\xff",
     "Invalid Additional Type: 31 in decodeSimpleFloat"),
    (b"\xbf\x64IETF\x20\x65Array", "EOF"),
    (b"\xbf\x64", "Tried to Read 4 Bytes.. But hit end of file"),
]


def _parse_rfc3339_nanos(text: bytes) -> int:
    body = text.decode().strip('"').rstrip("Z")
    whole, _, frac = body.partition(".")
    dt = datetime.strptime(whole, "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    epoch = datetime(1970, 1, 1, tzinfo=timezone.utc)
    delta = dt - epoch
    secs = delta.days * 86400 + delta.seconds
    return secs * 1_000_000_000 + int((frac or "0").ljust(9, "0"))


@pytest.mark.parametrize("val,binary", INTEGER_CASES)
def test_decode_integer(val, binary):
    assert decode_integer(CborReader(binary)) == val


@pytest.mark.parametrize("binary,expected", STRING_CASES)
def test_decode_utf8_string(binary, expected):
    assert decode_utf8_string(CborReader(binary)) == b'"' + expected + b'"'


@pytest.mark.parametrize(
    "binary,expected", INT_ARRAY_CASES + INFINITE_ARRAY_CASES + BOOL_ARRAY_CASES
)
def test_decode_array(binary, expected):
    assert array_to_json(CborReader(binary)) == expected


@pytest.mark.parametrize("binary,expected", MAP_CASES)
def test_decode_map(binary, expected):
    assert map_to_json(CborReader(binary)) == expected


@pytest.mark.parametrize("binary,expected", [(b"\xf5", b"true"), (b"\xf4", b"false")])
def test_decode_bool(binary, expected):
    assert decode_simple_float(CborReader(binary)) == expected


@pytest.mark.parametrize("val,binary", FLOAT32_CASES)
def test_decode_float32(val, binary):
    assert decode_float(CborReader(binary)) == (val, 4)


@pytest.mark.parametrize(
    "binary,expected",
    [
        (b"\xc1\x1a\x51\x0f\x30\xd8", b'"2013-02-04T03:54:00Z"'),
        (b"\xc1\x3a\x25\x71\x93\xa7", b'"1950-02-04T03:54:00Z"'),
    ],
)
def test_decode_integer_timestamp(binary, expected):
    assert decode_tag_data(CborReader(binary)) == expected


@pytest.mark.parametrize(
    "binary,expected",
    [
        (b"\xc1\xfb\x41\xd0\xee\x6c\x59\x7f\xff\xfc", "2006-01-02T23:04:05.999999"),
        (b"\xc1\xfb\xc1\xba\x53\x81\x1a\x00\x00\x11", "1956-01-02T23:04:05.999999"),
    ],
)
def test_decode_float_timestamp(binary, expected):
    got = decode_tag_data(CborReader(binary))
    want = _parse_rfc3339_nanos(expected.encode())
    assert abs(_parse_rfc3339_nanos(got) - want) <= 1000


@pytest.mark.parametrize(
    "binary,text",
    [
        (b"\xd9\x01\x04\x44\x0a\x00\x00\x01", b'"10.0.0.1"'),
        (
            b"\xd9\x01\x04\x50\x20\x01\x0d\xb8\x85\xa3\x00\x00\x00\x00\x8a\x2e\x03\x70\x73\x34",
            b'"2001:db8:85a3::8a2e:370:7334"',
        ),
    ],
)
def test_decode_network_addr(binary, text):
    assert decode_tag_data(CborReader(binary)) == text


@pytest.mark.parametrize(
    "binary,text",
    [
        (b"\xd9\x01\x04\x46\x12\x34\x56\x78\x90\xab", b'"12:34:56:78:90:ab"'),
        (b"\xd9\x01\x04\x46\x02\x00\x5e\x00\x53\x01", b'"02:00:5e:00:53:01"'),
    ],
)
def test_decode_mac_addr(binary, text):
    assert decode_tag_data(CborReader(binary)) == text


@pytest.mark.parametrize(
    "binary,text",
    [
        (b"\xd9\x01\x05\xa1\x44\x00\x00\x00\x00\x00", b'"0.0.0.0/0"'),
        (b"\xd9\x01\x05\xa1\x44\xc0\xa8\x00\x64\x18\x18", b'"192.168.0.100/24"'),
    ],
)
def test_decode_ip_prefix(binary, text):
    assert decode_tag_data(CborReader(binary)) == text


@pytest.mark.parametrize("binary,expected", COMPOSITE_CASES)
def test_cbor_to_json_many(binary, expected):
    assert cbor_to_json_many(binary) == expected


def test_cbor_to_json_many_accepts_stream():
    binary, expected = COMPOSITE_CASES[0]
    assert cbor_to_json_many(io.BytesIO(binary)) == expected


@pytest.mark.parametrize("binary,message", NEGATIVE_CASES)
def test_cbor_to_json_many_errors(binary, message):
    with pytest.raises(CborDecodeError) as info:
        cbor_to_json_many(binary)
    assert str(info.value) == message


def test_many_error_keeps_partial_output():
    with pytest.raises(CborDecodeError) as info:
        cbor_to_json_many(b"\x01\x02\xff")
    assert info.value.partial == b"1\n2\n"


def test_decode_integer_wrong_major():
    with pytest.raises(CborDecodeError, match="in decodeInteger"):
        decode_integer(CborReader(b"\x61a"))


def test_decode_float16_unsupported():
    with pytest.raises(CborDecodeError, match="float16"):
        decode_float(CborReader(b"\xf9\x3c\x00"))


def test_decode_byte_string_raw_and_quoted():
    assert decode_string(CborReader(b"\x44IETF"), False) == b'"IETF"'
    assert decode_string(CborReader(b"\x44IETF"), True) == b"IETF"


def test_decode_utf8_string_invalid_sequence():
    assert decode_utf8_string(CborReader(b"\x68foo\xc2\x7fbar")) == b'"foo\\ufffd\\u007fbar"'


def test_decode_utf8_string_control_escapes():
    assert decode_utf8_string(CborReader(b"\x63\n\t\"")) == b'"\\n\\t\\""'


@pytest.mark.parametrize("text", ["plain", "quote \" and \\ slash", "tab\tnew\nline", "\u2764 heart"])
def test_string_round_trip_is_valid_json(text):
    encoded = ENC.append_string(b"", text)
    assert json.loads(decode_utf8_string(CborReader(encoded))) == text


@pytest.mark.parametrize("val", [0, 23, 24, -24, -25, 65535, -65537, 10**12, -(10**12) - 1])
def test_integer_round_trip(val):
    assert decode_integer(CborReader(ENC.append_int(b"", val))) == val


def test_float_rendering():
    assert decode_simple_float(CborReader(ENC.append_float32(b"", 1e20))) == b"100000000000000000000"
    assert decode_simple_float(CborReader(ENC.append_float32(b"", -1.1))) == b"-1.1"
    assert decode_simple_float(CborReader(ENC.append_float64(b"", -1.1))) == b"-1.1"
    assert decode_simple_float(CborReader(ENC.append_float64(b"", 1e21))) == b"1000000000000000000000"
    assert decode_simple_float(CborReader(ENC.append_float64(b"", 0.0))) == b"0"


def test_float_special_values():
    assert decode_simple_float(CborReader(ENC.append_float64(b"", float("nan")))) == b'"NaN"'
    assert decode_simple_float(CborReader(ENC.append_float32(b"", float("inf")))) == b'"+Inf"'
    assert decode_simple_float(CborReader(ENC.append_float64(b"", float("-inf")))) == b'"-Inf"'


def test_null():
    assert decode_one_object(CborReader(ENC.append_nil(b""))) == b"null"


def test_hex_and_embedded_json_tags():
    assert decode_tag_data(CborReader(ENC.append_hex(b"", b"\x0f\xf0"))) == b'"0ff0"'
    assert decode_tag_data(CborReader(ENC.append_interface(b"", {"a": 1}))) == b'{"a":1}'


def test_time_round_trip():
    t = datetime(2013, 2, 4, 3, 54, tzinfo=timezone.utc)
    assert decode_tag_data(CborReader(ENC.append_time(b"", t))) == b'"2013-02-04T03:54:00Z"'


def test_unsupported_tag():
    with pytest.raises(CborDecodeError, match="Unsupported Additional Tag Type: 300"):
        decode_tag_data(CborReader(b"\xd9\x01\x2c\x40"))


def test_bad_network_address_length():
    with pytest.raises(CborDecodeError, match="Unexpected Network Address length: 3"):
        decode_tag_data(CborReader(b"\xd9\x01\x04\x43\x01\x02\x03"))


def test_reader_operations():
    reader = CborReader(b"\x01\x02")
    assert reader.peek() == 1
    assert reader.read_byte() == 1
    reader.unread_byte()
    assert reader.read_n(2) == b"\x01\x02"
    assert reader.has_more() is False
    with pytest.raises(CborDecodeError, match="EOF"):
        reader.peek()


def test_is_binary():
    assert is_binary(b"\xbf\xff") is True
    assert is_binary(b'{"a":1}') is False
    assert is_binary(b"") is False


def test_decode_if_binary_passthrough_and_decode():
    assert decode_if_binary_to_string(b'{"a":1}\n') == '{"a":1}\n'
    assert decode_if_binary_to_string(b"\x83\x01\x02\x03") == "[1,2,3]\n"
    assert decode_if_binary_to_bytes(b"\x83\x01\x02\x03") == b"[1,2,3]\n"
    assert decode_if_binary_to_bytes(b"text") == b"text"


def test_decode_if_binary_returns_partial_on_error():
    assert decode_if_binary_to_string(b"\x81\x01\xff") == "[1]\n"


def test_decode_object_to_str():
    binary, expected = COMPOSITE_CASES[1]
    assert decode_object_to_str(binary) == expected.decode().rstrip("\n")
    assert decode_object_to_str(b"plain") == "plain"