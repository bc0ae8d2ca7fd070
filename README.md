# logenc

Building blocks for writing structured log records as JSON or as CBOR, and
for turning CBOR log output back into readable JSON.

The encoders never build an intermediate object tree. Each `append_*` method
takes the bytes produced so far (`dst`), appends the encoding of one value
and returns the extended buffer as `bytes`. A log line is built up one field
at a time.

## Encoders

`logenc.json_encoder.JsonEncoder` and `logenc.cbor_encoder.CborEncoder` have
the same method names. Code that builds records can therefore switch between
the two formats without any other change:

- structure: `append_begin_marker`, `append_end_marker`, `append_key`,
  `append_object_data`, `append_array_start`, `append_array_end`,
  `append_array_delim`, `append_line_break`
- scalars: `append_nil`, `append_bool`, `append_int`, `append_uint`,
  `append_float32`, `append_float64`, `append_string`, `append_stringer`,
  `append_bytes`, `append_hex`, `append_interface`
- sequences: `append_bools`, `append_ints`, `append_uints`,
  `append_floats32`, `append_floats64`, `append_strings`,
  `append_stringers`, `append_times`, `append_durations`
- networking: `append_ip_addr`, `append_ip_prefix`, `append_mac_addr`
- time: `append_time`, `append_duration`

```python
from logenc.json_encoder import JsonEncoder

enc = JsonEncoder()
buf = enc.append_begin_marker(b"")
buf = enc.append_key(buf, "level")
buf = enc.append_string(buf, "info")
buf = enc.append_key(buf, "count")
buf = enc.append_int(buf, 3)
buf = enc.append_end_marker(buf)
buf = enc.append_line_break(buf)
# b'{"level":"info","count":3}\n'
```

Both encoders are frozen dataclasses with one field, `marshal`. It is the
function that `append_interface` uses to turn an arbitrary object into JSON
bytes, and by default it is a compact `json.dumps`. If `marshal` raises
`TypeError` or `ValueError`, the encoder writes the string
`"marshaling error: ..."` in place of the value.

### JSON

- JSON cannot hold NaN or infinities. The encoder writes them as the strings
  `"NaN"`, `"+Inf"` and `"-Inf"` instead, so the record is still written.
- Floats are written in plain fixed notation, never in exponent form.
  `append_float32` first rounds the value to single precision.
- Strings and bytes are escaped as JSON requires. Invalid UTF-8 is replaced
  by `\ufffd`.
- `append_time(dst, t, fmt)` accepts these values of `fmt`:
  - `TIME_FORMAT_UNIX`, the empty string: whole seconds as an integer.
  - `TIME_FORMAT_UNIX_MS`, `TIME_FORMAT_UNIX_MICRO` and
    `TIME_FORMAT_UNIX_NANO`: milliseconds, microseconds or nanoseconds as an
    integer.
  - `TIME_FORMAT_RFC3339`, the default, and `TIME_FORMAT_RFC3339_NANO`: an
    RFC 3339 string.
  - Any other value is used as a `strftime` pattern.
  - A naive `datetime` is taken to be UTC.

### CBOR

The CBOR encoder writes compact binary records.

- `append_begin_marker` starts an indefinite-length map, closed by
  `append_end_marker`.
- Typed sequences are written as definite-length arrays. An empty sequence,
  and the output of `append_stringers`, use indefinite-length arrays.
- Timestamps use tag 1. A time with no sub-second part is stored as integer
  seconds, and any other time as a float. The `fmt` argument is ignored.
- IP addresses, prefixes and MAC addresses use tags 260 and 261, hex strings
  use tag 263 and embedded JSON uses tag 262. The decoder can show all of
  them in readable form again.
- `append_type_prefix` and `append_embedded_json` are also available as
  module-level functions.

## Decoding CBOR

`logenc.cbor_decoder` turns CBOR log output into JSON text:

```python
from logenc.cbor_decoder import decode_if_binary_to_string

text = decode_if_binary_to_string(raw)
```

- `is_binary` reports whether the first byte of the input is above `0x7F`.
  Input that is not binary is returned unchanged.
- `cbor_to_json_many` decodes every object in a bytes-like value or a binary
  file object, and ends each object with a newline.
  - On malformed, truncated or unsupported data it raises `CborDecodeError`.
  - The error is a `ValueError`, and its `partial` attribute holds the JSON
    written before the failure.
- `decode_if_binary_to_string` and `decode_if_binary_to_bytes` decode all
  objects in the same way. On an error they return the partial output
  instead of raising.
- `decode_object_to_str` decodes a single object.
- Lower-level functions read from a `CborReader`: `decode_integer`,
  `decode_float`, `decode_string`, `decode_utf8_string`, `array_to_json`,
  `map_to_json`, `decode_tag_data`, `decode_simple_float` and
  `decode_one_object`.
- Decoded timestamps are shown in UTC. Half-precision (float16) values are
  not supported.

## What this package does not do

This package is not a logger. It has no logger object, log levels, hooks,
sampling or output writers, and it does not send records to any log service.
It only encodes values and decodes CBOR records. Deciding what to log and
where the bytes go is left to the code that calls it.

## Running the tests

```
pip install -e .[test]
pytest
```