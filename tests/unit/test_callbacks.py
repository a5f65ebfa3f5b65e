"""Tests for opsrelay.approval.callbacks — inbound payload parsing"""

import json

import pytest

from opsrelay.approval.callbacks import (
    MAX_CALLBACK_BYTES,
    CallbackPayload,
    MalformedCallback,
    encode_callback_data,
    parse_callback_payload,
)


class TestEncode:
    def test_compact_json(self):
        data = encode_callback_data("9f2c1a7e", 1)
        assert data == '{"t":"approval","id":"9f2c1a7e","o":1}'
        assert len(data.encode()) <= MAX_CALLBACK_BYTES

    def test_too_long_is_rejected(self):
        with pytest.raises(ValueError):
            encode_callback_data("x" * 60, 0)


class TestParse:
    def test_valid_string(self):
        parsed = parse_callback_payload(encode_callback_data("abcd1234", 2))
        assert parsed == CallbackPayload(approval_id="abcd1234", option_index=2)

    def test_valid_bytes_and_dict(self):
        raw = encode_callback_data("abcd1234", 0)
        assert parse_callback_payload(raw.encode()) == CallbackPayload("abcd1234", 0)
        assert parse_callback_payload(json.loads(raw)) == CallbackPayload("abcd1234", 0)

    @pytest.mark.parametrize(
        "raw,reason",
        [
            ("", "empty"),
            ("   ", "empty"),
            ("{oops", "not JSON"),
            ('"just a string"', "not a JSON object"),
            ('{"t":"confirm","id":"a","o":0}', "unexpected payload type"),
            ('{"t":"approval","id":"","o":0}', "missing approval id"),
            ('{"t":"approval","id":5,"o":0}', "missing approval id"),
            ('{"t":"approval","id":"a","o":"1"}', "option index"),
            ('{"t":"approval","id":"a","o":1.5}', "option index"),
            ('{"t":"approval","id":"a","o":false}', "option index"),
            (b"\xff\xfe", "UTF-8"),
            (3.14, "unsupported payload type"),
        ],
    )
    def test_malformed(self, raw, reason):
        parsed = parse_callback_payload(raw)
        assert isinstance(parsed, MalformedCallback)
        assert reason in parsed.reason
        assert parsed.raw == raw
