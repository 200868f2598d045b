"""Tests for the opaque pagination cursor."""

import base64
import json
from datetime import datetime

import pytest

from trendrank.ranking.cursor import Cursor, decode, encode


def _token(payload) -> str:
    raw = json.dumps(payload).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


VALID = {
    "v": 1,
    "asOf": "2026-03-01T12:00:00.123456",
    "score": 9.44,
    "createdAt": "2026-03-01T11:00:00.000001",
    "id": "post-1",
}


class TestEncodeDecode:
    def test_round_trip_preserves_every_field(self):
        cursor = Cursor(
            as_of=datetime(2026, 3, 1, 12, 0, 0, 123456),
            score=0.1 + 0.2,
            created_at=datetime(2026, 2, 28, 8, 30, 0, 1),
            post_id="0b6f9b1c-5a1e-4a55-9a39-0f4a8c4f1d22",
        )
        assert decode(encode(cursor)) == cursor

    def test_token_is_url_safe_without_padding(self):
        token = encode(Cursor(datetime(2026, 1, 1), 1.0, datetime(2026, 1, 1), "x" * 37))
        assert "=" not in token
        assert "+" not in token and "/" not in token

    def test_missing_version_reads_as_v1(self):
        payload = dict(VALID)
        del payload["v"]
        cursor = decode(_token(payload))
        assert cursor is not None
        assert cursor.version == 1

    def test_timezone_aware_timestamps_become_naive_utc(self):
        payload = dict(VALID, asOf="2026-03-01T14:00:00+02:00", createdAt="2026-03-01T11:00:00Z")
        cursor = decode(_token(payload))
        assert cursor.as_of == datetime(2026, 3, 1, 12, 0, 0)
        assert cursor.created_at == datetime(2026, 3, 1, 11, 0, 0)

    def test_integer_score_accepted(self):
        cursor = decode(_token(dict(VALID, score=3)))
        assert cursor.score == 3.0


class TestMalformed:
    @pytest.mark.parametrize("token", [None, "", "not base64 !!", "e30", _token([1, 2, 3])])
    def test_garbage_is_no_cursor(self, token):
        assert decode(token) is None

    def test_non_json_payload(self):
        token = base64.urlsafe_b64encode(b"\xff\xfe not json").decode()
        assert decode(token) is None

    @pytest.mark.parametrize("field", ["asOf", "score", "createdAt", "id"])
    def test_missing_field(self, field):
        payload = dict(VALID)
        del payload[field]
        assert decode(_token(payload)) is None

    @pytest.mark.parametrize(
        "override",
        [
            {"score": "9.44"},
            {"score": True},
            {"score": float("nan")},
            {"score": float("inf")},
            {"id": 42},
            {"id": ""},
            {"asOf": "yesterday"},
            {"createdAt": 1700000000},
            {"v": 2},
            {"v": "1"},
        ],
    )
    def test_bad_field_values(self, override):
        assert decode(_token(dict(VALID, **override))) is None
