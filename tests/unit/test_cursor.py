"""
Unit tests for CursorCodec.

Tests that ordering keys survive encoding (including BSON types) and that
malformed, truncated or tampered tokens are rejected.
"""

import base64
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import jwt
import pytest
from bson import Decimal128, ObjectId

from mdb_access.constants import CURSOR_ALGORITHM
from mdb_access.exceptions import InvalidCursorError
from mdb_access.pagination import CursorCodec

SECRET = "cursor-test-secret-" + "y" * 32


@pytest.fixture
def codec():
    return CursorCodec(secret=SECRET)


@pytest.mark.unit
class TestCursorEncoding:
    """Test encode / decode behaviour."""

    def test_bson_values_survive(self, codec):
        """Test that ObjectId, datetime and Decimal128 keys decode to equal values."""
        oid = ObjectId()
        created = datetime(2024, 5, 17, 12, 30, 45, 123000)
        amount = Decimal128(Decimal("19.99"))
        sort = [("created_at", -1), ("amount", 1), ("_id", 1)]

        token = codec.encode((created, amount, oid), sort=sort)
        assert codec.decode(token) == (created, amount, oid)

    @pytest.mark.parametrize(
        "moment",
        [
            datetime(2024, 1, 1, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 9, 30, tzinfo=timezone(timedelta(hours=2))),
            datetime(2024, 1, 1),
        ],
    )
    def test_datetime_awareness_preserved(self, codec, moment):
        """Test that aware datetimes stay aware and naive ones stay naive."""
        decoded = codec.decode(codec.encode((moment, 5), sort=[("at", 1), ("_id", 1)]))
        assert decoded == (moment, 5)
        assert (decoded[0].tzinfo is None) == (moment.tzinfo is None)

    def test_nested_naive_datetime_preserved(self, codec):
        key = ({"day": datetime(2024, 3, 1), "at": [datetime(2024, 3, 1, tzinfo=timezone.utc)]},)
        assert codec.decode(codec.encode(key, sort=[("slot", 1)])) == key

    def test_decode_data_carries_order(self, codec):
        token = codec.encode(("a", 3), sort=[("name", -1), ("_id", -1)])
        data = codec.decode_data(token)
        assert data.sort == (("name", -1), ("_id", -1))
        assert data.sort_fields == ("name", "_id")
        assert data.direction == -1

    def test_token_is_opaque_string(self, codec):
        token = codec.encode((1,), sort=[("_id", 1)])
        assert isinstance(token, str)
        assert token.count(".") == 2

    def test_key_length_must_match_sort(self, codec):
        with pytest.raises(InvalidCursorError):
            codec.encode((1, 2), sort=[("_id", 1)])

    def test_ephemeral_secret_warns(self, caplog):
        """Test that a codec without a secret still works but logs a warning."""
        codec = CursorCodec()
        token = codec.encode((1,), sort=[("_id", 1)])
        assert codec.decode(token) == (1,)
        assert "ephemeral key" in caplog.text


@pytest.mark.unit
class TestCursorRejection:
    """Test that invalid tokens raise InvalidCursorError."""

    @pytest.mark.parametrize("token", ["", "not-a-token", "a.b.c", None, 42])
    def test_malformed(self, codec, token):
        with pytest.raises(InvalidCursorError):
            codec.decode(token)

    def test_truncated(self, codec):
        token = codec.encode((ObjectId(),), sort=[("_id", 1)])
        with pytest.raises(InvalidCursorError):
            codec.decode(token[:-5])

    def test_tampered_payload(self, codec):
        """Test that editing the payload breaks the signature."""
        token = codec.encode((10,), sort=[("score", 1)])
        header, payload, signature = token.split(".")
        data = json.loads(base64.urlsafe_b64decode(payload + "=" * (-len(payload) % 4)))
        data["k"] = '[{"$numberInt": "99"}]'
        forged = base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()
        with pytest.raises(InvalidCursorError, match="verification"):
            codec.decode(f"{header}.{forged}.{signature}")

    def test_other_secret(self, codec):
        token = CursorCodec(secret="another-secret-" + "z" * 32).encode((1,), sort=[("_id", 1)])
        with pytest.raises(InvalidCursorError):
            codec.decode(token)

    def test_unsupported_version(self, codec):
        token = jwt.encode(
            {"v": 99, "k": "[1]", "s": [["_id", 1]], "d": 1}, SECRET, algorithm=CURSOR_ALGORITHM
        )
        with pytest.raises(InvalidCursorError, match="version"):
            codec.decode(token)

    def test_signed_but_malformed_payload(self, codec):
        token = jwt.encode({"v": 1, "k": "{not json", "d": 1}, SECRET, algorithm=CURSOR_ALGORITHM)
        with pytest.raises(InvalidCursorError, match="malformed"):
            codec.decode(token)

    def test_signed_but_bad_direction(self, codec):
        token = jwt.encode(
            {"v": 1, "k": "[1]", "s": [["_id", 2]], "d": 1}, SECRET, algorithm=CURSOR_ALGORITHM
        )
        with pytest.raises(InvalidCursorError, match="direction"):
            codec.decode(token)

    def test_signed_but_bad_datetime_paths(self, codec):
        token = jwt.encode(
            {"v": 1, "k": "[1]", "n": [[3]], "s": [["_id", 1]], "d": 1},
            SECRET,
            algorithm=CURSOR_ALGORITHM,
        )
        with pytest.raises(InvalidCursorError, match="malformed"):
            codec.decode(token)
