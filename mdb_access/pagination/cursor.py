"""
Opaque pagination cursors.

A cursor carries the ordering-key values of the last document of a page,
the sort order it was issued for and the direction of the primary key.
Values are serialised as canonical Extended JSON (``bson.json_util``) so
ObjectIds, datetimes and decimals survive the round trip. Extended JSON
stores datetimes in UTC, so the payload also records which of them were
timezone-naive. The payload is signed as an HS256 JWT: a truncated or
edited token fails verification.
"""

import logging
import secrets
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import jwt
from bson import json_util
from bson.errors import BSONError
from bson.json_util import CANONICAL_JSON_OPTIONS

from ..constants import ASCENDING, CURSOR_ALGORITHM, CURSOR_VERSION, DESCENDING
from ..exceptions import InvalidCursorError

logger = logging.getLogger(__name__)

_JSON_OPTIONS = CANONICAL_JSON_OPTIONS.with_options(tz_aware=True, tzinfo=timezone.utc)


def _naive_datetime_paths(value: Any, path: tuple[Any, ...] = ()) -> Iterator[list[Any]]:
    """Locations of timezone-naive datetimes, which would otherwise decode as UTC-aware."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            yield list(path)
    elif isinstance(value, Mapping):
        for name, item in value.items():
            yield from _naive_datetime_paths(item, path + (name,))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from _naive_datetime_paths(item, path + (index,))


def _strip_timezone(container: Any, path: Sequence[Any]) -> None:
    *parents, last = path
    for step in parents:
        container = container[step]
    container[last] = container[last].replace(tzinfo=None)


@dataclass(frozen=True)
class CursorData:
    """
    Decoded cursor payload.

    Attributes:
        key: Ordering-key values of the last document seen (sort fields, then _id)
        sort: The full ordering the key belongs to, as (field, direction) pairs
        direction: Direction of the primary sort key
    """

    key: tuple[Any, ...]
    sort: tuple[tuple[str, int], ...] = ()
    direction: int = ASCENDING

    @property
    def sort_fields(self) -> tuple[str, ...]:
        return tuple(f for f, _ in self.sort)


class CursorCodec:
    """
    Encodes and decodes pagination cursors.

    Example:
        codec = CursorCodec(secret="...")
        token = codec.encode((42, ObjectId(...)), sort=[("score", 1), ("_id", 1)])
        codec.decode(token)  # (42, ObjectId(...))
    """

    def __init__(self, secret: str | bytes | None = None):
        """
        Initialize the codec.

        Args:
            secret: Signing key. Without one a random per-process key is used,
                so cursors stop validating after a restart.
        """
        if not secret:
            logger.warning(
                "No cursor secret configured; using an ephemeral key. "
                "Cursors will not survive a process restart."
            )
            secret = secrets.token_hex(32)
        self._secret = secret

    def encode(
        self,
        key: Sequence[Any],
        *,
        sort: Sequence[tuple[str, int]] = (),
        direction: int | None = None,
    ) -> str:
        """
        Serialize ordering-key values into an opaque token.

        Args:
            key: Ordering-key values (one per sort field)
            sort: The ordering the key belongs to
            direction: Primary direction (defaults to the first sort direction)

        Returns:
            URL-safe token string
        """
        sort = tuple((f, int(d)) for f, d in sort)
        if direction is None:
            direction = sort[0][1] if sort else ASCENDING
        if direction not in (ASCENDING, DESCENDING):
            raise InvalidCursorError(f"Cursor direction must be 1 or -1, got {direction!r}")
        if sort and len(sort) != len(key):
            raise InvalidCursorError(
                f"Cursor key has {len(key)} values but the sort has {len(sort)} fields"
            )

        payload = {
            "v": CURSOR_VERSION,
            "k": json_util.dumps(list(key), json_options=_JSON_OPTIONS),
            "n": list(_naive_datetime_paths(list(key))),
            "s": [[f, d] for f, d in sort],
            "d": direction,
        }
        return jwt.encode(payload, self._secret, algorithm=CURSOR_ALGORITHM)

    def decode(self, token: str) -> tuple[Any, ...]:
        """
        Recover the ordering-key tuple from a token.

        Raises:
            InvalidCursorError: On malformed, truncated or tampered input
        """
        return self.decode_data(token).key

    def decode_data(self, token: str) -> CursorData:
        """
        Recover the full cursor payload from a token.

        Raises:
            InvalidCursorError: On malformed, truncated or tampered input
        """
        if not isinstance(token, str) or not token:
            raise InvalidCursorError("Cursor must be a non-empty string")

        try:
            payload = jwt.decode(token, self._secret, algorithms=[CURSOR_ALGORITHM])
        except jwt.InvalidTokenError as e:
            raise InvalidCursorError(f"Cursor failed verification: {e}") from e

        if payload.get("v") != CURSOR_VERSION:
            raise InvalidCursorError(f"Unsupported cursor version {payload.get('v')!r}")

        try:
            key = json_util.loads(payload["k"], json_options=_JSON_OPTIONS)
            sort = tuple((str(f), int(d)) for f, d in payload.get("s", []))
            direction = int(payload["d"])
        except (KeyError, TypeError, ValueError, BSONError) as e:
            raise InvalidCursorError(f"Cursor payload is malformed: {e}") from e

        if not isinstance(key, list):
            raise InvalidCursorError("Cursor key must be a list")
        if direction not in (ASCENDING, DESCENDING) or any(
            d not in (ASCENDING, DESCENDING) for _, d in sort
        ):
            raise InvalidCursorError("Cursor carries an invalid sort direction")
        if sort and len(sort) != len(key):
            raise InvalidCursorError("Cursor key does not match its sort order")

        try:
            for path in payload.get("n", []):
                _strip_timezone(key, path)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            raise InvalidCursorError(f"Cursor payload is malformed: {e}") from e

        return CursorData(key=tuple(key), sort=sort, direction=direction)
