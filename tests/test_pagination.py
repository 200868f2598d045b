"""Tests for keyset pagination, in memory and in SQL."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import insert, select

from trendrank.models import PostPopularScoreSnapshot
from trendrank.ranking.cursor import Cursor, decode, encode
from trendrank.ranking.pagination import (
    RankedRow,
    keyset_condition,
    next_cursor_for,
    paginate,
    sort_ranked,
)

AS_OF = datetime(2026, 3, 1, 12, 0, 0)
T1 = datetime(2026, 3, 1, 10, 0, 0)
T2 = datetime(2026, 3, 1, 11, 0, 0)


def _rows() -> list[RankedRow]:
    # Ties on score, and on score + created_at, to exercise every tiebreak.
    return sort_ranked([
        RankedRow("a", 5.0, T1),
        RankedRow("b", 5.0, T2),
        RankedRow("c", 5.0, T2),
        RankedRow("d", 3.0, T1),
        RankedRow("e", 3.0, T1),
        RankedRow("f", 1.0, T2),
        RankedRow("g", 9.0, T1),
    ])


class TestInMemory:
    def test_sort_order(self):
        assert [r.post_id for r in _rows()] == ["g", "c", "b", "a", "e", "d", "f"]

    @pytest.mark.parametrize("limit", [1, 2, 3, 7, 10])
    def test_scroll_has_no_duplicates_or_gaps(self, limit):
        rows = _rows()
        seen: list[RankedRow] = []
        token = None
        for _ in range(20):
            page, has_more = paginate(rows, decode(token), limit)
            seen.extend(page)
            cursor = next_cursor_for(page, has_more, AS_OF)
            if cursor is None:
                break
            assert cursor.as_of == AS_OF
            token = encode(cursor)

        assert [r.post_id for r in seen] == [r.post_id for r in rows]
        keys = [r.sort_key for r in seen]
        assert all(a > b for a, b in zip(keys, keys[1:]))

    def test_cursor_is_exclusive(self):
        cursor = Cursor(AS_OF, 5.0, T2, "c")
        page, _ = paginate(_rows(), cursor, 10)
        assert [r.post_id for r in page] == ["b", "a", "e", "d", "f"]

    def test_last_page_has_no_cursor(self):
        page, has_more = paginate(_rows(), None, 7)
        assert len(page) == 7
        assert has_more is False
        assert next_cursor_for(page, has_more, AS_OF) is None

    def test_empty_page_has_no_cursor(self):
        assert next_cursor_for([], True, AS_OF) is None


class TestKeysetCondition:
    @pytest.mark.asyncio
    async def test_sql_matches_in_memory_order(self, db):
        rows = _rows()
        await db.execute(
            insert(PostPopularScoreSnapshot),
            [
                {
                    "as_of": AS_OF,
                    "post_id": r.post_id,
                    "created_at": r.created_at,
                    "score": r.score,
                    "user_id": "u1",
                    "visibility": "public",
                }
                for r in rows
            ],
        )
        await db.commit()

        snap = PostPopularScoreSnapshot
        cursor = Cursor(AS_OF, 5.0, T2, "c")
        result = await db.execute(
            select(snap.post_id)
            .where(snap.as_of == AS_OF, keyset_condition(snap.score, snap.created_at, snap.post_id, cursor))
            .order_by(snap.score.desc(), snap.created_at.desc(), snap.post_id.desc())
        )
        expected, _ = paginate(rows, cursor, len(rows))
        assert [r[0] for r in result.all()] == [r.post_id for r in expected]

    @pytest.mark.asyncio
    async def test_cursor_from_stored_row_round_trips_exactly(self, db):
        created = datetime(2026, 3, 1, 9, 15, 30, 654321)
        await db.execute(
            insert(PostPopularScoreSnapshot),
            [
                {"as_of": AS_OF, "post_id": "x", "created_at": created, "score": 1 / 3,
                 "user_id": "u1", "visibility": "public"},
                {"as_of": AS_OF, "post_id": "y", "created_at": created - timedelta(seconds=1),
                 "score": 1 / 3, "user_id": "u1", "visibility": "public"},
            ],
        )
        await db.commit()

        snap = PostPopularScoreSnapshot
        stored = (await db.execute(select(snap).where(snap.post_id == "x"))).scalar_one()
        cursor = decode(encode(Cursor(AS_OF, stored.score, stored.created_at, stored.post_id)))
        result = await db.execute(
            select(snap.post_id).where(
                snap.as_of == AS_OF,
                keyset_condition(snap.score, snap.created_at, snap.post_id, cursor),
            )
        )
        assert [r[0] for r in result.all()] == ["y"]
