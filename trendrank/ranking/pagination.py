"""
Keyset pagination over (score DESC, created_at DESC, post_id DESC).

The same ordering is applied in memory (live mode) and in SQL (snapshot
mode). post_id makes the key total, so ties on score and timestamp still
page without duplicates or gaps.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import and_, or_

from trendrank.ranking.cursor import Cursor


@dataclass(frozen=True)
class RankedRow:
    post_id: str
    score: float
    created_at: datetime

    @property
    def sort_key(self) -> tuple[float, datetime, str]:
        return (self.score, self.created_at, self.post_id)


def sort_ranked(rows: Sequence[RankedRow]) -> list[RankedRow]:
    return sorted(rows, key=lambda r: r.sort_key, reverse=True)


def paginate(
    rows: Sequence[RankedRow],
    cursor: Optional[Cursor],
    limit: int,
) -> tuple[list[RankedRow], bool]:
    """
    Returns the page strictly after the cursor and whether more rows follow.
    `rows` must already be sorted with sort_ranked().
    """
    if cursor is not None:
        bound = cursor.sort_key
        rows = [r for r in rows if r.sort_key < bound]
    window = list(rows[: limit + 1])
    return window[:limit], len(window) > limit


def keyset_condition(score_col, created_at_col, id_col, cursor: Cursor):
    """SQL form of (score, created_at, id) < cursor under DESC ordering."""
    return or_(
        score_col < cursor.score,
        and_(score_col == cursor.score, created_at_col < cursor.created_at),
        and_(
            score_col == cursor.score,
            created_at_col == cursor.created_at,
            id_col < cursor.post_id,
        ),
    )


def next_cursor_for(
    page: Sequence[RankedRow],
    has_more: bool,
    as_of: datetime,
) -> Optional[Cursor]:
    if not has_more or not page:
        return None
    last = page[-1]
    return Cursor(as_of=as_of, score=last.score, created_at=last.created_at, post_id=last.post_id)
