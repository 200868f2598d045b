"""Tests for hashtag trend aggregation and lookup."""

from datetime import timedelta

import pytest
from sqlalchemy import insert

from trendrank.models import HashtagTrendingScoreSnapshot
from trendrank.ranking.cursor import pack_token
from trendrank.ranking.hashtags import (
    HashtagTrend,
    TagCursor,
    TagScores,
    TrendingTag,
    compute_trends,
    decode_tag_cursor,
    encode_tag_cursor,
    load_latest_tag_scores,
    normalize_tag,
    trending_tags,
)


def test_normalize_tag():
    assert normalize_tag("  Python ") == "python"
    assert normalize_tag(None) == ""
    assert normalize_tag(7) == ""


class TestTagScores:
    def test_best_for_matches_visibility(self):
        scores = TagScores.from_trends([
            HashtagTrend("public", "python", 4.0, 3),
            HashtagTrend("public", "sql", 2.0, 1),
            HashtagTrend("premiumOnly", "python", 9.0, 5),
        ])
        assert scores.best_for("public", ["SQL", "Python", "rust"]) == 4.0
        assert scores.best_for("public", ["rust"]) is None
        assert scores.best_for("public", None) is None
        assert scores.best_for("premiumOnly", ["python"]) == 9.0

    def test_global_max_over_requested_visibilities(self):
        scores = TagScores.from_trends([
            HashtagTrend("public", "python", 4.0, 3),
            HashtagTrend("premiumOnly", "python", 9.0, 5),
        ])
        assert scores.global_max(["public"]) == 4.0
        assert scores.global_max(["public", "premiumOnly"]) == 9.0
        assert scores.global_max(["verifiedOnly"]) is None


class TestComputeTrends:
    @pytest.mark.asyncio
    async def test_aggregates_per_visibility_and_tag(self, db, now, make_user, make_post):
        author = await make_user()
        await make_post(author, age=timedelta(0), hashtags=["Python", "python", "sql"])
        await make_post(author, age=timedelta(hours=12), hashtags=["python"])
        await make_post(author, age=timedelta(0), hashtags=["python"], visibility="premiumOnly")
        root = await make_post(author, age=timedelta(0))
        await make_post(author, age=timedelta(0), hashtags=["python"], parent_id=root.post_id)
        await make_post(author, age=timedelta(0), hashtags=["python"], visibility="onlyMe")
        await make_post(author, age=timedelta(0), hashtags=["python"], deleted_at=now)

        trends = {(t.visibility, t.tag): t for t in await compute_trends(db, now)}

        public_python = trends[("public", "python")]
        assert public_python.usage_count == 2
        assert public_python.score == pytest.approx(1.0 + 0.5)
        assert trends[("public", "sql")].usage_count == 1
        assert trends[("premiumOnly", "python")].usage_count == 1
        assert set(trends) == {("public", "python"), ("public", "sql"), ("premiumOnly", "python")}

    @pytest.mark.asyncio
    async def test_ordered_by_score(self, db, now, make_user, make_post):
        author = await make_user()
        await make_post(author, age=timedelta(0), hashtags=["a", "b"])
        await make_post(author, age=timedelta(0), hashtags=["b"])

        trends = await compute_trends(db, now)
        assert [t.tag for t in trends] == ["b", "a"]

    @pytest.mark.asyncio
    async def test_widens_to_a_year_when_sparse(self, db, now, make_user, make_post):
        await make_post(await make_user(), age=timedelta(days=60), hashtags=["vintage"])

        trends = await compute_trends(db, now)
        assert [(t.tag, t.usage_count) for t in trends] == [("vintage", 1)]

    @pytest.mark.asyncio
    async def test_empty(self, db, now):
        assert await compute_trends(db, now) == []


class TestLoadLatest:
    @pytest.mark.asyncio
    async def test_no_generation(self, db):
        scores = await load_latest_tag_scores(db)
        assert scores.as_of is None
        assert scores.scores == {}

    @pytest.mark.asyncio
    async def test_reads_newest_generation_only(self, db, now):
        older = now - timedelta(minutes=10)
        await db.execute(
            insert(HashtagTrendingScoreSnapshot),
            [
                {"as_of": older, "visibility": "public", "tag": "old", "score": 5.0, "usage_count": 5},
                {"as_of": now, "visibility": "public", "tag": "new", "score": 2.0, "usage_count": 2},
            ],
        )
        await db.commit()

        scores = await load_latest_tag_scores(db)
        assert scores.as_of == now
        assert scores.scores == {("public", "new"): 2.0}


# ---------------------------------------------------------------------------
# Trending tags read
# ---------------------------------------------------------------------------

async def _seed_tag_generation(db, as_of):
    rows = [
        ("public", "python", 4.0, 3),
        ("premiumOnly", "python", 2.0, 1),
        ("public", "sql", 5.0, 2),
        ("public", "go", 5.0, 2),
        ("public", "rust", 1.0, 4),
        ("onlyMe", "secret", 9.0, 1),
    ]
    await db.execute(
        insert(HashtagTrendingScoreSnapshot),
        [{"as_of": as_of, "visibility": v, "tag": t, "score": s, "usage_count": u} for v, t, s, u in rows],
    )
    await db.commit()


class TestTrendingTags:
    @pytest.mark.asyncio
    async def test_no_generation(self, db):
        page = await trending_tags(db, ["public"], 8)
        assert page.tags == []
        assert page.as_of is None
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_sums_across_visibilities(self, db, now):
        await _seed_tag_generation(db, now)

        page = await trending_tags(db, ["public", "premiumOnly", "onlyMe"], 8)

        assert page.as_of == now
        assert page.tags == [
            TrendingTag("python", 6.0, 4),
            TrendingTag("go", 5.0, 2),
            TrendingTag("sql", 5.0, 2),
            TrendingTag("rust", 1.0, 4),
        ]
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_only_me_alone_is_empty(self, db, now):
        await _seed_tag_generation(db, now)
        page = await trending_tags(db, ["onlyMe"], 8)
        assert page.tags == []
        assert page.as_of == now

    @pytest.mark.asyncio
    async def test_cursor_pages(self, db, now):
        await _seed_tag_generation(db, now)

        first = await trending_tags(db, ["public"], 2)
        assert [t.tag for t in first.tags] == ["go", "sql"]
        assert first.next_cursor is not None

        second = await trending_tags(db, ["public"], 2, first.next_cursor)
        assert [t.tag for t in second.tags] == ["python", "rust"]
        assert second.next_cursor is None

    @pytest.mark.asyncio
    async def test_cursor_from_older_generation_restarts(self, db, now):
        await _seed_tag_generation(db, now)
        stale = encode_tag_cursor(TagCursor(now - timedelta(minutes=10), 5.0, 2, "go"))

        page = await trending_tags(db, ["public"], 1, stale)
        assert [t.tag for t in page.tags] == ["go"]


class TestTagCursor:
    def test_roundtrip(self, now):
        cursor = TagCursor(now, 6.0, 4, "python")
        assert decode_tag_cursor(encode_tag_cursor(cursor)) == cursor

    @pytest.mark.parametrize("token", [None, "", "%%%", "bnVsbA"])
    def test_garbage(self, token):
        assert decode_tag_cursor(token) is None

    def test_rejects_boolean_usage(self, now):
        token = pack_token({"asOf": now.isoformat(), "score": 1.0, "usage": True, "tag": "x"})
        assert decode_tag_cursor(token) is None
