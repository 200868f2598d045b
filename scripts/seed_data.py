#!/usr/bin/env python3
"""
Seed script — creates a realistic dataset for trying the ranked feeds.

Creates:
  • 12 users across all tiers (premium, verified, regular)
  • A follow graph (each user follows 4 others)
  • Posts spread over the last 10 days, with hashtags and some replies
  • Boosts, bookmarks and a pinned post per user
  • One snapshot generation, so /feed/trending serves from the snapshot

Writes straight to the configured database (DATABASE_URL or TIDB_*):
  python scripts/seed_data.py --posts-per-user 8

All IDs are printed so you can use them in curl commands.
"""
import argparse
import asyncio
import random
from datetime import timedelta

from trendrank.database import AsyncSessionLocal, engine, init_db
from trendrank.models import (
    RANKABLE_VISIBILITIES,
    VISIBILITY_ONLY_ME,
    VISIBILITY_PUBLIC,
    Follow,
    Post,
    User,
    utcnow,
)
from trendrank.ranking.engagement import record_boost
from trendrank.ranking.snapshots import build_scheduler


BASE_USERS = [
    # username, display name, premium, verified_status
    ("alice_ai", "Alice Chen", True, "identity"),
    ("bob_builder", "Bob Martinez", False, "identity"),
    ("carol_codes", "Carol Singh", False, "none"),
    ("dave_designs", "Dave Kim", True, "none"),
    ("eve_engineer", "Eve Johnson", False, "manual"),
    ("frank_feeds", "Frank Williams", False, "none"),
    ("grace_graphs", "Grace Li", False, "none"),
    ("henry_hpc", "Henry Brown", True, "identity"),
    ("iris_infra", "Iris Davis", False, "none"),
    ("jack_ml", "Jack Wilson", False, "identity"),
    ("kate_kernels", "Kate Moore", False, "none"),
    ("leo_latency", "Leo Garcia", False, "none"),
]

SAMPLE_POSTS = [
    ("Just shipped a new feature to production. Zero downtime deploys are beautiful.", ["shipping", "devops"]),
    ("Keyset pagination beats OFFSET every single time.", ["sql", "performance"]),
    ("Half-life decay is the simplest ranking signal that actually works.", ["ranking"]),
    ("Precomputing the trending list every ten minutes saved us a cache cluster.", ["ranking", "architecture"]),
    ("TiDB handles our write spikes without a single schema change.", ["sql", "tidb"]),
    ("Fresh content vs. heavily engaged content: why not both?", ["ranking"]),
    ("OpenTelemetry traces finally connected to Jaeger.", ["observability"]),
    ("Prometheus metrics: the difference between knowing and guessing.", ["observability", "devops"]),
    ("Cursor tokens should be opaque. Clients will parse anything you let them.", ["api"]),
    ("Soft deletes everywhere, hard deletes in a nightly job.", ["sql"]),
    ("Our p99 for the trending feed is 14ms now that it reads a snapshot.", ["performance", "ranking"]),
    ("FastAPI dependency overrides make integration tests painless.", ["python", "testing"]),
    ("Advisory locks are the most underrated feature of Postgres.", ["sql", "postgres"]),
    ("A/B testing your ranking formula: always ship with a control group.", ["ranking", "experiments"]),
    ("Batch jobs should be idempotent. Re-runs happen.", ["architecture"]),
]

REPLIES = [
    "Strong agree.",
    "We tried this and it worked well for us.",
    "Interesting, how did you handle the edge cases?",
    "Bookmarking this for later.",
]


async def seed(posts_per_user: int) -> None:
    await init_db()
    now = utcnow()

    async with AsyncSessionLocal() as db:
        # ── Create users ─────────────────────────────────────────────────
        print("Creating users...")
        users: list[User] = []
        for username, display_name, premium, verified in BASE_USERS:
            user = User(
                username=username,
                display_name=display_name,
                premium=premium,
                verified_status=verified,
            )
            db.add(user)
            users.append(user)
        await db.flush()
        for u in users:
            print(f"  ✓ {u.username} ({u.user_id})")

        # ── Create follow graph ──────────────────────────────────────────
        print("\nCreating follow relationships...")
        for follower in users:
            for followee in random.sample([u for u in users if u is not follower], k=4):
                db.add(Follow(follower_id=follower.user_id, followee_id=followee.user_id))
        print("  ✓ Follow graph created")

        # ── Create posts ─────────────────────────────────────────────────
        print("\nCreating posts...")
        posts: list[Post] = []
        for user in users:
            for content, tags in random.sample(SAMPLE_POSTS, k=min(posts_per_user, len(SAMPLE_POSTS))):
                visibility = random.choices(
                    list(RANKABLE_VISIBILITIES) + [VISIBILITY_ONLY_ME],
                    weights=[80, 8, 7, 5],
                )[0]
                post = Post(
                    user_id=user.user_id,
                    content=content,
                    visibility=visibility,
                    hashtags=tags,
                    bookmark_count=random.randint(0, 6),
                    created_at=now - timedelta(minutes=random.randint(5, 10 * 24 * 60)),
                )
                db.add(post)
                posts.append(post)
        await db.flush()

        top_level = [p for p in posts if p.visibility == VISIBILITY_PUBLIC]
        replies: list[Post] = []
        for parent in random.sample(top_level, k=min(20, len(top_level))):
            reply = Post(
                user_id=random.choice(users).user_id,
                content=random.choice(REPLIES),
                parent_id=parent.post_id,
                root_id=parent.post_id,
                bookmark_count=random.randint(0, 2),
                created_at=parent.created_at + timedelta(minutes=random.randint(1, 240)),
            )
            parent.comment_count += 1
            db.add(reply)
            replies.append(reply)
        await db.flush()
        print(f"  ✓ {len(posts)} posts, {len(replies)} replies created")

        # ── Pin one post per user ────────────────────────────────────────
        for user in users:
            own = [p for p in posts if p.user_id == user.user_id and p.visibility != VISIBILITY_ONLY_ME]
            if own:
                user.pinned_post_id = random.choice(own).post_id

        # ── Create some boosts ───────────────────────────────────────────
        print("\nAdding boosts...")
        boosts = 0
        for post in posts + replies:
            for user in random.sample(users, k=random.randint(0, 5)):
                if await record_boost(db, post.post_id, user.user_id):
                    boosts += 1
        print(f"  ✓ {boosts} boosts added")

        await db.commit()
        sample_user = users[0]

    # ── Write a snapshot generation ──────────────────────────────────────
    print("\nWriting popular snapshot...")
    written = await build_scheduler().run_batch()
    print("  ✓ Snapshot written" if written else "  ✗ Snapshot batch wrote nothing")
    await engine.dispose()

    # ── Print summary ────────────────────────────────────────────────────
    api_url = "http://localhost:8000"
    print("\n" + "=" * 60)
    print("Seed complete! Here are some commands to try:\n")
    print("# Site-wide trending feed:")
    print(f"  curl -s '{api_url}/feed/trending?limit=5' | python3 -m json.tool\n")
    print(f"# Following feed for '{sample_user.username}':")
    print(f"  curl -s '{api_url}/feed/following?viewer_id={sample_user.user_id}' | python3 -m json.tool\n")
    print(f"# Popular posts on '{sample_user.username}' profile:")
    print(f"  curl -s '{api_url}/feed/users/{sample_user.user_id}' | python3 -m json.tool\n")
    print("# Rebuild the snapshot now and wait up to 10s:")
    print(f"  curl -s -X POST '{api_url}/jobs/popular-snapshot?max_wait=10'\n")
    print(f"# Metrics: {api_url}/metrics")
    print("=" * 60)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed the Trendrank database")
    parser.add_argument("--posts-per-user", type=int, default=8, help="Top-level posts per user")
    args = parser.parse_args()
    asyncio.run(seed(args.posts_per_user))
