"""
Popularity scoring: pure, deterministic, no I/O.

Score formula (every time-sensitive term uses half-life decay on post age):

  score = ( cached_boost_score      * decay(created_at, 12h)
          + bookmark_count * 0.5    * decay(created_at, 12h)
          + comment_signal * 0.5                     # already decayed per reply
          + hashtag_alignment_bonus                  # 0 or 0.05 + ≤0.15
          + pin_weight              * decay(created_at, 12h) )
        * (1.15 if top-level else 1.0)
        * 0.85 ** deleted_ancestor_count

decay(t) = 0.5 ** (max(0, now - t) / half_life). The exponent is clamped at
zero, so clock skew (a post "from the future") never amplifies a score.

A null cached boost score counts as 0; the post still ranks on its other
signals.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from trendrank.config import Settings, settings


class ScorableEntity(Protocol):
    created_at: datetime
    parent_id: Optional[str]
    bookmark_count: int
    boost_score: Optional[float]
    boost_score_updated_at: Optional[datetime]


@dataclass(frozen=True)
class ScoreWeights:
    half_life_seconds: float = 12 * 60 * 60
    bookmark_weight: float = 0.5
    comment_weight: float = 0.5
    hashtag_base_bonus: float = 0.05
    hashtag_max_scaled_bonus: float = 0.15
    top_level_multiplier: float = 1.15
    deleted_ancestor_penalty: float = 0.85

    @classmethod
    def from_settings(cls, cfg: Settings) -> "ScoreWeights":
        return cls(
            half_life_seconds=cfg.popular_half_life_seconds,
            bookmark_weight=cfg.bookmark_weight,
            comment_weight=cfg.comment_weight,
            hashtag_base_bonus=cfg.hashtag_base_bonus,
            hashtag_max_scaled_bonus=cfg.hashtag_max_scaled_bonus,
            top_level_multiplier=cfg.top_level_multiplier,
            deleted_ancestor_penalty=cfg.deleted_ancestor_penalty,
        )


DEFAULT_WEIGHTS = ScoreWeights.from_settings(settings)


@dataclass
class AuxSignals:
    """Per-post inputs that live outside the post row."""

    comment_signal: float = 0.0
    # Best trend score among this post's hashtags (same visibility), if any.
    best_tag_score: Optional[float] = None
    # Max trend score across the generation for the requested visibilities.
    global_tag_max: Optional[float] = None
    # Tier-scaled pin weight; 0 unless this is the owner's pinned post.
    pin_weight: float = 0.0
    deleted_ancestor_count: int = 0


def decay(now: datetime, then: datetime, half_life_seconds: float) -> float:
    age = max(0.0, (now - then).total_seconds())
    return 0.5 ** (age / half_life_seconds)


def cached_boost_score(entity: ScorableEntity) -> float:
    if entity.boost_score is None or entity.boost_score_updated_at is None:
        return 0.0
    return float(entity.boost_score)


def hashtag_alignment_bonus(
    signals: AuxSignals, weights: ScoreWeights = DEFAULT_WEIGHTS
) -> float:
    best = signals.best_tag_score
    if best is None or best <= 0:
        return 0.0
    scaled = 0.0
    if signals.global_tag_max:
        scaled = min(1.0, best / signals.global_tag_max)
    return weights.hashtag_base_bonus + scaled * weights.hashtag_max_scaled_bonus


def score(
    entity: ScorableEntity,
    now: datetime,
    signals: Optional[AuxSignals] = None,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> float:
    signals = signals or AuxSignals()
    age_decay = decay(now, entity.created_at, weights.half_life_seconds)

    raw = (
        cached_boost_score(entity) * age_decay
        + (entity.bookmark_count or 0) * weights.bookmark_weight * age_decay
        + signals.comment_signal * weights.comment_weight
        + hashtag_alignment_bonus(signals, weights)
        + signals.pin_weight * age_decay
    )

    multiplier = weights.top_level_multiplier if entity.parent_id is None else 1.0
    penalty = weights.deleted_ancestor_penalty ** signals.deleted_ancestor_count
    return raw * multiplier * penalty
