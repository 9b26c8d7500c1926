"""Pure bucket aggregation: partition an event batch and reduce each group.

An event fans out to every (window, dimension) pair it belongs to, so a
single pass over a batch feeds the global, session, subreddit, entity and
thread rollups at all four resolutions at once. Each group is then reduced
to one additive `BucketDeltas` record which the bucket store merges.

Nothing in here touches the database; events only need the attributes of
`EnrichmentEvent` (kind, at, session_id, subreddit, thread_id, entities,
sentiment, quality, engagement, story_themes, story_concepts, is_cross_post).
"""
from __future__ import annotations
import math
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Iterable, Sequence

WINDOWS: tuple[str, ...] = ("1m", "5m", "15m", "60m")
WINDOW_MS: dict[str, int] = {
    "1m": 60 * 1000,
    "5m": 5 * 60 * 1000,
    "15m": 15 * 60 * 1000,
    "60m": 60 * 60 * 1000,
}
DIM_KINDS: tuple[str, ...] = ("global", "subreddit", "session", "entity", "thread")
EVENT_KINDS: tuple[str, ...] = ("post_enriched", "story_created")

DEFAULT_QUALITY = 0.5
DEFAULT_CREDIBILITY = 0.5
QUALITY_WEIGHT = 0.4
ENGAGEMENT_WEIGHT = 0.3
CREDIBILITY_WEIGHT = 0.3

Credibility = float | Callable[[Any], float]


def round_to_window(timestamp: int, window: str) -> int:
    """Start of the bucket containing `timestamp`; exact boundaries open a new bucket."""
    ms = WINDOW_MS[window]
    return int(timestamp // ms) * ms


def hash_dimension(dim_kind: str, dim_value: str | None = None) -> str:
    return f"{dim_kind}:{dim_value or ''}"


def normalize_quality(quality: float | None) -> float:
    # 0 is treated like a missing score, same as producers that omit it
    if not quality:
        return DEFAULT_QUALITY
    return max(0.0, min(1.0, quality / 100))


def engagement_total(engagement: dict | None) -> int:
    """Weighted interaction count: upvotes + 2*comments + 3*shares."""
    if not engagement:
        return 0
    return (
        (engagement.get("upvotes") or 0)
        + (engagement.get("comments") or 0) * 2
        + (engagement.get("shares") or 0) * 3
    )


def normalize_engagement(engagement: dict | None) -> float:
    """Log-scaled engagement in [0, 1]; ~100 weighted interactions saturate."""
    if not engagement:
        return 0.0
    return min(1.0, math.log10(engagement_total(engagement) + 1) / 2)


def event_weight(event, credibility: Credibility = DEFAULT_CREDIBILITY) -> float:
    cred = credibility(event) if callable(credibility) else credibility
    return (
        normalize_quality(event.quality) * QUALITY_WEIGHT
        + normalize_engagement(event.engagement) * ENGAGEMENT_WEIGHT
        + cred * CREDIBILITY_WEIGHT
    )


@dataclass(frozen=True)
class Dimension:
    kind: str
    value: str | None = None

    @property
    def hash(self) -> str:
        return hash_dimension(self.kind, self.value)


def dimensions_for_event(event, dedupe_entities: bool = True) -> list[Dimension]:
    """Dimension set of one event: global and session always, the rest when present."""
    dims = [Dimension("global"), Dimension("session", event.session_id)]
    if event.subreddit:
        dims.append(Dimension("subreddit", event.subreddit))
    seen: set[str] = set()
    for entity in event.entities or []:
        if not entity:
            continue
        if dedupe_entities:
            if entity in seen:
                continue
            seen.add(entity)
        dims.append(Dimension("entity", entity))
    if event.thread_id:
        dims.append(Dimension("thread", event.thread_id))
    return dims


@dataclass
class EventGroup:
    window: str
    bucket_start: int
    dim_kind: str
    dim_value: str | None
    dim_hash: str
    events: list = field(default_factory=list)

    @property
    def key(self) -> tuple[str, int, str]:
        return (self.window, self.bucket_start, self.dim_hash)


def group_events_by_buckets(events: Iterable, dedupe_entities: bool = True) -> list[EventGroup]:
    """Partition events into disjoint (window, bucket_start, dim_hash) groups.

    Groups come back in first-seen order, so for an `at`-ascending batch an
    earlier bucket is always listed before a later one of the same window
    and dimension. Events keep their batch order inside each group.
    """
    groups: dict[tuple[str, int, str], EventGroup] = {}
    for event in events:
        dims = dimensions_for_event(event, dedupe_entities=dedupe_entities)
        for window in WINDOWS:
            bucket_start = round_to_window(event.at, window)
            for dim in dims:
                key = (window, bucket_start, dim.hash)
                group = groups.get(key)
                if group is None:
                    group = EventGroup(window, bucket_start, dim.kind, dim.value, dim.hash)
                    groups[key] = group
                group.events.append(event)
    return list(groups.values())


@dataclass
class BucketDeltas:
    """Additive contribution of one event group to a bucket."""
    stories_total: int = 0
    stories_aligned: int = 0
    unique_concepts: list[str] = field(default_factory=list)
    stories_cross_post: int = 0
    posts_total: int = 0
    sum_sentiment: float = 0.0
    sum_weighted_sentiment: float = 0.0
    sum_weights: float = 0.0
    sum_engagement: float = 0.0
    sum_x: float = 0.0
    sum_x2: float = 0.0
    n: int = 0
    event_count: int = 0

    @property
    def variance_helper(self) -> dict:
        return {"sum_x": self.sum_x, "sum_x2": self.sum_x2, "n": self.n}

    def as_dict(self) -> dict:
        return asdict(self)


def compute_deltas(events: Sequence, credibility: Credibility = DEFAULT_CREDIBILITY) -> BucketDeltas:
    """Single-pass reduction of a group's events into a `BucketDeltas`.

    The result does not depend on event order: counters are integers, float
    sums go through `math.fsum`, and concepts are returned sorted.
    """
    deltas = BucketDeltas()
    concepts: set[str] = set()
    sentiments: list[float] = []
    weighted: list[float] = []
    weights: list[float] = []
    squares: list[float] = []

    for event in events:
        deltas.event_count += 1
        if event.kind == "post_enriched":
            deltas.posts_total += 1
        elif event.kind == "story_created":
            deltas.stories_total += 1
            if event.story_themes:
                deltas.stories_aligned += 1
            for concept in event.story_concepts or []:
                normalized = concept.strip().lower()
                if normalized:
                    concepts.add(normalized)
            if event.is_cross_post:
                deltas.stories_cross_post += 1

        if event.sentiment is not None:
            w = event_weight(event, credibility)
            sentiments.append(event.sentiment)
            weighted.append(event.sentiment * w)
            weights.append(w)
            squares.append(event.sentiment * event.sentiment)

        if event.engagement:
            deltas.sum_engagement += (event.engagement.get("upvotes") or 0) + (event.engagement.get("comments") or 0)

    deltas.unique_concepts = sorted(concepts)
    deltas.sum_sentiment = math.fsum(sentiments)
    deltas.sum_weighted_sentiment = math.fsum(weighted)
    deltas.sum_weights = math.fsum(weights)
    deltas.sum_x = deltas.sum_sentiment
    deltas.sum_x2 = math.fsum(squares)
    deltas.n = len(sentiments)
    return deltas


def derive_bucket_metrics(stories_total: int, stories_aligned: int, stories_cross_post: int, posts_total: int) -> dict:
    """RC / TP percentages and story yield from accumulated counters."""
    return {
        "rc_percent": (stories_aligned / stories_total) * 100 if stories_total > 0 else 0.0,
        "tp_percent": (stories_cross_post / stories_total) * 100 if stories_total > 0 else 0.0,
        "story_yield": stories_total / posts_total if posts_total > 0 else 0.0,
    }


def conversion_momentum(story_yield: float, previous_yield: float | None) -> tuple[float, float]:
    """(story_yield_delta, cm_percent) against the previous bucket's yield."""
    if previous_yield is None:
        return 0.0, 0.0
    delta = story_yield - previous_yield
    cm = (delta / previous_yield) * 100 if previous_yield > 0 else 0.0
    return delta, cm


def sentiment_stats(sum_weighted_sentiment: float, sum_weights: float, sum_x: float, sum_x2: float, n: int) -> dict:
    if n <= 0:
        return {"avg_sentiment": 0.0, "mean_sentiment": 0.0, "sentiment_variance": 0.0, "sentiment_stddev": 0.0}
    mean = sum_x / n
    variance = max(0.0, sum_x2 / n - mean * mean)
    return {
        "avg_sentiment": sum_weighted_sentiment / sum_weights if sum_weights > 0 else 0.0,
        "mean_sentiment": mean,
        "sentiment_variance": variance,
        "sentiment_stddev": math.sqrt(variance),
    }
