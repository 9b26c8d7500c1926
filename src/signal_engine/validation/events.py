from __future__ import annotations
from pydantic import BaseModel, Field, ValidationError
from typing import Literal, List, Optional


class Engagement(BaseModel):
    upvotes: int = Field(0, ge=0)
    comments: int = Field(0, ge=0)
    shares: int = Field(0, ge=0)


class EnrichmentEventBase(BaseModel):
    at: int = Field(ge=0)  # epoch ms
    session_id: str = Field(min_length=1, max_length=128)
    post_id: Optional[str] = Field(None, max_length=128)
    subreddit: Optional[str] = Field(None, max_length=128)
    thread_id: Optional[str] = Field(None, max_length=128)
    entities: Optional[List[str]] = None
    categories: Optional[List[str]] = None
    sentiment: Optional[float] = Field(None, ge=-1.0, le=1.0)
    quality: Optional[float] = Field(None, ge=0.0, le=100.0)
    engagement: Optional[Engagement] = None


class PostEnrichedEvent(EnrichmentEventBase):
    kind: Literal["post_enriched"] = "post_enriched"


class StoryCreatedEvent(EnrichmentEventBase):
    kind: Literal["story_created"] = "story_created"
    story_id: Optional[str] = Field(None, max_length=128)
    story_themes: List[str] = Field(default_factory=list)
    story_concepts: List[str] = Field(default_factory=list)
    is_cross_post: bool = False


EVENT_KINDS = {
    "post_enriched": PostEnrichedEvent,
    "story_created": StoryCreatedEvent,
}


def parse_event(evt: dict) -> PostEnrichedEvent | StoryCreatedEvent:
    """Validate a producer payload; raises ValueError / ValidationError on bad input."""
    kind = evt.get("kind")
    model = EVENT_KINDS.get(kind)
    if not model:
        raise ValueError(f"unknown_event_kind:{kind}")
    return model(**evt)


def validate_event(evt: dict) -> tuple[bool, str | None]:
    try:
        parse_event(evt)
        return True, None
    except ValidationError as ve:
        err = ve.errors()[0]
        loc = ".".join(str(p) for p in err.get("loc", ()))
        return False, f"validation_error:{loc}:{err.get('msg', 'invalid')}"
    except ValueError as e:
        return False, str(e)
