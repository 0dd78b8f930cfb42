from enum import Enum
from pydantic import BaseModel, Field

PREFERENCES_SCHEMA_VERSION = 1


class Pacing(str, Enum):
    HOOKED = "hooked"
    SLOW = "slow"
    FAST = "fast"


class Tone(str, Enum):
    RIGHT = "right"
    SERIOUS = "serious"
    LIGHT = "light"


class CharacterFeeling(str, Enum):
    LOVE = "love"
    WARMING = "warming"
    NOT_CLICKING = "not_clicking"


class FollowUpAction(str, Enum):
    DIFFERENT_STORY = "different_story"
    KEEP_READING = "keep_reading"
    VOICE_TIPS = "voice_tips"


class CheckpointDimensions(BaseModel):
    pacing: Pacing
    tone: Tone
    character: CharacterFeeling


class CheckpointFeedback(BaseModel):
    story_id: str
    checkpoint: str
    pacing: Pacing
    tone: Tone
    character: CharacterFeeling
    protagonist_name: str


class CheckpointResponse(BaseModel):
    story_id: str
    checkpoint: str
    response: str = Field(min_length=1)
    follow_up_action: FollowUpAction | None = None


class StoryPreferences(BaseModel):
    """Preferences gathered by the interview flows.

    Closed and versioned: keys the backend adds later are dropped here instead
    of leaking into the reading core.
    """

    schema_version: int = PREFERENCES_SCHEMA_VERSION
    preferred_genres: list[str] = Field(default_factory=list)
    themes: list[str] = Field(default_factory=list)
    protagonist_name: str | None = None
    pacing: Pacing | None = None
    tone: Tone | None = None
    character: CharacterFeeling | None = None
    notes: str | None = None

    class Config:
        extra = "ignore"


class FeedbackStatus(BaseModel):
    has_feedback: bool = False


class FeedbackAck(BaseModel):
    accepted: bool = True


class FeedbackResult(BaseModel):
    generating_chapters: bool = False
