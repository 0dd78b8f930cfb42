from enum import Enum
from pydantic import BaseModel, model_validator
from story_reader.schemas.story import AWAITING_PREFIX


class GenerationState(str, Enum):
    READY = "ready"
    IN_PROGRESS = "in_progress"
    NEEDS_FEEDBACK = "needs_feedback"


class GenerationStatus(BaseModel):
    state: GenerationState = GenerationState.IN_PROGRESS
    checkpoint: str | None = None


class GenerationStatusOut(BaseModel):
    """Wire shape of the generation-status endpoint."""

    status: str | None = None
    checkpoint: str | None = None
    current_step: str | None = None

    @model_validator(mode="after")
    def _infer_checkpoint(self) -> "GenerationStatusOut":
        if self.checkpoint is None and self.current_step and self.current_step.startswith(AWAITING_PREFIX):
            # awaiting_chapter_2_feedback -> chapter_2
            step = self.current_step[len(AWAITING_PREFIX):]
            if step.endswith("_feedback"):
                step = step[: -len("_feedback")]
            self.checkpoint = step or None
        return self

    def to_status(self) -> GenerationStatus:
        try:
            state = GenerationState(self.status) if self.status else None
        except ValueError:
            state = None
        if state is None:
            awaiting = bool(self.current_step and self.current_step.startswith(AWAITING_PREFIX))
            state = GenerationState.NEEDS_FEEDBACK if awaiting else GenerationState.IN_PROGRESS
        return GenerationStatus(state=state, checkpoint=self.checkpoint)
