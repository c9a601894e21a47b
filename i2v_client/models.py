"""Data models for the image-to-video generation client."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

MIN_REPLICATES = 1
MAX_REPLICATES = 5

DEFAULT_PROMPT = (
    "the person is speaking. Looking at the camera. detailed eyes, clear teeth, "
    "static view point, still background"
)
DEFAULT_NEGATIVE_PROMPT = (
    "six fingers, bad hands, lowres, low quality, worst quality, "
    "moving view point, static image"
)


class ModelVariant(str, Enum):
    STANDARD = "standard"
    GENERAL = "general"
    FIRST_LAST_FRAME = "first_last_frame"

    @property
    def requires_prompt(self) -> bool:
        return self is not ModelVariant.STANDARD

    @property
    def requires_end_image(self) -> bool:
        return self is ModelVariant.FIRST_LAST_FRAME

    @property
    def model_type(self) -> str | None:
        """Value of the ``model_type`` request field, None for the standard model."""
        return _MODEL_TYPES.get(self)


_MODEL_TYPES = {
    ModelVariant.GENERAL: "GENERAL",
    ModelVariant.FIRST_LAST_FRAME: "FLF2V",
}


class DurationUnit(str, Enum):
    SECONDS = "seconds"
    FRAMES = "frames"

    @property
    def allowed(self) -> tuple[int, ...]:
        return _ALLOWED_DURATIONS[self]

    @property
    def payload_key(self) -> str:
        return "video_time" if self is DurationUnit.SECONDS else "video_length"


_ALLOWED_DURATIONS = {
    DurationUnit.SECONDS: (5, 10, 15),
    DurationUnit.FRAMES: (81, 129),
}


class TaskStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


def clamp_replicates(count: int) -> int:
    """Clamp a requested replicate count into the accepted range."""
    return max(MIN_REPLICATES, min(MAX_REPLICATES, int(count)))


def default_name() -> str:
    return f"Video_{int(time.time() * 1000)}"


@dataclass(frozen=True)
class GenerationRequest:
    """An immutable generation request, built once per submission.

    Attributes:
        source_image_url: Normalized URL of the first frame.
        prompt: Motion/style prompt.
        negative_prompt: Things to avoid.
        duration: Length value, interpreted according to ``duration_unit``.
        duration_unit: Seconds (``video_time``) or frames (``video_length``).
        model_variant: Which remote model to use.
        extend_prompt: Let the service expand the prompt.
        replicate_count: Number of videos to produce, clamped into [1, 5].
        end_image_url: Last frame, first-last-frame variant only.
        name: Job label shown in the service dashboard.
    """
    source_image_url: str
    prompt: str = DEFAULT_PROMPT
    negative_prompt: str = DEFAULT_NEGATIVE_PROMPT
    duration: int = 5
    duration_unit: DurationUnit = DurationUnit.SECONDS
    model_variant: ModelVariant = ModelVariant.STANDARD
    extend_prompt: bool = True
    replicate_count: int = 1
    end_image_url: str | None = None
    name: str = field(default_factory=default_name)

    def __post_init__(self) -> None:
        # frozen: bypass __setattr__ for the normalizing assignments
        object.__setattr__(self, "replicate_count", clamp_replicates(self.replicate_count))
        object.__setattr__(self, "model_variant", ModelVariant(self.model_variant))
        object.__setattr__(self, "duration_unit", DurationUnit(self.duration_unit))
        if not self.name:
            object.__setattr__(self, "name", default_name())

    def to_payload(self) -> dict[str, Any]:
        """Serialize into the JSON body of the submission call."""
        body: dict[str, Any] = {
            "name": self.name,
            "image_url": self.source_image_url,
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            self.duration_unit.payload_key: self.duration,
            "extend_prompt": self.extend_prompt,
        }
        model_type = self.model_variant.model_type
        if model_type:
            body["model_type"] = model_type
            body["number_of_images"] = self.replicate_count
        if self.model_variant.requires_end_image and self.end_image_url:
            body["end_image_url"] = self.end_image_url
        return body


@dataclass
class GenerationTask:
    """State of a remote generation task.

    Attributes:
        id: Opaque task identifier assigned by the service.
        status: Normalized task status.
        result_url: URL of the generated video, if completed.
        failure_reason: Service-supplied message, if failed.
        created_at: Creation time reported by the service.
        name: Job label, when the service echoes it back.
    """
    id: str | None
    status: TaskStatus
    result_url: str | None = None
    failure_reason: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    name: str | None = None

    @property
    def is_done(self) -> bool:
        """Whether the task has reached a terminal state."""
        return self.status.is_terminal

    @property
    def is_success(self) -> bool:
        """Whether the task completed successfully."""
        return self.status is TaskStatus.COMPLETED
