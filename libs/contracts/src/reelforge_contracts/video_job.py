from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class Segment(BaseModel):
    """One time-bounded slice of the source audio plus its caption."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, allow_inf_nan=False)

    start_time: float = Field(..., ge=0, alias="startTime")
    end_time: float = Field(..., alias="endTime")
    extra_text: str | None = Field(default=None, alias="extraText")

    @model_validator(mode="after")
    def _check_range(self) -> "Segment":
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be greater than startTime")
        return self


class BaseText(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, str_strip_whitespace=True)

    series_title: str = Field(..., min_length=1, alias="seriesTitle")
    main_title: str = Field(..., min_length=1, alias="mainTitle")
    speaker: str = Field(..., min_length=1)


class VideoJobRequest(BaseText):
    segments: list[Segment] = Field(..., min_length=1)

    def base_text(self) -> BaseText:
        return BaseText(series_title=self.series_title, main_title=self.main_title, speaker=self.speaker)


class JobPayload(BaseModel):
    """What the executor needs to render one video.

    Fields are optional so any stored payload still loads; the executor
    rejects incomplete ones with ``DataIntegrityError``.
    """

    audio_path: str | None = None
    fingerprint: str | None = None
    base_text: BaseText | None = None
    segments: list[Segment] = Field(default_factory=list)


class JobRecord(BaseModel):
    id: str
    fingerprint: str | None = None
    payload: JobPayload
    state: JobState = JobState.WAITING
    progress: float = Field(default=0.0, ge=0, le=100)
    result: str | None = None
    failed_reason: str | None = None
    attempts_made: int = 0
    max_attempts: int = 3
    available_at: float = 0.0
    created_at: float = 0.0
    updated_at: float = 0.0
    finished_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def status_view(self) -> dict:
        return {
            "jobId": self.id,
            "state": self.state.value,
            "progress": self.progress,
            "result": self.result,
            "error": self.failed_reason,
        }


class SubmitOutcome(BaseModel):
    cached: bool
    video_url: str | None = None
    job_id: str | None = None
