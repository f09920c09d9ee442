"""Profile models describing how a worker drives the executor."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_PROMPT = (
    "Read {instruction_document} and follow its instructions to carry out the next task. "
    "You are agent-{worker_id}."
)


class WorkerProfile(BaseModel):
    """Configuration describing how a worker invokes the executor each iteration."""

    id: str = Field(..., description="Unique identifier for the profile.")
    title: str = Field(default="", description="Display title for the profile.")
    prompt: str = Field(
        default=DEFAULT_PROMPT,
        description=(
            "Prompt passed to the executor. May reference {worker_id}, "
            "{instruction_document} and {session}."
        ),
    )
    model: str | None = Field(default=None, description="Executor model override.")
    flags: list[str] = Field(
        default_factory=list,
        description="Extra executor CLI flags placed before the prompt.",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Additional environment variables for the executor process.",
    )
    timeout: float | None = Field(
        default=None,
        description="Seconds before an executor run is killed; unset means no limit.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Worker profile id must not be empty")
        return normalized

    @field_validator("flags", mode="before")
    @classmethod
    def _ensure_list(cls, value: Any):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        raise TypeError("Flags must be a sequence of strings")

    @field_validator("timeout")
    @classmethod
    def _validate_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("Timeout must be > 0 when set")
        return value

    def render_prompt(self, *, worker_id: str, instruction_document: str, session: str = "") -> str:
        return self.prompt.format(
            worker_id=worker_id,
            instruction_document=instruction_document,
            session=session,
        )


DEFAULT_PROFILE = WorkerProfile(
    id="default",
    title="Autonomous worker",
    flags=["--dangerously-skip-permissions"],
)


__all__ = ["DEFAULT_PROFILE", "DEFAULT_PROMPT", "WorkerProfile"]
