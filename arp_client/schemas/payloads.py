from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from arp_client.state.session_state import ClarificationQuestion, ConfirmationAction


class _Payload(BaseModel):
    model_config = ConfigDict(extra="allow")


class StartExperimentData(_Payload):
    experiment_id: str
    status: str
    phase: Optional[str] = None
    research_type: Optional[str] = None
    execution_mode: Optional[str] = None
    execution_target: Optional[str] = None
    pending_questions: Any = None


class AnswerData(_Payload):
    experiment_id: Optional[str] = None
    status: str
    phase: Optional[str] = None
    research_type: Optional[str] = None
    pending_questions: Any = None


class ConfirmData(_Payload):
    status: str
    phase: Optional[str] = None
    pending_action: Optional[ConfirmationAction] = None


class StatusData(_Payload):
    experiment_id: Optional[str] = None
    status: str
    phase: Optional[str] = None
    progress_pct: Optional[float] = None
    research_type: Optional[str] = None
    waiting_for_user: Optional[bool] = None
    pending_action: Optional[ConfirmationAction] = None
    execution_mode: Optional[str] = None
    execution_target: Optional[str] = None


class ExperimentDetailsData(_Payload):
    experiment_id: Optional[str] = None
    status: str
    phase: Optional[str] = None
    research_type: Optional[str] = None
    pending_questions: Any = None


class ReportData(_Payload):
    content: Optional[str | dict[str, Any]] = None
    report_path: Optional[str] = None
    word_count: Optional[int] = None
    sections: Optional[list[Any]] = None


class ExperimentLogEntry(_Payload):
    id: Any = None
    phase: Optional[str] = None
    level: Optional[str] = None
    message: Optional[str] = None
    details: Any = None
    timestamp: Any = None


class LogsData(_Payload):
    experiment_id: Optional[str] = None
    logs: list[ExperimentLogEntry] = Field(default_factory=list)
    execution_logs: list[Any] = Field(default_factory=list)


def extract_question(raw: Any) -> ClarificationQuestion | None:
    """Pick the active clarification out of a ``pending_questions`` payload.

    The backend sends either ``{"current_question": {...}, "questions": [...]}``
    or a bare question object.
    """
    if isinstance(raw, ClarificationQuestion):
        return raw
    if not isinstance(raw, dict):
        return None
    candidate = raw.get("current_question") or raw
    if not isinstance(candidate, dict):
        return None
    if not isinstance(candidate.get("id"), str) or not isinstance(candidate.get("text"), str):
        return None
    try:
        return ClarificationQuestion.model_validate(candidate)
    except ValidationError:
        return None


def report_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, dict) and isinstance(content.get("markdown"), str):
        return content["markdown"]
    return ""
