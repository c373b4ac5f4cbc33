from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from arp_client.config.settings import DEFAULT_POLL_INTERVAL_MS

DEFAULT_INPUT_PLACEHOLDER = "Describe what you want to research..."


class ExperimentStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    WAITING = "waiting_user"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTED = "aborted"


TERMINAL_STATUSES = frozenset({ExperimentStatus.SUCCESS, ExperimentStatus.FAILED, ExperimentStatus.ABORTED})

ResearchType = Literal["ai", "quantum"]
MessageRole = Literal["user", "assistant", "system"]
MessageKind = Literal["text", "status", "question", "confirmation", "summary", "error"]


def normalize_status(value: Any) -> ExperimentStatus:
    raw = value.value if isinstance(value, ExperimentStatus) else str(value or "").strip().lower()
    try:
        return ExperimentStatus(raw)
    except ValueError:
        return ExperimentStatus.IDLE


def is_terminal_status(value: Any) -> bool:
    return normalize_status(value) in TERMINAL_STATUSES


def normalize_research_type(value: Any, fallback: ResearchType = "ai") -> ResearchType:
    text = str(value or "").strip().lower()
    if not text:
        return fallback
    return "quantum" if "quantum" in text else "ai"


class ClarificationQuestion(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    text: str
    type: str = "text"
    topic: Optional[str] = None
    options: Optional[list[Any]] = None
    default: Any = None
    required: Optional[bool] = None


class FileOperation(BaseModel):
    model_config = ConfigDict(extra="allow")

    path: str = ""
    content: Optional[str] = None
    mode: Optional[str] = "write"


class ConfirmationAction(BaseModel):
    """A backend-authorized bundle of local file writes and commands.

    ``command`` is a single argument vector (or a string), ``commands`` is
    either one flat vector or a list of vectors. Extra keys sent by the
    backend (``next_phase``, ``script_path``, ``created_files``) are kept.
    """

    model_config = ConfigDict(extra="allow")

    action_id: str = ""
    action: str = ""
    phase: Optional[str] = None
    cwd: Optional[str] = None
    command: Optional[list[Any] | str] = None
    commands: Optional[list[Any] | str] = None
    file_operations: list[FileOperation] = Field(default_factory=list)
    timeout_seconds: Optional[float] = None
    reason: Optional[str] = None
    package: Optional[str] = None
    version: Optional[str] = None
    fallback_if_denied: Optional[str] = None


class TranscriptEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    role: MessageRole
    kind: MessageKind
    content: str
    meta: Optional[dict[str, Any]] = None
    created_at: int


class PollingConfig(BaseModel):
    enabled: bool = False
    interval_ms: int = DEFAULT_POLL_INTERVAL_MS


class ExecutionResult(BaseModel):
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_sec: float = 0.0
    command: list[str] = Field(default_factory=list)
    cwd: str = ""
    created_files: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ExperimentSession(BaseModel):
    experiment_id: Optional[str] = None
    status: ExperimentStatus = ExperimentStatus.IDLE
    phase: Optional[str] = None
    research_type: ResearchType = "ai"
    execution_mode: Optional[str] = None
    execution_target: Optional[str] = None
    progress_pct: float = 0.0
    pending_question: Optional[ClarificationQuestion] = None
    pending_action: Optional[ConfirmationAction] = None
    last_suggested_answer: str = ""
    input_placeholder: str = DEFAULT_INPUT_PLACEHOLDER
    messages: list[TranscriptEntry] = Field(default_factory=list)
    polling: PollingConfig = Field(default_factory=PollingConfig)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def new_session(poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS) -> ExperimentSession:
    return ExperimentSession(polling=PollingConfig(enabled=False, interval_ms=poll_interval_ms))
