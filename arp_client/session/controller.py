from __future__ import annotations

import asyncio
import json
import math
import time
from typing import Any, Callable

from arp_client.api.client import ArpApiClient
from arp_client.config.settings import Settings
from arp_client.core.errors import ArpError, LocalExecutionFault
from arp_client.core.local_executor import LocalActionExecutor, normalize_commands
from arp_client.core.logger import get_logger
from arp_client.schemas.payloads import ExperimentLogEntry, StatusData, extract_question, report_to_text
from arp_client.session.observers import SnapshotBus, SnapshotListener
from arp_client.state.session_state import (
    DEFAULT_INPUT_PLACEHOLDER,
    ClarificationQuestion,
    ConfirmationAction,
    ExecutionResult,
    ExperimentSession,
    ExperimentStatus,
    MessageKind,
    MessageRole,
    ResearchType,
    TranscriptEntry,
    new_session,
    normalize_research_type,
    normalize_status,
)

logger = get_logger(__name__)

QUESTION_PLACEHOLDER = "Type a custom answer, or accept the suggested one"
ACTION_PLACEHOLDER = "Optional deny reason for the current approval step"
RUNNING_PLACEHOLDER = "Workflow is running..."
ERROR_LOG_KEYWORDS = ("failed", "error")
LOCAL_STDERR_PREVIEW_CHARS = 600
LOG_DETAILS_PREVIEW_CHARS = 300


def _pretty(value: Any) -> str:
    try:
        return json.dumps(value, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value if value is not None else "")


def _display_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return _pretty(value)


def suggested_answer(question: ClarificationQuestion) -> Any:
    if question.default is not None:
        return question.default
    if question.options:
        return question.options[0]
    return ""


def describe_confirmation(action: ConfirmationAction) -> str:
    file_count = len(action.file_operations)
    command_count = len(normalize_commands(action.commands, action.command))
    reason = f"\nReason: {action.reason}" if action.reason else ""
    cwd = f"\nCWD: {action.cwd}" if action.cwd else ""
    return f"Approval required: {action.action}{reason}{cwd}\nWill run {file_count} file ops and {command_count} command(s)."


def is_error_log(entry: ExperimentLogEntry) -> bool:
    if str(entry.level or "").lower() == "error":
        return True
    message = str(entry.message or "").lower()
    return any(keyword in message for keyword in ERROR_LOG_KEYWORDS)


def format_log(entry: ExperimentLogEntry) -> str:
    message = str(entry.message or "").strip()
    if not message:
        return ""
    phase = str(entry.phase or "unknown")
    level = str(entry.level or "info").upper()
    details = _pretty(entry.details) if isinstance(entry.details, (dict, list)) else ""
    short_details = f" | details: {details[:LOG_DETAILS_PREVIEW_CHARS]}" if details else ""
    return f"[{phase}/{level}] {message}{short_details}"


class ChatSessionController:
    """Single-writer owner of one :class:`ExperimentSession`.

    Public operations and poll ticks are serialized on one ``asyncio.Lock``.
    Every remote or local failure ends up as a ``system/error`` transcript
    entry; no operation raises to its caller. Observers receive deep-copied
    snapshots after each state change.
    """

    def __init__(self, api: ArpApiClient, executor: LocalActionExecutor, settings: Settings):
        self._api = api
        self._executor = executor
        self._settings = settings
        self._bus = SnapshotBus()
        self._lock = asyncio.Lock()
        self._state = new_session(settings.poll_interval_ms)
        self._poll_task: asyncio.Task | None = None
        self._tick_tasks: set[asyncio.Task] = set()
        self._poll_busy = False
        self._closed = False
        self._message_counter = 0
        self._terminal_artifacts_fetched = False
        self._last_announced_action_id: str | None = None
        self._last_announced_question_id: str | None = None

    # -- observation -------------------------------------------------------

    def snapshot(self) -> ExperimentSession:
        return self._state.model_copy(deep=True)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        unsubscribe = self._bus.subscribe(listener)
        self._bus.deliver(listener, self._state)
        return unsubscribe

    @property
    def polling_active(self) -> bool:
        return self._poll_task is not None

    def close(self) -> None:
        self._closed = True
        self._stop_polling()
        self._bus.clear()

    async def wait_for_pending_ticks(self) -> None:
        # let a freshly started poll loop spawn its first tick
        await asyncio.sleep(0)
        while self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks))

    # -- lifecycle ---------------------------------------------------------

    async def new_session(self) -> None:
        async with self._lock:
            self._stop_polling()
            self._reset_experiment()
            logger.info("session.reset")
            self._finish_operation()

    async def start_from_chat_query(self, query: str, research_type: str = "ai", project_root: str = "") -> None:
        resolved_type = normalize_research_type(research_type)
        config_overrides: dict[str, Any] = {"research_type": resolved_type, "research_mode": resolved_type}
        root = project_root.strip() or str(self._settings.default_project_root or "")
        if root:
            config_overrides["project_root"] = root
        await self.start(query, resolved_type, config_overrides)

    async def start(
        self,
        prompt: str,
        research_type: str = "ai",
        config_overrides: dict[str, Any] | None = None,
    ) -> None:
        trimmed = str(prompt or "").strip()
        if not trimmed:
            return
        overrides = dict(config_overrides or {})
        resolved_type: ResearchType = normalize_research_type(
            research_type or overrides.get("research_type") or overrides.get("research_mode")
        )
        overrides.setdefault("research_type", resolved_type)
        overrides.setdefault("research_mode", resolved_type)

        async with self._lock:
            self._stop_polling()
            self._reset_experiment()
            self._state.research_type = resolved_type
            self._push_message("user", "text", trimmed)
            logger.info("session.start", research_type=resolved_type, prompt_len=len(trimmed))
            try:
                data = await self._api.start_experiment(trimmed, resolved_type, overrides)
                self._state.experiment_id = data.experiment_id
                self._state.status = normalize_status(data.status)
                self._state.phase = data.phase
                self._state.research_type = "quantum" if data.research_type == "quantum" else resolved_type
                self._state.execution_mode = data.execution_mode or None
                self._state.execution_target = data.execution_target or None
                self._push_message("assistant", "status", f"Experiment started: {data.experiment_id}")

                question = extract_question(data.pending_questions)
                if question is not None:
                    self._set_pending_question(question)
                else:
                    self._start_polling()
            except Exception as exc:
                self._report_failure(exc, "Failed to start workflow", "session.start.error")
            self._finish_operation()

    # -- clarification -----------------------------------------------------

    async def answer_question(self, value: Any) -> None:
        async with self._lock:
            question = self._state.pending_question
            if question is None or not self._state.experiment_id:
                return
            await self._submit_clarification(self._state.experiment_id, question, value)
            self._finish_operation()

    async def accept_question(self) -> None:
        async with self._lock:
            question = self._state.pending_question
            if question is None or not self._state.experiment_id:
                return
            await self._submit_clarification(self._state.experiment_id, question, suggested_answer(question))
            self._finish_operation()

    async def deny_question_edit(self, value: Any) -> None:
        await self.answer_question(value)

    async def _submit_clarification(self, experiment_id: str, question: ClarificationQuestion, value: Any) -> None:
        cleaned = value.strip() if isinstance(value, str) else value
        if cleaned is None or cleaned == "":
            self._push_message("system", "error", "Answer cannot be empty.")
            return

        try:
            self._push_message("user", "text", f"{question.text}\nAnswer: {_display_value(cleaned)}")
            data = await self._api.answer_question(experiment_id, question.id, cleaned)
            self._state.status = normalize_status(data.status)
            self._state.phase = data.phase
            if data.research_type == "quantum":
                self._state.research_type = "quantum"
            self._state.pending_action = None

            next_question = extract_question(data.pending_questions)
            if next_question is not None and self._state.status == ExperimentStatus.WAITING:
                self._stop_polling()
                self._set_pending_question(next_question)
            else:
                self._state.pending_question = None
                self._state.last_suggested_answer = ""
                self._start_polling()
            logger.info("session.answer", experiment_id=experiment_id, question_id=question.id, status=self._state.status.value)
        except Exception as exc:
            self._report_failure(exc, "Failed to submit answer", "session.answer.error")

    # -- confirmation ------------------------------------------------------

    async def confirm_action(self) -> None:
        await self.decide_action("confirm")

    async def deny_action(self, reason: str = "", alternative_preference: str = "") -> None:
        await self.decide_action("deny", reason, alternative_preference)

    async def decide_action(self, decision: str, reason: str = "", alternative_preference: str = "") -> None:
        normalized = str(decision or "").strip().lower()
        async with self._lock:
            action = self._state.pending_action
            experiment_id = self._state.experiment_id
            if action is None or not experiment_id:
                return
            if normalized not in {"confirm", "deny"}:
                self._push_message("system", "error", f"Unknown decision: {decision}")
                self._finish_operation()
                return

            try:
                self._push_message("user", "text", f"{normalized.upper()}: {action.action}")
                execution_payload: dict[str, Any] | None = None
                if normalized == "confirm":
                    execution = await self._executor.execute(action)
                    self._report_local_outcome(action, execution)
                    execution_payload = execution.model_dump()

                data = await self._api.submit_confirmation(
                    experiment_id,
                    action.action_id,
                    normalized,
                    reason,
                    alternative_preference,
                    execution_payload,
                )
                self._state.status = normalize_status(data.status)
                self._state.phase = data.phase
                self._state.pending_question = None
                self._state.pending_action = data.pending_action
                self._last_announced_question_id = None
                logger.info(
                    "session.confirm",
                    experiment_id=experiment_id,
                    action_id=action.action_id,
                    decision=normalized,
                    status=self._state.status.value,
                )

                if data.pending_action is not None:
                    self._stop_polling()
                    self._announce_action(data.pending_action)
                else:
                    self._last_announced_action_id = None
                    self._start_polling()
            except LocalExecutionFault as exc:
                self._report_failure(exc, "Local action failed", "session.confirm.local_fault")
            except Exception as exc:
                self._report_failure(exc, "Failed to confirm action", "session.confirm.error")
            self._finish_operation()

    def _report_local_outcome(self, action: ConfirmationAction, execution: ExecutionResult) -> None:
        if execution.returncode != 0:
            stderr = execution.stderr.strip()
            detail = f"\n{stderr[:LOCAL_STDERR_PREVIEW_CHARS]}" if stderr else ""
            self._push_message(
                "system",
                "error",
                f"Local action failed before backend confirmation ({action.action}). returncode={execution.returncode}{detail}",
                {"action_id": action.action_id, "returncode": execution.returncode},
            )
        else:
            self._push_message(
                "system", "status", f"Local action succeeded: {action.action}", {"action_id": action.action_id, "returncode": 0}
            )

    # -- polling -----------------------------------------------------------

    def _start_polling(self) -> None:
        if self._closed or not self._state.experiment_id or self._poll_task is not None:
            return
        self._state.polling.enabled = True
        self._poll_task = asyncio.create_task(self._poll_loop())

    def _stop_polling(self) -> None:
        task = self._poll_task
        self._poll_task = None
        self._state.polling.enabled = False
        if task is not None and not task.done():
            task.cancel()

    async def _poll_loop(self) -> None:
        interval = self._state.polling.interval_ms / 1000.0
        while True:
            self._spawn_tick()
            await asyncio.sleep(interval)

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self.poll_tick())
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def poll_tick(self) -> None:
        if self._poll_busy or not self._state.experiment_id:
            return
        self._poll_busy = True
        try:
            async with self._lock:
                experiment_id = self._state.experiment_id
                if not experiment_id or (self._state.is_terminal and self._terminal_artifacts_fetched):
                    return
                try:
                    status = await self._api.get_status(experiment_id)
                    self._apply_status(status)

                    if self._state.status == ExperimentStatus.WAITING:
                        incoming = status.pending_action
                        if incoming is not None and incoming.action_id:
                            current = self._state.pending_action
                            if current is None or current.action_id != incoming.action_id:
                                self._state.pending_action = incoming
                                self._state.pending_question = None
                                self._last_announced_question_id = None
                                self._announce_action(incoming)
                        elif self._state.pending_question is None:
                            await self._refresh_pending_question(experiment_id)
                    else:
                        self._last_announced_action_id = None

                    if self._state.is_terminal:
                        self._stop_polling()
                        self._state.pending_question = None
                        self._state.pending_action = None
                        self._push_message("assistant", "summary", f"Workflow {self._state.status.value}.")
                        logger.info("session.poll.terminal", experiment_id=experiment_id, status=self._state.status.value)
                        await self._fetch_terminal_artifacts(experiment_id)
                except Exception as exc:
                    self._report_failure(exc, "Polling failed", "session.poll.error")
                self._finish_operation()
        finally:
            self._poll_busy = False

    def _apply_status(self, status: StatusData) -> None:
        self._state.status = normalize_status(status.status)
        self._state.phase = status.phase
        if status.research_type == "quantum":
            self._state.research_type = "quantum"
        self._state.execution_mode = status.execution_mode or self._state.execution_mode
        self._state.execution_target = status.execution_target or self._state.execution_target
        if status.progress_pct is not None and math.isfinite(status.progress_pct):
            self._state.progress_pct = float(status.progress_pct)

    async def _refresh_pending_question(self, experiment_id: str) -> None:
        try:
            details = await self._api.get_experiment(experiment_id)
        except Exception as exc:
            self._report_failure(exc, "Failed to fetch pending question", "session.question.refresh_error")
            return
        question = extract_question(details.pending_questions)
        if question is not None:
            self._set_pending_question(question)

    # -- terminal artifacts ------------------------------------------------

    async def _fetch_terminal_artifacts(self, experiment_id: str) -> None:
        if self._terminal_artifacts_fetched:
            return
        self._terminal_artifacts_fetched = True

        try:
            results = await self._api.get_results(experiment_id)
            self._push_message("assistant", "summary", f"Results:\n{_pretty(results)}")
        except Exception as exc:
            self._report_failure(exc, "Failed to fetch results", "session.results.error")

        try:
            report = await self._api.get_report(experiment_id)
            content = report_to_text(report.content)
            if content.strip():
                preview = content[: self._settings.REPORT_PREVIEW_CHARS]
                self._push_message("assistant", "summary", f"Research Report:\n{preview}")
        except Exception as exc:
            self._report_failure(exc, "Failed to fetch report", "session.report.error")

        if self._state.status == ExperimentStatus.FAILED:
            await self._fetch_failure_diagnostics(experiment_id)

    async def _fetch_failure_diagnostics(self, experiment_id: str) -> None:
        try:
            logs = await self._api.get_logs(experiment_id, self._settings.DIAGNOSTIC_LOG_LIMIT)
        except Exception as exc:
            self._report_failure(exc, "Failed to fetch failure diagnostics", "session.diagnostics.error")
            return
        error_entries = [entry for entry in logs.logs if is_error_log(entry)]
        lines = [format_log(entry) for entry in error_entries[: self._settings.DIAGNOSTIC_MAX_ENTRIES]]
        critical = [line for line in lines if line]
        if critical:
            self._push_message("system", "error", "Failure diagnostics:\n" + "\n".join(critical))

    # -- state helpers -----------------------------------------------------

    def _reset_experiment(self) -> None:
        interval_ms = self._state.polling.interval_ms
        self._state = new_session(interval_ms)
        self._terminal_artifacts_fetched = False
        self._last_announced_action_id = None
        self._last_announced_question_id = None

    def _set_pending_question(self, question: ClarificationQuestion) -> None:
        self._state.pending_question = question
        self._state.pending_action = None
        self._state.last_suggested_answer = _display_value(suggested_answer(question))
        question_id = question.id
        if question_id and question_id == self._last_announced_question_id:
            return
        self._last_announced_question_id = question_id or self._last_announced_question_id
        options = question.options or []
        options_text = f"\nOptions: {', '.join(str(option) for option in options)}" if options else ""
        self._push_message(
            "assistant",
            "question",
            f"{question.text}{options_text}\nSuggested answer: {self._state.last_suggested_answer or '(none)'}",
            {"question_id": question.id},
        )

    def _announce_action(self, action: ConfirmationAction) -> None:
        action_id = action.action_id
        if not action_id or action_id == self._last_announced_action_id:
            return
        self._last_announced_action_id = action_id
        self._push_message("assistant", "confirmation", describe_confirmation(action), {"action_id": action_id})

    def _update_input_placeholder(self) -> None:
        if self._state.pending_question is not None:
            self._state.input_placeholder = QUESTION_PLACEHOLDER
        elif self._state.pending_action is not None:
            self._state.input_placeholder = ACTION_PLACEHOLDER
        elif self._state.experiment_id and not self._state.is_terminal:
            self._state.input_placeholder = RUNNING_PLACEHOLDER
        else:
            self._state.input_placeholder = DEFAULT_INPUT_PLACEHOLDER

    def _push_message(self, role: MessageRole, kind: MessageKind, content: str, meta: dict[str, Any] | None = None) -> None:
        messages = self._state.messages
        if messages:
            last = messages[-1]
            if last.role == role and last.kind == kind and last.content == content:
                return
        self._message_counter += 1
        now_ms = int(time.time() * 1000)
        messages.append(
            TranscriptEntry(
                id=f"m_{now_ms}_{self._message_counter}",
                role=role,
                kind=kind,
                content=content,
                meta=meta,
                created_at=now_ms,
            )
        )

    def _report_failure(self, exc: Exception, fallback: str, event: str) -> None:
        experiment_id = self._state.experiment_id
        if isinstance(exc, ArpError):
            logger.warning(event, experiment_id=experiment_id, code=exc.code, status_code=exc.status_code, error=exc.message)
            message = exc.message or fallback
            meta = {"code": exc.code, "status_code": exc.status_code}
        else:
            logger.exception(event, experiment_id=experiment_id)
            message = str(exc) or fallback
            meta = {"code": type(exc).__name__}
        self._push_message("system", "error", message, meta)

    def _finish_operation(self) -> None:
        self._update_input_placeholder()
        self._bus.publish(self._state)
