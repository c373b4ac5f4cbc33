from __future__ import annotations

import asyncio
from typing import Any

import pytest

from arp_client.config.settings import Settings
from arp_client.core.local_executor import LocalActionExecutor
from arp_client.schemas.payloads import (
    AnswerData,
    ConfirmData,
    ExperimentDetailsData,
    LogsData,
    ReportData,
    StartExperimentData,
    StatusData,
)
from arp_client.session.controller import ChatSessionController


class FakeArpApi:
    """In-memory stand-in for ``ArpApiClient`` with scripted responses.

    ``statuses`` is consumed front to back; the last entry is sticky so extra
    poll ticks keep seeing the final status.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.errors: dict[str, Exception] = {}
        self.status_gate: asyncio.Event | None = None

        self.start_data: dict[str, Any] = {"experiment_id": "exp_1", "status": "running", "phase": "clarifier"}
        self.answer_data: dict[str, Any] = {"status": "running", "phase": "planner"}
        self.confirm_data: dict[str, Any] = {"status": "running", "phase": "env_manager"}
        self.statuses: list[dict[str, Any]] = [{"status": "running", "phase": "planner", "progress_pct": 10.0}]
        self.details: dict[str, Any] = {"status": "waiting_user", "pending_questions": None}
        self.results: dict[str, Any] = {"metrics": {"accuracy": 0.9}}
        self.report: dict[str, Any] = {"content": "# Report\n\nAll good."}
        self.logs: dict[str, Any] = {"logs": []}

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        error = self.errors.get(name)
        if error is not None:
            raise error

    def count(self, name: str) -> int:
        return sum(1 for call_name, _ in self.calls if call_name == name)

    def last_args(self, name: str) -> tuple[Any, ...]:
        matching = [args for call_name, args in self.calls if call_name == name]
        return matching[-1]

    async def start_experiment(self, prompt: str, research_type: str, config_overrides: dict[str, Any]) -> StartExperimentData:
        self._record("start_experiment", prompt, research_type, config_overrides)
        return StartExperimentData.model_validate(self.start_data)

    async def answer_question(self, experiment_id: str, question_id: str, value: Any) -> AnswerData:
        self._record("answer_question", experiment_id, question_id, value)
        return AnswerData.model_validate(self.answer_data)

    async def submit_confirmation(
        self,
        experiment_id: str,
        action_id: str,
        decision: str,
        reason: str = "",
        alternative_preference: str = "",
        execution_result: dict[str, Any] | None = None,
    ) -> ConfirmData:
        self._record("submit_confirmation", experiment_id, action_id, decision, reason, alternative_preference, execution_result)
        return ConfirmData.model_validate(self.confirm_data)

    async def get_status(self, experiment_id: str) -> StatusData:
        self._record("get_status", experiment_id)
        if self.status_gate is not None:
            await self.status_gate.wait()
        data = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return StatusData.model_validate(data)

    async def get_experiment(self, experiment_id: str) -> ExperimentDetailsData:
        self._record("get_experiment", experiment_id)
        return ExperimentDetailsData.model_validate(self.details)

    async def get_results(self, experiment_id: str) -> dict[str, Any]:
        self._record("get_results", experiment_id)
        return dict(self.results)

    async def get_report(self, experiment_id: str) -> ReportData:
        self._record("get_report", experiment_id)
        return ReportData.model_validate(self.report)

    async def get_logs(self, experiment_id: str, limit: int = 100) -> LogsData:
        self._record("get_logs", experiment_id, limit)
        return LogsData.model_validate(self.logs)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        ARP_BASE_URL="http://arp.test/api/v1/",
        # first tick fires immediately; later ones are driven by the test
        ARP_POLL_INTERVAL_MS=3_600_000,
        ARP_DEFAULT_PROJECT_ROOT="",
    )


@pytest.fixture()
def fake_api() -> FakeArpApi:
    return FakeArpApi()


@pytest.fixture()
async def controller(fake_api: FakeArpApi, settings: Settings):
    session = ChatSessionController(fake_api, LocalActionExecutor(settings), settings)
    yield session
    session.close()
    await session.wait_for_pending_ticks()
