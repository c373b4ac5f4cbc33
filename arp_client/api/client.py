from __future__ import annotations

import json
import time
from typing import Any, Literal, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from arp_client.config.settings import Settings
from arp_client.core.errors import ApplicationError, HttpError, MalformedResponseError, NetworkError
from arp_client.core.logger import get_logger
from arp_client.schemas.payloads import (
    AnswerData,
    ConfirmData,
    ExperimentDetailsData,
    LogsData,
    ReportData,
    StartExperimentData,
    StatusData,
)

logger = get_logger(__name__)

PayloadT = TypeVar("PayloadT", bound=BaseModel)
Decision = Literal["confirm", "deny"]

_LOGS_LIMIT_MIN = 1
_LOGS_LIMIT_MAX = 500


def _http_error_fields(parsed: Any, status_code: int) -> tuple[str, str]:
    body = parsed if isinstance(parsed, dict) else {}
    detail = body.get("detail")
    detail = detail if isinstance(detail, dict) else {}
    error = body.get("error")
    error = error if isinstance(error, dict) else {}
    message = detail.get("message") or error.get("message") or body.get("message") or f"HTTP {status_code}"
    code = detail.get("code") or error.get("code") or "HTTP_ERROR"
    return str(message), str(code)


class ArpApiClient:
    """Async client for the ARP research endpoints.

    Every response is expected in the ``{success, data, error}`` envelope.
    Transport, parsing, HTTP and application failures are raised as the
    matching :mod:`arp_client.core.errors` type; nothing is retried here.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self._settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=settings.ARP_REQUEST_TIMEOUT,
            headers={"Content-Type": "application/json"},
        )

    async def __aenter__(self) -> "ArpApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self._settings.base_url}{path}"

    async def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        url = self._url(path)
        started = time.time()
        logger.info("api.request", method=method, url=url)
        try:
            response = await self._client.request(method, url, json=body)
        except httpx.RequestError as exc:
            logger.warning("api.error", method=method, url=url, code=NetworkError.default_code, error=str(exc))
            raise NetworkError(str(exc) or "Network error") from exc

        text = response.text
        try:
            parsed = json.loads(text) if text else {}
        except ValueError as exc:
            raise MalformedResponseError(
                f"Backend returned non-JSON response ({response.status_code})",
                status_code=response.status_code,
            ) from exc

        logger.info(
            "api.response",
            method=method,
            url=url,
            status_code=response.status_code,
            latency_ms=round((time.time() - started) * 1000.0, 2),
        )

        if not response.is_success:
            message, code = _http_error_fields(parsed, response.status_code)
            logger.warning("api.error", method=method, url=url, status_code=response.status_code, code=code)
            raise HttpError(message, status_code=response.status_code, code=code)

        if not isinstance(parsed, dict) or "success" not in parsed:
            raise MalformedResponseError(
                f"Backend response is not an envelope ({response.status_code})",
                status_code=response.status_code,
                code="INVALID_ENVELOPE",
            )

        if parsed.get("success") is False:
            error = parsed.get("error") if isinstance(parsed.get("error"), dict) else {}
            raise ApplicationError(
                str(error.get("message") or "Request failed"),
                status_code=response.status_code,
                code=str(error.get("code") or ApplicationError.default_code),
            )

        if "data" not in parsed:
            raise MalformedResponseError(
                f"Backend envelope has no data ({response.status_code})",
                status_code=response.status_code,
                code="INVALID_ENVELOPE",
            )
        return parsed["data"]

    def _validate(self, model: type[PayloadT], data: Any, path: str) -> PayloadT:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            logger.warning("api.payload.invalid", path=path, model=model.__name__, errors=exc.error_count())
            raise MalformedResponseError(
                f"Unexpected {model.__name__} payload from {path}",
                status_code=200,
                code="INVALID_ENVELOPE",
            ) from exc

    async def start_experiment(
        self,
        prompt: str,
        research_type: str,
        config_overrides: dict[str, Any],
    ) -> StartExperimentData:
        path = "/research/start"
        data = await self._request(
            "POST",
            path,
            {
                "prompt": prompt,
                "research_type": research_type,
                "priority": "normal",
                "tags": [],
                "user_id": self._settings.ARP_USER_ID,
                "test_mode": False,
                "config_overrides": config_overrides,
            },
        )
        return self._validate(StartExperimentData, data, path)

    async def answer_question(self, experiment_id: str, question_id: str, value: Any) -> AnswerData:
        path = f"/research/{experiment_id}/answer"
        data = await self._request("POST", path, {"answers": {question_id: value}})
        return self._validate(AnswerData, data, path)

    async def submit_confirmation(
        self,
        experiment_id: str,
        action_id: str,
        decision: Decision,
        reason: str = "",
        alternative_preference: str = "",
        execution_result: dict[str, Any] | None = None,
    ) -> ConfirmData:
        path = f"/research/{experiment_id}/confirm"
        data = await self._request(
            "POST",
            path,
            {
                "action_id": action_id,
                "decision": decision,
                "reason": reason,
                "alternative_preference": alternative_preference,
                "execution_result": execution_result,
            },
        )
        return self._validate(ConfirmData, data, path)

    async def get_status(self, experiment_id: str) -> StatusData:
        path = f"/research/{experiment_id}/status"
        return self._validate(StatusData, await self._request("GET", path), path)

    async def get_experiment(self, experiment_id: str) -> ExperimentDetailsData:
        path = f"/research/{experiment_id}"
        return self._validate(ExperimentDetailsData, await self._request("GET", path), path)

    async def get_results(self, experiment_id: str) -> dict[str, Any]:
        path = f"/research/{experiment_id}/results"
        data = await self._request("GET", path)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Unexpected results payload from {path}", status_code=200, code="INVALID_ENVELOPE")
        return data

    async def get_report(self, experiment_id: str) -> ReportData:
        path = f"/research/{experiment_id}/report?format=markdown"
        return self._validate(ReportData, await self._request("GET", path), path)

    async def get_logs(self, experiment_id: str, limit: int = 100) -> LogsData:
        try:
            safe_limit = int(limit)
        except (TypeError, ValueError):
            safe_limit = 100
        safe_limit = max(_LOGS_LIMIT_MIN, min(_LOGS_LIMIT_MAX, safe_limit))
        path = f"/research/{experiment_id}/logs?limit={safe_limit}&offset=0"
        return self._validate(LogsData, await self._request("GET", path), path)
