from __future__ import annotations

import argparse
import asyncio
from typing import Any

from arp_client.api.client import ArpApiClient
from arp_client.config.settings import Settings, load_settings
from arp_client.core.local_executor import LocalActionExecutor
from arp_client.core.logger import get_logger
from arp_client.core.logging import configure_logging
from arp_client.session.controller import ChatSessionController
from arp_client.state.session_state import ExperimentSession, ExperimentStatus

logger = get_logger(__name__)


class TranscriptPrinter:
    """Prints every transcript entry exactly once, in arrival order."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def __call__(self, snapshot: ExperimentSession) -> None:
        for entry in snapshot.messages:
            if entry.id in self._seen:
                continue
            self._seen.add(entry.id)
            print(f"[{entry.role}/{entry.kind}] {entry.content}", flush=True)


async def _ask(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def drive(controller: ChatSessionController, args: argparse.Namespace, settings: Settings) -> ExperimentStatus:
    await controller.start_from_chat_query(args.prompt, args.research_type, args.project_root or "")
    confirmed: set[str] = set()
    idle_sleep = settings.poll_interval_ms / 1000.0

    while True:
        snapshot = controller.snapshot()
        if not snapshot.experiment_id or snapshot.is_terminal:
            return snapshot.status

        question = snapshot.pending_question
        action = snapshot.pending_action
        if question is not None:
            if args.auto_answer:
                await controller.accept_question()
                continue
            reply = await _ask(f"Answer [{snapshot.last_suggested_answer}]> ")
            if reply is None:
                return snapshot.status
            if reply.strip():
                await controller.answer_question(reply)
            else:
                await controller.accept_question()
        elif action is not None:
            if args.auto_confirm:
                if action.action_id in confirmed:
                    logger.warning("cli.confirm.repeated", action_id=action.action_id)
                    return snapshot.status
                confirmed.add(action.action_id)
                await controller.confirm_action()
                continue
            reply = await _ask("Confirm? [y/N or deny reason]> ")
            if reply is None:
                return snapshot.status
            if reply.strip().lower() in {"y", "yes"}:
                await controller.confirm_action()
            else:
                await controller.deny_action(reason=reply.strip())
        else:
            if not controller.polling_active:
                await controller.poll_tick()
            await asyncio.sleep(idle_sleep)


async def _run(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if args.base_url:
        overrides["ARP_BASE_URL"] = args.base_url
    if args.poll_interval_ms is not None:
        overrides["ARP_POLL_INTERVAL_MS"] = args.poll_interval_ms
    if args.log_level:
        overrides["LOG_LEVEL"] = args.log_level
    settings = load_settings(**overrides)
    configure_logging(settings.LOG_LEVEL)

    async with ArpApiClient(settings) as api:
        controller = ChatSessionController(api, LocalActionExecutor(settings), settings)
        controller.subscribe(TranscriptPrinter())
        try:
            status = await drive(controller, args, settings)
        finally:
            controller.close()
            await controller.wait_for_pending_ticks()

    logger.info("cli.finished", status=status.value)
    return 0 if status == ExperimentStatus.SUCCESS else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run an ARP research workflow from the terminal.")
    parser.add_argument("prompt", help="Research request sent to the backend")
    parser.add_argument("--research-type", default="ai", choices=["ai", "quantum"], help="Research track")
    parser.add_argument("--project-root", default="", help="Local directory the backend should materialize files into")
    parser.add_argument("--base-url", default="", help="API base URL (defaults to ARP_BASE_URL)")
    parser.add_argument("--poll-interval-ms", type=int, default=None, help="Status polling interval in milliseconds")
    parser.add_argument("--log-level", default="WARNING", help="Log level for structured logs")
    parser.add_argument("--auto-confirm", action="store_true", help="Approve every confirmation action without asking")
    parser.add_argument("--auto-answer", action="store_true", help="Accept every suggested clarification answer")
    args = parser.parse_args()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
