from __future__ import annotations

from typing import Callable

from arp_client.core.logger import get_logger
from arp_client.state.session_state import ExperimentSession

logger = get_logger(__name__)

SnapshotListener = Callable[[ExperimentSession], None]


class SnapshotBus:
    """Fan-out of session snapshots to presentation layers."""

    def __init__(self) -> None:
        self._listeners: list[SnapshotListener] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def deliver(self, listener: SnapshotListener, snapshot: ExperimentSession) -> None:
        try:
            # one copy per listener
            listener(snapshot.model_copy(deep=True))
        except Exception:
            logger.exception("session.listener.error", listener=getattr(listener, "__name__", repr(listener)))

    def publish(self, snapshot: ExperimentSession) -> None:
        for listener in list(self._listeners):
            self.deliver(listener, snapshot)

    def clear(self) -> None:
        self._listeners.clear()
