import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

EVENT_PACK_METRICS = "continuity.pack_metrics"
EVENT_GOVERNOR_ACTION = "continuity.governor_action"
EVENT_SAFEGUARD = "continuity.safeguard"


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Subscriber = Callable[[TelemetryEvent], None]


class TelemetryBus:
    """Fire-and-forget fan-out of continuity telemetry.

    ``publish`` never raises: a failing subscriber is logged and the
    remaining subscribers still receive the event.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def publish(self, name: str, **payload: Any) -> TelemetryEvent:
        event = TelemetryEvent(name=name, payload=dict(payload))
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception as exc:
                logger.warning("telemetry subscriber failed for %s: %s", name, exc)
        return event

    def track_pack_metrics(self, provider: str, mode: str, cache_hit: bool, pack_bytes: int, injected_bytes: int) -> None:
        self.publish(
            EVENT_PACK_METRICS,
            provider=provider,
            mode=mode,
            cache_hit=cache_hit,
            pack_bytes=pack_bytes,
            injected_bytes=injected_bytes,
        )

    def track_governor_action(self, provider: str, mode: str, action: str, reasons_count: int) -> None:
        self.publish(
            EVENT_GOVERNOR_ACTION,
            provider=provider,
            mode=mode,
            action=action,
            reasons_count=reasons_count,
        )

    def track_safeguard(self, action: str, branch: str, memory_branch: str) -> None:
        self.publish(EVENT_SAFEGUARD, action=action, branch=branch, memory_branch=memory_branch)
