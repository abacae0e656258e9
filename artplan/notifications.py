"""
Planning notifications.

Sinks are fire-and-forget: a failing sink logs a warning and the planning
pass carries on. Desktop notifications use notify-send (freedesktop
compliant); chat/ops channels are reached through a JSON webhook.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Optional, Protocol

import requests

from artplan.lib.config import NotificationConfig
from artplan.planning.models import ARTPlan

logger = logging.getLogger(__name__)


VALID_URGENCIES = ("low", "normal", "critical")
MAX_NOTIFICATION_LENGTH = 200

EVENT_PLAN_COMMITTED = "plan_committed"
EVENT_READINESS_LOW = "readiness_below_threshold"
EVENT_SUGGESTIONS = "optimization_suggestions"


@dataclass
class PlanEvent:
    kind: str
    pi_id: str
    team_id: str
    title: str
    message: str
    urgency: str = "normal"
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "event": self.kind,
            "pi_id": self.pi_id,
            "team_id": self.team_id,
            "title": self.title,
            "message": self.message,
            "urgency": self.urgency,
            "data": self.data,
        }


class Sink(Protocol):
    name: str

    def send(self, event: PlanEvent) -> None: ...


class LogSink:
    name = "log"

    def send(self, event: PlanEvent) -> None:
        level = logging.WARNING if event.urgency == "critical" else logging.INFO
        logger.log(level, f"[PLAN] {event.title}: {event.message}")


class DesktopSink:
    """Send desktop notifications through notify-send."""
    name = "desktop"

    def send(self, event: PlanEvent) -> None:
        urgency = event.urgency
        if urgency not in VALID_URGENCIES:
            logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
            urgency = "normal"

        if not shutil.which("notify-send"):
            logger.debug("notify-send not found, skipping notification")
            return

        message = event.message
        if len(message) > MAX_NOTIFICATION_LENGTH:
            message = message[:MAX_NOTIFICATION_LENGTH] + "..."

        result = subprocess.run([
            "notify-send",
            "--urgency", urgency,
            "--app-name", "artplan",
            event.title,
            message,
        ], capture_output=True, text=True, timeout=5)

        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")


class WebhookSink:
    """POST events as JSON to a chat or ops webhook."""
    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def send(self, event: PlanEvent) -> None:
        response = self._session.post(self.url, json=event.to_dict(), timeout=self.timeout)
        response.raise_for_status()


class Notifier:
    """Fans events out to every sink. Never raises."""

    def __init__(self, sinks: Optional[list] = None):
        self.sinks = sinks if sinks is not None else [LogSink()]

    @classmethod
    def from_config(cls, config: NotificationConfig) -> "Notifier":
        sinks = [LogSink()]
        if config.desktop:
            sinks.append(DesktopSink())
        if config.webhook_url:
            sinks.append(WebhookSink(config.webhook_url, config.webhook_timeout))
        return cls(sinks)

    def publish(self, event: PlanEvent) -> int:
        """Send to all sinks. Returns how many succeeded."""
        delivered = 0
        for sink in self.sinks:
            try:
                sink.send(event)
                delivered += 1
            except (requests.RequestException, subprocess.SubprocessError, OSError) as e:
                logger.warning(f"Notification sink '{sink.name}' failed for {event.kind}: {e}")
            except Exception as e:
                logger.warning(f"Notification sink '{sink.name}' raised unexpectedly for {event.kind}: {e}")
        return delivered

    def plan_committed(self, plan: ARTPlan) -> int:
        placed = sum(len(it.allocated_items) for it in plan.iterations)
        return self.publish(PlanEvent(
            kind=EVENT_PLAN_COMMITTED,
            pi_id=plan.pi.id,
            team_id=plan.team_id,
            title=f"artplan: {plan.pi.id}/{plan.team_id}",
            message=(
                f"Plan committed: {placed} item(s) over {len(plan.iterations)} iteration(s), "
                f"readiness {plan.readiness_score:.0%}"
            ),
            data={"readiness": round(plan.readiness_score, 4), "placed": placed,
                  "unplaced": [u.item_id for u in plan.unplaced]},
        ))

    def readiness_below_threshold(self, plan: ARTPlan, threshold: float) -> int:
        return self.publish(PlanEvent(
            kind=EVENT_READINESS_LOW,
            pi_id=plan.pi.id,
            team_id=plan.team_id,
            title=f"artplan: {plan.pi.id}/{plan.team_id}",
            message=f"Readiness {plan.readiness_score:.0%} is below {threshold:.0%}",
            urgency="critical",
            data={"readiness": round(plan.readiness_score, 4), "threshold": threshold},
        ))

    def optimization_suggestions(self, plan: ARTPlan, limit: int = 5) -> int:
        if not plan.actions:
            return 0
        top = plan.actions[:limit]
        return self.publish(PlanEvent(
            kind=EVENT_SUGGESTIONS,
            pi_id=plan.pi.id,
            team_id=plan.team_id,
            title=f"artplan: {plan.pi.id}/{plan.team_id}",
            message="; ".join(a.description for a in top),
            urgency="low",
            data={"actions": [a.to_dict() for a in top]},
        ))
