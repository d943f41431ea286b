"""Klassifizierung von Watch-Notifications und Ableitung der Metrik-Labels.

Beide Funktionen sind total: unbekannte oder fehlende Felder führen zu
IGNORE bzw. leeren Labels, nie zu einer Exception.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from models import Apply, Delete, Event, EventLabels, WatchNotification

POD_KIND = "Pod"


class Action(str, Enum):
    IGNORE = "ignore"
    CREATED = "created"
    DELETED = "deleted"
    INFORMATIONAL = "informational"


@dataclass(frozen=True)
class ClassifiedAction:
    action: Action
    detail: Optional[str] = None


IGNORE = ClassifiedAction(Action.IGNORE)

# reason -> Aktion; alles andere wird ignoriert
REASON_ACTIONS: dict[str, ClassifiedAction] = {
    "Pulled": ClassifiedAction(Action.INFORMATIONAL, "image-pulled"),
    "Created": ClassifiedAction(Action.CREATED),
    "Scheduled": ClassifiedAction(Action.INFORMATIONAL, "scheduled"),
    "Started": ClassifiedAction(Action.INFORMATIONAL, "started"),
    "Updated": ClassifiedAction(Action.INFORMATIONAL, "updated"),
    "Killing": ClassifiedAction(Action.DELETED),
}


def classify_event(ev: Event) -> ClassifiedAction:
    if ev.involved_object.kind != POD_KIND:
        return IGNORE
    if not isinstance(ev.reason, str):
        return IGNORE
    return REASON_ACTIONS.get(ev.reason, IGNORE)


def classify(notification: WatchNotification) -> ClassifiedAction:
    """Ordnet einer Notification genau eine Aktion zu.

    Apply und Delete werden gleich behandelt: das Löschen eines Pods kommt als
    Apply eines "Killing"-Events, nicht als Delete. Entscheidend ist nur der
    reason des Events. Init/InitDone/Error behandelt die Schleife selbst.
    """
    if isinstance(notification, (Apply, Delete)):
        return classify_event(notification.event)
    return IGNORE


def format_timestamp(ts: Optional[datetime]) -> str:
    """RFC3339 in UTC mit Millisekunden, z.B. 2024-01-02T03:04:05.123Z."""
    if ts is None:
        return ""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    try:
        ts = ts.astimezone(timezone.utc)
    except OverflowError:
        # Offset schiebt das Datum aus dem darstellbaren Bereich
        return ""
    return ts.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def extract_labels(ev: Event) -> EventLabels:
    return EventLabels(
        time=format_timestamp(ev.first_timestamp),
        object_id=ev.involved_object.uid or "",
    )
