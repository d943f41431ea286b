from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class InvolvedObject(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Kind des betroffenen Objekts ("Pod", "Node", ...)
    kind: Optional[str] = None

    # Kubernetes-UID des betroffenen Objekts
    uid: Optional[str] = None


class Event(BaseModel):
    """Unveränderlicher Schnappschuss eines core/v1 Events."""

    model_config = ConfigDict(frozen=True)

    # Das Objekt, um das es im Event geht (nicht das Event selbst)
    involved_object: InvolvedObject = InvolvedObject()

    # Kurzer maschinenlesbarer Grund ("Created", "Killing", ...)
    reason: Optional[str] = None

    # Wann der Zustand zuerst beobachtet wurde
    first_timestamp: Optional[datetime] = None

    # Name des Event-Objekts, nur fürs Logging
    name: str = ""

    @classmethod
    def from_k8s(cls, obj: Any) -> "Event":
        """Baut ein Event aus einem kubernetes CoreV1Event, fehlende Felder sind erlaubt."""
        involved = getattr(obj, "involved_object", None)
        metadata = getattr(obj, "metadata", None)
        first_timestamp = getattr(obj, "first_timestamp", None)
        return cls(
            involved_object=InvolvedObject(
                kind=getattr(involved, "kind", None),
                uid=getattr(involved, "uid", None),
            ),
            reason=getattr(obj, "reason", None),
            first_timestamp=first_timestamp if isinstance(first_timestamp, datetime) else None,
            name=getattr(metadata, "name", None) or "",
        )


class EventLabels(BaseModel):
    model_config = ConfigDict(frozen=True)

    time: str = ""
    object_id: str = ""

    def as_metric_labels(self) -> dict[str, str]:
        return {"event_time": self.time, "pod_id": self.object_id}


# ============================================================
# WATCH NOTIFICATIONS
# ============================================================

class WatchNotification(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class Init(WatchNotification):
    """Stream wird (neu) aufgebaut."""


class InitDone(WatchNotification):
    """Initiale Synchronisation fertig, alles danach ist live."""


class Apply(WatchNotification):
    event: Event


class Delete(WatchNotification):
    event: Event


class Error(WatchNotification):
    cause: BaseException
