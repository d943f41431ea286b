from datetime import datetime
from typing import Optional

import pytest

from metrics import MetricsRegistry, declare_pod_counters
from models import Event, InvolvedObject


@pytest.fixture
def registry():
    """Isolated registry with all counters declared"""
    reg = MetricsRegistry()
    declare_pod_counters(reg)
    return reg


@pytest.fixture
def make_event():
    """Factory for Event snapshots"""
    def _make(
        reason: Optional[str] = "Created",
        kind: Optional[str] = "Pod",
        uid: Optional[str] = "abc-123",
        first_timestamp: Optional[datetime] = None,
        name: str = "my-pod.17a",
    ) -> Event:
        return Event(
            involved_object=InvolvedObject(kind=kind, uid=uid),
            reason=reason,
            first_timestamp=first_timestamp,
            name=name,
        )
    return _make
