from __future__ import annotations
import datetime as dt
import logging
import uuid
from typing import List, Optional

from .events import READING, EventBus, Subscription
from .models import CapturedRecord, ScaleReading, SessionInfo

logger = logging.getLogger(__name__)


class RecordSink:
    """Where captured weighings go. Persistence is someone else's problem."""

    def persist(self, record: CapturedRecord) -> None:
        raise NotImplementedError


class MemoryRecordSink(RecordSink):
    def __init__(self, limit: int = 1000) -> None:
        self.limit = limit
        self.records: List[CapturedRecord] = []

    def persist(self, record: CapturedRecord) -> None:
        self.records.append(record)
        if len(self.records) > self.limit:
            self.records = self.records[-self.limit:]


class SessionCapture:
    """
    Weighing session: while active, every accepted reading becomes a numbered
    record handed to the sink. Unsettled readings are skipped unless
    stable_only is off.
    """

    def __init__(self, bus: EventBus, sink: Optional[RecordSink] = None, stable_only: bool = True) -> None:
        self.bus = bus
        self.sink = sink or MemoryRecordSink()
        self.stable_only = stable_only
        self._sub: Optional[Subscription] = None
        self._session_id: Optional[str] = None
        self._name: Optional[str] = None
        self._started_at: Optional[dt.datetime] = None
        self._count = 0

    @property
    def active(self) -> bool:
        return self._sub is not None

    def info(self) -> SessionInfo:
        return SessionInfo(
            active=self.active,
            session_id=self._session_id,
            name=self._name,
            started_at=self._started_at,
            count=self._count,
        )

    def start(self, name: Optional[str] = None) -> SessionInfo:
        if self.active:
            self.stop()
        self._session_id = uuid.uuid4().hex[:12]
        self._name = name or dt.datetime.now().strftime("Session %Y-%m-%d %H:%M")
        self._started_at = dt.datetime.now(dt.timezone.utc)
        self._count = 0
        self._sub = self.bus.subscribe(READING, self._on_reading)
        logger.info(f"Capture session {self._session_id} started ({self._name})")
        return self.info()

    def stop(self) -> SessionInfo:
        if self._sub is not None:
            self._sub.unsubscribe()
            self._sub = None
            logger.info(f"Capture session {self._session_id} stopped after {self._count} records")
        return self.info()

    def _on_reading(self, reading: ScaleReading) -> None:
        if self._session_id is None or (self.stable_only and not reading.stable):
            return
        self._count += 1
        record = CapturedRecord(session_id=self._session_id, sequence=self._count, reading=reading)
        self.sink.persist(record)
