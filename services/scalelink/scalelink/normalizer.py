from __future__ import annotations
import datetime as dt
import logging
import math
import time
from typing import Callable, Optional

from .codecs.base import ReadingCandidate
from .errors import ReadingValidationError
from .models import ScaleReading

logger = logging.getLogger(__name__)


class ReadingNormalizer:
    """
    Turn codec output into emitted ScaleReadings.

    - weight must be finite, > 0 and below max_weight_kg
    - an EID read on its own is held for id_hold_s and attached to the next
      weight that carries no ID
    - a reading with the same animal key as the previous valid one, within
      dedupe_window_s and less than dedupe_tolerance_kg apart, is the same
      physical event and is dropped
    - timestamps are receipt time; device clocks are not trusted
    """

    def __init__(
        self,
        dedupe_window_s: float = 2.0,
        dedupe_tolerance_kg: float = 0.5,
        max_weight_kg: float = 10000.0,
        require_id: bool = False,
        id_hold_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.dedupe_window_s = dedupe_window_s
        self.dedupe_tolerance_kg = dedupe_tolerance_kg
        self.max_weight_kg = max_weight_kg
        self.require_id = require_id
        self.id_hold_s = id_hold_s
        self._clock = clock
        self._pending: Optional[ReadingCandidate] = None
        self._pending_at = 0.0
        self._last: Optional[ScaleReading] = None
        self._last_at = 0.0
        self.rejected = 0
        self.duplicates = 0

    def reset(self) -> None:
        self._pending = None
        self._last = None

    def validate(self, candidate: ReadingCandidate) -> float:
        weight = candidate.weight
        if weight is None:
            raise ReadingValidationError("missing weight", candidate.raw)
        if not math.isfinite(weight) or weight <= 0:
            raise ReadingValidationError(f"non-positive weight {weight}", candidate.raw)
        if weight >= self.max_weight_kg:
            raise ReadingValidationError(f"weight {weight} out of range", candidate.raw)
        if self.require_id and not candidate.has_ids:
            raise ReadingValidationError("missing animal identifier", candidate.raw)
        return weight

    def _merge_pending(self, candidate: ReadingCandidate, now: float) -> ReadingCandidate:
        pending = self._pending
        if pending is None:
            return candidate
        if now - self._pending_at > self.id_hold_s:
            logger.debug(f"Held ID {pending.electronic_id or pending.visual_id} expired")
            self._pending = None
            return candidate
        if candidate.has_ids:
            return candidate
        self._pending = None
        return ReadingCandidate(
            weight=candidate.weight,
            visual_id=pending.visual_id,
            electronic_id=pending.electronic_id,
            stable=candidate.stable,
            raw=f"{pending.raw} | {candidate.raw}",
        )

    def _is_duplicate(self, reading: ScaleReading, now: float) -> bool:
        last = self._last
        if last is None:
            return False
        return (
            reading.animal_key == last.animal_key
            and now - self._last_at < self.dedupe_window_s
            and abs(reading.weight - last.weight) < self.dedupe_tolerance_kg
        )

    def accept(self, candidate: ReadingCandidate) -> Optional[ScaleReading]:
        """Return the reading to emit, or None when it was held, rejected or a repeat."""
        now = self._clock()
        if candidate.weight is None and candidate.has_ids:
            self._pending = candidate
            self._pending_at = now
            logger.debug(f"Holding ID-only frame {candidate.raw!r}")
            return None
        candidate = self._merge_pending(candidate, now)
        try:
            weight = self.validate(candidate)
        except ReadingValidationError as e:
            self.rejected += 1
            logger.info(f"Reading rejected: {e}")
            return None
        reading = ScaleReading(
            weight=weight,
            visual_id=candidate.visual_id,
            electronic_id=candidate.electronic_id,
            stable=candidate.stable,
            timestamp=dt.datetime.now(dt.timezone.utc),
            source_raw=candidate.raw,
        )
        duplicate = self._is_duplicate(reading, now)
        self._last = reading
        self._last_at = now
        if duplicate:
            self.duplicates += 1
            logger.debug(f"Duplicate reading dropped: {reading.weight} kg {reading.animal_key}")
            return None
        return reading
