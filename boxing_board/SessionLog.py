from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .MessageDecoder import PunchEvent


@dataclass(frozen=True)
class PunchRecord:
    """One strike as logged for the training session. Immutable once appended."""
    timestamp_ms: int
    channel: int
    zone: str
    force: float
    derived_force: float
    cadence: Optional[int]
    sequence_number: int


@dataclass(frozen=True)
class SessionLog:
    """
    Append-only record of the punches in one training session.
    Arrival order is kept as-is; `total_count` always equals len(records)
    and `peak_force` is the largest force seen since the last reset.
    """
    records: Tuple[PunchRecord, ...] = ()
    total_count: int = 0
    peak_force: float = 0.0

    @classmethod
    def empty(cls) -> "SessionLog":
        return cls()

    def __len__(self) -> int:
        return self.total_count

    def forces(self) -> np.ndarray:
        return np.fromiter((r.force for r in self.records), dtype=np.float64, count=self.total_count)

    def average_force(self) -> float:
        """Mean force over the session, 0.0 before the first punch."""
        if not self.total_count:
            return 0.0
        return float(np.mean(self.forces()))

    def records_for_channel(self, channel: int) -> List[PunchRecord]:
        return [r for r in self.records if r.channel == channel]

    def missing_sequence_numbers(self) -> List[int]:
        """
        Sequence numbers skipped by the producer, i.e. punch events that were
        probably lost on the link. Only gaps between records are reported.
        """
        if self.total_count < 2:
            return []
        seen = {r.sequence_number for r in self.records}
        low, high = min(seen), max(seen)
        return [n for n in range(low, high + 1) if n not in seen]

    def to_dataframe(self) -> pd.DataFrame:
        """One row per punch, in arrival order."""
        columns = [
            "sequence_number", "timestamp_ms", "channel", "zone",
            "force", "derived_force", "cadence",
        ]
        rows = [
            {
                "sequence_number": r.sequence_number,
                "timestamp_ms": r.timestamp_ms,
                "channel": r.channel,
                "zone": r.zone,
                "force": r.force,
                "derived_force": r.derived_force,
                "cadence": r.cadence,
            }
            for r in self.records
        ]
        return pd.DataFrame(rows, columns=columns)


def append_punch(
    log: SessionLog,
    event: PunchEvent,
    *,
    zones: Dict[int, str],
    derived_force_scale: float,
    received_at_ms: int,
) -> SessionLog:
    """
    Return `log` with `event` appended. Every event is kept, duplicates
    included; the aggregates are carried forward from the previous log
    rather than recomputed.
    """
    if event.combined_force is not None:
        derived = event.combined_force
    else:
        derived = event.force * derived_force_scale

    record = PunchRecord(
        timestamp_ms=event.timestamp_ms if event.timestamp_ms is not None else int(received_at_ms),
        channel=event.channel,
        zone=event.zone or zones.get(event.channel, f"zone {event.channel}"),
        force=event.force,
        derived_force=derived,
        cadence=event.bpm,
        sequence_number=(
            event.punch_number if event.punch_number is not None else log.total_count + 1
        ),
    )

    return SessionLog(
        records=log.records + (record,),
        total_count=log.total_count + 1,
        peak_force=max(log.peak_force, record.force),
    )
