from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from .MessageDecoder import ChannelSample, RealtimeTelemetry


@dataclass(frozen=True)
class ChannelReading:
    """
    Derived state of one sensing channel.

    `maximum` never drops below `current` or below its previous value, and
    `punch_count` never decreases; both only go back to zero through a reset.
    `detected` is true only for the message(s) in which a strike was flagged.
    """
    current: float = 0.0
    maximum: float = 0.0
    punch_count: int = 0
    detected: bool = False


@dataclass(frozen=True)
class TelemetrySnapshot:
    """The live dashboard state. Replaced, never mutated, on every telemetry message."""
    channels: Tuple[ChannelReading, ChannelReading] = field(
        default_factory=lambda: (ChannelReading(), ChannelReading())
    )
    total_punches: int = 0
    training_elapsed_ms: int = 0
    session_id: str = ""
    calibration_complete: bool = False
    detection_threshold: float = 0.8

    @classmethod
    def fresh(cls, session_id: str, detection_threshold: float) -> "TelemetrySnapshot":
        return cls(session_id=session_id, detection_threshold=detection_threshold)

    @property
    def channel_sum(self) -> int:
        return sum(c.punch_count for c in self.channels)

    def zeroed(self, session_id: str) -> "TelemetrySnapshot":
        """Counters back to zero under a new session id; calibration and threshold survive."""
        return replace(
            self,
            channels=(ChannelReading(), ChannelReading()),
            total_punches=0,
            training_elapsed_ms=0,
            session_id=session_id,
        )


# ---------- Reducer ----------

def _apply_channel(
    reading: ChannelReading,
    sample: ChannelSample,
    detection_mode: str,
    threshold: float,
) -> ChannelReading:
    maximum = max(reading.maximum, sample.current)
    if sample.has("max"):
        maximum = max(maximum, sample.max)

    punch_count = reading.punch_count
    if sample.has("punches"):
        punch_count = max(punch_count, sample.punches)

    detected = sample.detected
    if detection_mode == "level":
        detected = detected or sample.current >= threshold

    return ChannelReading(
        current=sample.current,
        maximum=maximum,
        punch_count=punch_count,
        detected=detected,
    )


def apply_telemetry(
    snapshot: TelemetrySnapshot,
    message: RealtimeTelemetry,
    *,
    detection_mode: str = "edge",
    local_elapsed_ms: Optional[int] = None,
) -> TelemetrySnapshot:
    """
    Fold one telemetry message into `snapshot`. Total: never raises.

    Fields the producer left out are held, except `current` and `detected`,
    which describe only this message. `local_elapsed_ms` stands in for
    training_time when the producer does not send it.
    """
    threshold = snapshot.detection_threshold
    if message.has("punch_threshold"):
        threshold = message.punch_threshold

    channels = tuple(
        _apply_channel(reading, sample, detection_mode, threshold)
        for reading, sample in zip(snapshot.channels, message.channels)
    )

    # The producer's explicit total wins; the local sum is only a fallback
    if message.has("total_punches"):
        total = message.total_punches
    else:
        total = sum(c.punch_count for c in channels)

    elapsed = snapshot.training_elapsed_ms
    if message.has("training_time"):
        elapsed = max(elapsed, message.training_time_ms)
    elif local_elapsed_ms is not None:
        elapsed = max(elapsed, int(local_elapsed_ms))

    session_id = snapshot.session_id
    if message.has("session_id") and message.session_id:
        session_id = message.session_id

    calibrated = snapshot.calibration_complete
    if message.has("learning_complete"):
        calibrated = calibrated or message.learning_complete

    return TelemetrySnapshot(
        channels=channels,
        total_punches=total,
        training_elapsed_ms=elapsed,
        session_id=session_id,
        calibration_complete=calibrated,
        detection_threshold=threshold,
    )


def telemetry_warnings(
    previous: TelemetrySnapshot,
    message: RealtimeTelemetry,
    updated: TelemetrySnapshot,
    channel_numbers: Sequence[int] = (1, 2),
) -> List[str]:
    """
    Soft protocol inconsistencies noticed while applying `message`.
    None of them stops processing; they are for logs and diagnostics.
    """
    warnings = []
    for number, before, sample in zip(channel_numbers, previous.channels, message.channels):
        if sample.has("punches") and sample.punches < before.punch_count:
            warnings.append(
                f"channel {number}: punch count went back from {before.punch_count} "
                f"to {sample.punches}; holding {before.punch_count}"
            )

    if message.has("total_punches") and message.total_punches != updated.channel_sum:
        warnings.append(
            f"total_punches={message.total_punches} disagrees with channel sum "
            f"{updated.channel_sum}; using the producer's total"
        )
    return warnings


def detected_strikes(
    snapshot: TelemetrySnapshot,
    channel_numbers: Sequence[int] = (1, 2),
) -> List[Tuple[int, float]]:
    """(channel, force) for every channel flagged as struck in this snapshot."""
    return [
        (number, reading.current)
        for number, reading in zip(channel_numbers, snapshot.channels)
        if reading.detected
    ]


# ---------- Dashboard helpers ----------

def zone_percentages(snapshot: TelemetrySnapshot, zones: Sequence[str]) -> Dict[str, int]:
    """
    Share of punches landed on each zone, rounded to whole percent.
    With no punches yet the zones are shown as an even split.
    """
    total = snapshot.total_punches
    if total <= 0:
        even = round(100 / len(zones))
        return {zone: even for zone in zones}
    return {
        zone: round(reading.punch_count * 100 / total)
        for zone, reading in zip(zones, snapshot.channels)
    }


def format_elapsed(milliseconds: int) -> str:
    """Training time as MM:SS."""
    milliseconds = max(0, int(milliseconds))
    minutes = milliseconds // 60000
    seconds = (milliseconds % 60000) // 1000
    return f"{minutes:02d}:{seconds:02d}"
