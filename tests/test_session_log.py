"""Append-only punch log of a training session."""

import pytest

from boxing_board.MessageDecoder import PunchEvent
from boxing_board.SessionLog import PunchRecord, SessionLog, append_punch

ZONES = {1: "upper", 2: "lower"}


def append(log, event, received_at_ms=1000):
    return append_punch(log, event, zones=ZONES, derived_force_scale=1.1, received_at_ms=received_at_ms)


class TestAppend:

    def test_count_and_peak_follow_appends(self):
        forces = [1.2, 3.4, 0.5, 3.4, 2.0]
        log = SessionLog.empty()
        for force in forces:
            log = append(log, PunchEvent(channel=1, force=force))
        assert log.total_count == len(forces) == len(log)
        assert log.peak_force == max(forces)
        assert [r.force for r in log.records] == forces

    def test_append_returns_new_log(self):
        empty = SessionLog.empty()
        log = append(empty, PunchEvent(force=1.0))
        assert empty.total_count == 0
        assert empty.records == ()
        assert log.total_count == 1

    def test_record_fields_from_event(self):
        event = PunchEvent(
            channel=2, force=2.0, zone="body", combined_force=2.7,
            bpm=110, punch_number=9, timestamp_ms=5555,
        )
        record = append(SessionLog.empty(), event).records[0]
        assert record == PunchRecord(
            timestamp_ms=5555, channel=2, zone="body", force=2.0,
            derived_force=2.7, cadence=110, sequence_number=9,
        )

    def test_missing_fields_are_derived(self):
        log = append(SessionLog.empty(), PunchEvent(channel=1, force=1.0))
        log = append(log, PunchEvent(channel=2, force=2.0), received_at_ms=2000)
        first, second = log.records
        assert first.zone == "upper"
        assert second.zone == "lower"
        assert second.derived_force == pytest.approx(2.2)
        assert second.timestamp_ms == 2000
        assert second.cadence is None
        assert [first.sequence_number, second.sequence_number] == [1, 2]

    def test_duplicates_are_kept(self):
        event = PunchEvent(force=1.0, punch_number=4)
        log = append(append(SessionLog.empty(), event), event)
        assert log.total_count == 2


class TestQueries:

    @pytest.fixture
    def log(self):
        log = SessionLog.empty()
        for n, (channel, force) in enumerate([(1, 1.0), (2, 3.0), (1, 2.0)], start=1):
            log = append(log, PunchEvent(channel=channel, force=force, punch_number=n * 2 - 1))
        return log

    def test_empty_log_averages(self):
        empty = SessionLog.empty()
        assert empty.average_force() == 0.0
        assert empty.forces().size == 0
        assert empty.missing_sequence_numbers() == []

    def test_average_force(self, log):
        assert log.average_force() == pytest.approx(2.0)

    def test_records_for_channel(self, log):
        assert [r.force for r in log.records_for_channel(1)] == [1.0, 2.0]

    def test_missing_sequence_numbers(self, log):
        # punch numbers 1, 3, 5
        assert log.missing_sequence_numbers() == [2, 4]

    def test_to_dataframe(self, log):
        frame = log.to_dataframe()
        assert list(frame.columns) == [
            "sequence_number", "timestamp_ms", "channel", "zone",
            "force", "derived_force", "cadence",
        ]
        assert len(frame) == 3
        assert frame["force"].max() == log.peak_force
        assert list(frame["zone"]) == ["upper", "lower", "upper"]

    def test_empty_dataframe_has_columns(self):
        frame = SessionLog.empty().to_dataframe()
        assert frame.empty
        assert "force" in frame.columns
