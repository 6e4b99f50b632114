"""Tests for active-time accounting."""

from practicum.services import timer


def _session(**overrides):
    session = {
        "id": 1,
        "status": "active",
        "started_at": "2026-03-02T09:00:00+00:00",
        "paused_at": None,
        "pause_history": [],
        "total_active_time_seconds": 0,
        "max_duration_minutes": 60,
    }
    session.update(overrides)
    return session


class TestActiveTime:

    def test_active_session_counts_time_since_start(self):
        assert timer.current_active_seconds(_session(), "2026-03-02T09:10:00+00:00") == 600

    def test_paused_session_is_frozen(self):
        session = _session(status="paused", total_active_time_seconds=300)
        assert timer.current_active_seconds(session, "2026-03-02T11:00:00+00:00") == 300

    def test_in_flight_time_starts_at_last_resume(self):
        session = _session(
            total_active_time_seconds=300,
            pause_history=[{
                "paused_at": "2026-03-02T09:05:00+00:00",
                "resumed_at": "2026-03-02T09:20:00+00:00",
                "duration_seconds": 900,
            }],
        )
        assert timer.current_active_seconds(session, "2026-03-02T09:21:00+00:00") == 360

    def test_clock_skew_never_goes_negative(self):
        assert timer.elapsed_seconds("2026-03-02T09:00:10+00:00", "2026-03-02T09:00:00+00:00") == 0

    def test_naive_and_z_timestamps(self):
        assert timer.elapsed_seconds("2026-03-02T09:00:00", "2026-03-02T09:01:00Z") == 60


class TestPauseHistory:

    def test_open_then_close_gives_one_closed_entry(self):
        session = _session()
        history, total = timer.open_pause(session, "2026-03-02T09:05:00+00:00")
        assert total == 300
        assert history == [{"paused_at": "2026-03-02T09:05:00+00:00", "resumed_at": None, "duration_seconds": 0}]

        paused = _session(status="paused", pause_history=history, total_active_time_seconds=total)
        closed = timer.close_pause(paused, "2026-03-02T09:07:30+00:00")
        assert len(closed) == 1
        assert closed[0]["resumed_at"] == "2026-03-02T09:07:30+00:00"
        assert closed[0]["duration_seconds"] == 150

    def test_close_does_not_touch_already_closed_entry(self):
        history = [{
            "paused_at": "2026-03-02T09:05:00+00:00",
            "resumed_at": "2026-03-02T09:06:00+00:00",
            "duration_seconds": 60,
        }]
        closed = timer.close_pause(_session(pause_history=history), "2026-03-02T09:30:00+00:00")
        assert closed == history


class TestComputeTimer:

    def test_remaining_and_warning(self):
        snapshot = timer.compute_timer(
            _session(), {"warning_before_timeout_minutes": 5}, "2026-03-02T09:56:00+00:00"
        )
        assert snapshot["total_active_time_seconds"] == 3360
        assert snapshot["remaining_seconds"] == 240
        assert snapshot["is_near_timeout"] is True
        assert snapshot["is_timed_out"] is False

    def test_timed_out(self):
        snapshot = timer.compute_timer(_session(), {}, "2026-03-02T10:30:00+00:00")
        assert snapshot["remaining_seconds"] == 0
        assert snapshot["is_timed_out"] is True

    def test_no_duration_limit(self):
        snapshot = timer.compute_timer(_session(max_duration_minutes=None), None, "2026-03-02T10:30:00+00:00")
        assert snapshot["remaining_seconds"] is None
        assert snapshot["is_near_timeout"] is False
        assert snapshot["is_timed_out"] is False
