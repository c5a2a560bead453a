from __future__ import annotations

import pytest

from chat_engine.state import GenerationEpoch, GenerationTracker


def test_token_goes_stale_after_advance():
    epoch = GenerationEpoch()
    token = epoch.token()
    assert token.valid

    epoch.advance()
    assert not token.valid
    assert epoch.token().valid


def test_tracker_stays_raised_while_any_generation_runs():
    events = []
    tracker = GenerationTracker(events.append)

    with tracker.track():
        with tracker.track():
            assert tracker.is_generating
        assert tracker.is_generating
    assert not tracker.is_generating
    assert events == [True, False]


def test_tracker_lowers_flag_on_error():
    tracker = GenerationTracker()
    with pytest.raises(ValueError):
        with tracker.track():
            raise ValueError("tier blew up")
    assert tracker.is_generating is False


def test_listener_errors_do_not_escape():
    def listener(value):
        raise RuntimeError("ui gone")

    tracker = GenerationTracker(listener)
    with tracker.track():
        pass
    assert tracker.is_generating is False
