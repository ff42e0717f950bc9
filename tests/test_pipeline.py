"""
test_pipeline.py - Integration tests for the two-lane pipeline

Runs the real lanes with a mocked effector, surface and frame source.
"""

import threading
import time

import numpy as np
import pytest
from unittest.mock import MagicMock, call

from alarm_state import AlarmSignal, AlarmState
from color_detector import Frame, detect
from errors import FrameSourceError
from pipeline import LatestFrameSlot, SentinelPipeline


def wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def make_frame(rgb) -> Frame:
    pixels = np.zeros((40, 40, 3), dtype=np.uint8)
    pixels[:, :] = rgb
    return Frame(pixels)


GREEN = (0, 200, 0)
BLUE = (0, 0, 255)


@pytest.fixture
def effector():
    eff = MagicMock()
    eff.activate.side_effect = lambda: MagicMock(name="session")
    return eff


@pytest.fixture
def collaborators():
    return {
        "surface": MagicMock(name="surface"),
        "source": MagicMock(name="source"),
        "on_error": MagicMock(name="on_error"),
    }


@pytest.fixture
def pipeline(effector, collaborators):
    pipe = SentinelPipeline(effector, shutdown_timeout=2.0, **collaborators)
    yield pipe
    pipe.shutdown()


def feed(pipeline, frame):
    """Submit a frame and wait until it has been analyzed"""
    analyzed = pipeline.frames_analyzed
    assert pipeline.submit_frame(frame)
    assert wait_until(lambda: pipeline.frames_analyzed > analyzed)


class TestLatestFrameSlot:
    """Tests for keep-only-latest backpressure"""

    def test_newer_frame_replaces_pending(self):
        slot = LatestFrameSlot()
        first, second = make_frame(GREEN), make_frame(BLUE)
        slot.put(first)
        slot.put(second)
        assert slot.take(timeout=0) is second
        assert slot.dropped == 1

    def test_take_times_out(self):
        assert LatestFrameSlot().take(timeout=0.01) is None

    def test_close_wakes_waiter(self):
        slot = LatestFrameSlot()
        result = []
        waiter = threading.Thread(target=lambda: result.append(slot.take()))
        waiter.start()
        slot.close()
        waiter.join(1.0)
        assert result == [None]
        assert not slot.put(make_frame(GREEN))

    def test_clear_counts_drop(self):
        slot = LatestFrameSlot()
        slot.put(make_frame(GREEN))
        slot.clear()
        assert slot.dropped == 1
        assert slot.take(timeout=0) is None

    def test_clear_starts_new_epoch(self):
        slot = LatestFrameSlot()
        slot.put(make_frame(GREEN))
        assert slot.take_stamped(timeout=0)[1] == 0
        assert slot.clear() == 1
        frame = make_frame(BLUE)
        slot.put(frame)
        assert slot.take_stamped(timeout=0) == (frame, 1)


class TestAuthorization:
    """Tests for the permission gate"""

    def test_dormant_until_authorized(self, pipeline, effector):
        assert not pipeline.is_running
        assert not pipeline.submit_frame(make_frame(BLUE))
        time.sleep(0.05)
        effector.activate.assert_not_called()
        assert pipeline.frames_analyzed == 0

    def test_authorize_arms(self, pipeline, collaborators):
        signals = []
        pipeline.state_machine.add_listener(lambda signal, state: signals.append(signal))
        assert pipeline.authorize()
        assert wait_until(lambda: signals == [AlarmSignal.ARM])
        collaborators["source"].acquire.assert_called_once()
        collaborators["surface"].set_preview_visible.assert_called_with(True)

    def test_source_unavailable_stays_dormant(self, pipeline, collaborators):
        error = FrameSourceError("permission denied")
        collaborators["source"].acquire.side_effect = error
        assert not pipeline.authorize()
        assert not pipeline.is_running
        collaborators["on_error"].assert_called_once_with(error)


class TestScenarios:
    """End-to-end scenarios through both lanes"""

    def test_green_green_absent(self, pipeline, effector):
        """Test [green, green, no-green] triggers exactly once"""
        states = []
        signals = []
        pipeline.state_machine.add_listener(lambda signal, state: signals.append(signal))
        pipeline.authorize()

        for rgb in (GREEN, GREEN, BLUE):
            feed(pipeline, make_frame(rgb))
            if rgb == BLUE:
                assert wait_until(lambda: pipeline.state is AlarmState.TRIGGERING)
            states.append(pipeline.state)

        assert states == [AlarmState.MONITORING, AlarmState.MONITORING, AlarmState.TRIGGERING]
        assert signals.count(AlarmSignal.TRIGGER) == 1
        assert effector.activate.call_count == 1

    def test_trigger_hides_preview(self, pipeline, collaborators):
        pipeline.authorize()
        feed(pipeline, make_frame(BLUE))
        surface = collaborators["surface"]
        assert wait_until(lambda: surface.set_preview_visible.call_args == call(False))
        assert pipeline.state is AlarmState.TRIGGERING

    def test_presence_keeps_alarm(self, pipeline, effector):
        pipeline.authorize()
        feed(pipeline, make_frame(BLUE))
        assert wait_until(lambda: pipeline.state is AlarmState.TRIGGERING)
        for _ in range(3):
            feed(pipeline, make_frame(GREEN))
        time.sleep(0.05)
        assert pipeline.state is AlarmState.TRIGGERING
        effector.deactivate.assert_not_called()

    def test_stop_silences_and_rearms(self, pipeline, effector, collaborators):
        """Test stop while triggering silences, re-arms and re-acquires the source"""
        signals = []
        pipeline.state_machine.add_listener(lambda signal, state: signals.append(signal))
        pipeline.authorize()
        feed(pipeline, make_frame(BLUE))
        assert wait_until(lambda: pipeline.state is AlarmState.TRIGGERING)
        session = pipeline.state_machine.session

        pipeline.request_stop()

        assert wait_until(lambda: AlarmSignal.REARM in signals)
        assert pipeline.state is AlarmState.MONITORING
        assert signals[-2:] == [AlarmSignal.SILENCE, AlarmSignal.REARM]
        effector.deactivate.assert_called_once_with(session)
        assert collaborators["source"].acquire.call_count == 2
        collaborators["surface"].set_preview_visible.assert_called_with(True)

    def test_stop_while_monitoring_is_noop(self, pipeline, effector):
        pipeline.authorize()
        feed(pipeline, make_frame(GREEN))
        pipeline.request_stop()
        time.sleep(0.05)
        assert pipeline.state is AlarmState.MONITORING
        effector.activate.assert_not_called()
        effector.deactivate.assert_not_called()

    def test_keeps_only_latest_frame(self, effector):
        """Test frames 1, 2, 3 during analysis of frame 1: only 1 and 3 analyzed"""
        analyzed = []
        in_flight = threading.Event()
        release = threading.Event()

        def slow_detector(frame, color_range, stride):
            analyzed.append(frame)
            if len(analyzed) == 1:
                in_flight.set()
                release.wait(2.0)
            return True

        pipe = SentinelPipeline(effector, detector=slow_detector)
        try:
            pipe.authorize()
            frames = [make_frame(GREEN) for _ in range(3)]

            pipe.submit_frame(frames[0])
            assert in_flight.wait(2.0)
            pipe.submit_frame(frames[1])
            pipe.submit_frame(frames[2])
            release.set()

            assert wait_until(lambda: len(analyzed) == 2)
            time.sleep(0.05)
            assert analyzed == [frames[0], frames[2]]
            assert pipe.frames_dropped == 1
        finally:
            release.set()
            pipe.shutdown()

    def test_in_flight_result_does_not_outlive_stop(self, effector):
        """Test an absent frame still being analyzed at stop cannot re-trigger"""
        held = make_frame(BLUE)
        in_flight = threading.Event()
        release = threading.Event()
        signals = []

        def slow_detector(frame, color_range, stride):
            if frame is held:
                in_flight.set()
                release.wait(2.0)
            return detect(frame, color_range, stride)

        pipe = SentinelPipeline(effector, detector=slow_detector)
        pipe.state_machine.add_listener(lambda signal, state: signals.append(signal))
        try:
            pipe.authorize()
            feed(pipe, make_frame(BLUE))
            assert wait_until(lambda: pipe.state is AlarmState.TRIGGERING)

            pipe.submit_frame(held)
            assert in_flight.wait(2.0)
            pipe.request_stop()
            assert wait_until(lambda: AlarmSignal.REARM in signals)

            analyzed = pipe.frames_analyzed
            release.set()
            assert wait_until(lambda: pipe.frames_analyzed > analyzed)
            time.sleep(0.05)

            assert pipe.state is AlarmState.MONITORING
            assert effector.activate.call_count == 1

            # Frames captured after re-arm still trigger
            feed(pipe, make_frame(BLUE))
            assert wait_until(lambda: pipe.state is AlarmState.TRIGGERING)
            assert effector.activate.call_count == 2
        finally:
            release.set()
            pipe.shutdown()

    def test_detector_error_skips_frame(self, effector):
        calls = []

        def flaky_detector(frame, color_range, stride):
            calls.append(frame)
            if len(calls) == 1:
                raise RuntimeError("bad frame")
            return False

        pipe = SentinelPipeline(effector, detector=flaky_detector)
        try:
            pipe.authorize()
            pipe.submit_frame(make_frame(GREEN))
            assert wait_until(lambda: len(calls) == 1)
            pipe.submit_frame(make_frame(BLUE))
            assert wait_until(lambda: pipe.state is AlarmState.TRIGGERING)
        finally:
            pipe.shutdown()


class TestFailureAndShutdown:
    """Tests for re-acquire failures and cancellation"""

    def test_reacquire_failure_stops_pipeline(self, pipeline, effector, collaborators):
        error = FrameSourceError("camera gone")
        collaborators["source"].acquire.side_effect = [None, error]
        pipeline.authorize()
        feed(pipeline, make_frame(BLUE))
        assert wait_until(lambda: pipeline.state is AlarmState.TRIGGERING)

        pipeline.request_stop()

        assert wait_until(lambda: not pipeline.is_running)
        collaborators["on_error"].assert_called_once_with(error)
        effector.deactivate.assert_called_once()
        assert wait_until(lambda: collaborators["source"].release.called)
        assert not pipeline.submit_frame(make_frame(BLUE))
        # Lanes are gone; authorize must not report a running pipeline
        assert not pipeline.authorize()
        assert collaborators["source"].acquire.call_count == 2

    def test_shutdown_silences_active_alarm(self, pipeline, effector, collaborators):
        pipeline.authorize()
        feed(pipeline, make_frame(BLUE))
        assert wait_until(lambda: pipeline.state is AlarmState.TRIGGERING)
        session = pipeline.state_machine.session

        started = time.monotonic()
        pipeline.shutdown()

        assert time.monotonic() - started < 2.0
        effector.deactivate.assert_called_once_with(session)
        collaborators["source"].release.assert_called_once()
        assert pipeline.state is AlarmState.MONITORING
        assert not pipeline.is_running

    def test_shutdown_is_idempotent(self, pipeline, collaborators):
        pipeline.authorize()
        pipeline.shutdown()
        pipeline.shutdown()
        collaborators["source"].release.assert_called_once()

    def test_shutdown_before_authorize(self, pipeline, collaborators):
        pipeline.shutdown()
        assert not pipeline.authorize()
        collaborators["source"].acquire.assert_not_called()

    def test_context_manager(self, effector, collaborators):
        with SentinelPipeline(effector, **collaborators) as pipe:
            assert pipe.is_running
        assert not pipe.is_running
        collaborators["source"].release.assert_called_once()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
