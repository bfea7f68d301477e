"""
Tests for Layer 1: orientation estimation, alignment and the sample stream.
"""
import json
import math
import threading
from types import SimpleNamespace

import pytest

from error_handlers import InvalidSampleError
from layer1_orientation import (
    AccelerationSample,
    AlignmentMonitor,
    AlignmentResult,
    Orientation,
    OrientationFeed,
    estimate,
    evaluate
)
from layer1_orientation.sensor_stream import AccelerometerSubscriber, parse_sample


class TestEstimate:
    """Test gravity-vector tilt estimation."""

    def test_flat_device_is_level(self):
        o = estimate(AccelerationSample(0.0, 0.0, 9.81))
        assert o.pitch == pytest.approx(0.0)
        assert o.roll == pytest.approx(0.0)

    def test_zero_vector_is_defined(self):
        o = estimate(AccelerationSample(0.0, 0.0, 0.0))
        assert o.pitch == 0.0
        assert o.roll == 0.0

    @pytest.mark.parametrize("x, expected_pitch", [(9.81, -90.0), (-9.81, 90.0), (0.5, -90.0)])
    def test_x_only_gives_vertical_pitch_and_zero_roll(self, x, expected_pitch):
        o = estimate(AccelerationSample(x, 0.0, 0.0))
        assert o.pitch == pytest.approx(expected_pitch)
        assert o.roll == 0.0

    def test_roll_follows_y_against_z(self):
        o = estimate(AccelerationSample(0.0, 1.0, 1.0))
        assert o.roll == pytest.approx(45.0)
        assert o.pitch == pytest.approx(0.0)

    def test_pitch_uses_magnitude_of_y_and_z(self):
        o = estimate(AccelerationSample(-1.0, 0.6, 0.8))
        assert o.pitch == pytest.approx(45.0)
        assert o.roll == pytest.approx(math.degrees(math.atan2(0.6, 0.8)))

    def test_samples_are_independent(self):
        first = estimate(AccelerationSample(0.3, 0.1, 9.7))
        estimate(AccelerationSample(-5.0, 4.0, 1.0))
        assert estimate(AccelerationSample(0.3, 0.1, 9.7)) == first


class TestEvaluate:
    """Test alignment flags against a target orientation."""

    def test_no_target_is_never_aligned(self):
        result = evaluate(Orientation(12.0, -4.0), None)
        assert result == AlignmentResult(False, False)
        assert not result.aligned

    def test_within_tolerance_is_aligned(self):
        result = evaluate(Orientation(9.9, 1.0), Orientation(8.0, 0.0))
        assert result.pitch_aligned
        assert result.roll_aligned
        assert result.aligned

    def test_boundary_difference_is_not_aligned(self):
        result = evaluate(Orientation(10.0, 0.0), Orientation(8.0, 0.0), tolerance_deg=2.0)
        assert not result.pitch_aligned
        assert result.roll_aligned

    def test_axes_are_independent(self):
        result = evaluate(Orientation(0.0, 30.0), Orientation(0.5, 0.0))
        assert result.pitch_aligned
        assert not result.roll_aligned
        assert not result.aligned

    def test_negative_difference_uses_absolute_value(self):
        result = evaluate(Orientation(-1.5, -20.0), Orientation(0.0, -21.9))
        assert result.pitch_aligned
        assert result.roll_aligned

    def test_custom_tolerance(self):
        result = evaluate(Orientation(5.0, 5.0), Orientation(0.0, 0.0), tolerance_deg=6.0)
        assert result.aligned


class TestOrientationFeed:
    """Test latest-value orientation publication."""

    def test_starts_level(self, feed):
        assert feed.latest() == Orientation(0.0, 0.0)
        assert feed.sample_count == 0

    def test_latest_value_wins(self, feed):
        feed.publish(AccelerationSample(0.0, 1.0, 1.0))
        last = feed.publish(AccelerationSample(0.0, 0.0, 1.0))
        assert feed.latest() == last
        assert feed.sample_count == 2

    def test_listeners_receive_each_orientation(self, feed):
        received = []
        feed.subscribe(received.append)
        feed.publish(AccelerationSample(0.0, 1.0, 1.0))
        assert len(received) == 1
        assert received[0].roll == pytest.approx(45.0)

    def test_failing_listener_does_not_stop_publication(self, feed):
        received = []

        def broken(_):
            raise RuntimeError("boom")

        feed.subscribe(broken)
        feed.subscribe(received.append)
        feed.publish(AccelerationSample(0.0, 0.0, 1.0))
        assert len(received) == 1
        assert feed.sample_count == 1


class TestAlignmentMonitor:
    """Test alignment recomputation on orientation and reference changes."""

    def test_not_aligned_without_reference(self, feed):
        monitor = AlignmentMonitor(feed)
        feed.publish(AccelerationSample(0.0, 0.0, 1.0))
        assert monitor.current() == AlignmentResult(False, False)

    def test_follows_reference_and_orientation(self, feed, reference_store):
        monitor = AlignmentMonitor(feed)
        reference_store.subscribe(monitor.on_reference)

        feed.publish(AccelerationSample(0.0, 0.0, 1.0))
        reference_store.set(b"golden", Orientation(0.0, 0.0))
        assert monitor.current().aligned

        feed.publish(AccelerationSample(0.0, 1.0, 1.0))  # roll 45
        assert monitor.current().pitch_aligned
        assert not monitor.current().roll_aligned

        reference_store.clear()
        assert monitor.current() == AlignmentResult(False, False)

    def test_late_notification_keeps_alignment_on_latest_orientation(self, feed, reference_store):
        held = threading.Event()
        entered = threading.Event()
        first_call = []

        def hold_first(orientation):
            if not first_call:
                first_call.append(orientation)
                entered.set()
                held.wait(timeout=5)

        # Registered before the monitor so it delays the monitor's first callback
        feed.subscribe(hold_first)
        monitor = AlignmentMonitor(feed)
        reference_store.subscribe(monitor.on_reference)
        reference_store.set(b"golden", Orientation(0.0, 0.0))

        tilted = threading.Thread(target=feed.publish, args=(AccelerationSample(0.0, 1.0, 1.0),))
        tilted.start()
        assert entered.wait(timeout=2)

        feed.publish(AccelerationSample(0.0, 0.0, 1.0))
        held.set()
        tilted.join(timeout=5)

        assert feed.latest().roll == pytest.approx(0.0)
        assert monitor.current() == evaluate(feed.latest(), Orientation(0.0, 0.0))
        assert monitor.current().aligned


class TestParseSample:
    """Test accelerometer payload parsing."""

    def test_json_bytes(self):
        sample = parse_sample(json.dumps({"x": 0.1, "y": -0.2, "z": 9.8}).encode())
        assert sample == AccelerationSample(0.1, -0.2, 9.8)

    def test_csv_string(self):
        assert parse_sample(" 1, 2 ,3 ") == AccelerationSample(1.0, 2.0, 3.0)

    def test_dict_with_numeric_strings(self):
        assert parse_sample({"x": "1", "y": "0", "z": "0"}) == AccelerationSample(1.0, 0.0, 0.0)

    @pytest.mark.parametrize("payload", [
        b"not-a-sample",
        "1,2",
        '{"x": 1, "y": 2}',
        '{"x": 1, "y": 2, "z": "abc"}',
        '{broken json',
        [1, 2, 3],
        b"\xff\xfe",
        "nan,0,1",
        '{"x": 0, "y": "inf", "z": 1}',
        '{"x": NaN, "y": 0, "z": 1}',
        {"x": 0.0, "y": 0.0, "z": float("-inf")},
    ])
    def test_invalid_payloads(self, payload):
        with pytest.raises(InvalidSampleError) as exc_info:
            parse_sample(payload)
        assert exc_info.value.error_code == "INVALID_SAMPLE"


class TestAccelerometerSubscriber:
    """Test MQTT message handling without a broker."""

    def test_message_is_published_to_feed(self, feed):
        subscriber = AccelerometerSubscriber(feed)
        msg = SimpleNamespace(topic="guidance/phone/accelerometer", payload=b"0,1,1")
        subscriber.on_message(None, None, msg)
        assert feed.sample_count == 1
        assert feed.latest().roll == pytest.approx(45.0)

    def test_malformed_message_is_dropped(self, feed):
        subscriber = AccelerometerSubscriber(feed)
        msg = SimpleNamespace(topic="guidance/phone/accelerometer", payload=b"garbage")
        subscriber.on_message(None, None, msg)
        assert feed.sample_count == 0
        assert subscriber.dropped == 1

    def test_connect_subscribes_to_topic(self, feed):
        subscribed = []
        client = SimpleNamespace(subscribe=subscribed.append)
        subscriber = AccelerometerSubscriber(feed, topic="guidance/+/accelerometer")
        subscriber.on_connect(client, None, {}, 0)
        assert subscriber.connected
        assert subscribed == ["guidance/+/accelerometer"]

    def test_failed_connect_does_not_subscribe(self, feed):
        subscribed = []
        client = SimpleNamespace(subscribe=subscribed.append)
        subscriber = AccelerometerSubscriber(feed)
        subscriber.on_connect(client, None, {}, 5)
        assert not subscriber.connected
        assert subscribed == []
