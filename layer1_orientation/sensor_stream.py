"""
Layer 1 — Accelerometer Stream
Subscribes to accelerometer samples on the MQTT broker and pushes them
into the orientation feed.
"""
import json
import math
import logging
import threading

import paho.mqtt.client as mqtt

from error_handlers import InvalidSampleError
from .estimator import AccelerationSample
from .feed import OrientationFeed

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = 'guidance/+/accelerometer'


def parse_sample(payload) -> AccelerationSample:
    """
    Parse an accelerometer payload.

    Accepts JSON ({"x": .., "y": .., "z": ..}) or a plain "x,y,z" string.

    Raises:
        InvalidSampleError: If the payload has no three numeric axes
    """
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode()
        except UnicodeDecodeError as e:
            raise InvalidSampleError(payload, reason=str(e))

    if isinstance(payload, str):
        text = payload.strip()
        if text.startswith('{'):
            try:
                payload = json.loads(text)
            except ValueError as e:
                raise InvalidSampleError(text, reason=str(e))
        else:
            parts = text.split(',')
            if len(parts) != 3:
                raise InvalidSampleError(text, reason="expected x,y,z")
            payload = dict(zip(('x', 'y', 'z'), parts))

    if not isinstance(payload, dict):
        raise InvalidSampleError(payload, reason="expected an object with x, y, z")

    try:
        x, y, z = (float(payload[axis]) for axis in ('x', 'y', 'z'))
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidSampleError(payload, reason=str(e))

    if not all(math.isfinite(v) for v in (x, y, z)):
        raise InvalidSampleError(payload, reason="non-finite axis value")

    return AccelerationSample(x=x, y=y, z=z)


class AccelerometerSubscriber:
    """MQTT client feeding accelerometer samples into an OrientationFeed."""

    def __init__(self, feed: OrientationFeed, host='localhost', port=1883,
                 topic=DEFAULT_TOPIC, username='', password=''):
        self.feed = feed
        self.host = host
        self.port = port
        self.topic = topic
        self.username = username
        self.password = password
        self.client = None
        self.connected = False
        self.dropped = 0
        self._thread = None

    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            logger.info("[MQTT] Connected to broker")
            self.connected = True
            client.subscribe(self.topic)
            logger.info(f"[MQTT] Subscribed to {self.topic}")
        else:
            logger.error(f"[MQTT] Connection failed with code {reason_code}")
            self.connected = False

    def on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        logger.warning("[MQTT] Disconnected from broker")
        self.connected = False

    def on_message(self, client, userdata, msg):
        """Handle one accelerometer message"""
        try:
            sample = parse_sample(msg.payload)
        except InvalidSampleError as e:
            self.dropped += 1
            logger.debug(f"[MQTT] Dropped sample on {msg.topic}: {e.details.get('reason')}")
            return

        self.feed.publish(sample)

    def start(self):
        """Start the MQTT client in a background thread"""
        if self._thread is not None:
            return

        def run_mqtt():
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            self.client.on_connect = self.on_connect
            self.client.on_disconnect = self.on_disconnect
            self.client.on_message = self.on_message

            if self.username and self.password:
                self.client.username_pw_set(self.username, self.password)

            try:
                logger.info(f"[MQTT] Connecting to {self.host}:{self.port}")
                self.client.connect(self.host, self.port, 60)
                self.client.loop_forever()
            except Exception as e:
                logger.error(f"[MQTT] Connection error: {e}")

        self._thread = threading.Thread(target=run_mqtt, daemon=True)
        self._thread.start()

    def stop(self):
        if self.client is not None:
            self.client.disconnect()
        self.connected = False
