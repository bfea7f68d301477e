"""
Layer 1 — Orientation Estimator
Converts a raw accelerometer sample into pitch/roll tilt angles.
Gravity-only approximation: no yaw, no gyro/magnetometer fusion, no smoothing.
"""
import math
from dataclasses import dataclass
from typing import Dict


@dataclass(frozen=True)
class AccelerationSample:
    """One accelerometer event (units proportional to gravity + motion)."""
    x: float
    y: float
    z: float


@dataclass(frozen=True)
class Orientation:
    """Device tilt in degrees."""
    pitch: float
    roll: float

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'pitch': round(self.pitch, 2),
            'roll': round(self.roll, 2)
        }


def estimate(sample: AccelerationSample) -> Orientation:
    """
    Estimate pitch and roll from the gravity vector.

    Each sample is independent of the previous ones. A zero vector yields
    (0, 0) since atan2(0, 0) is defined as 0.

    Args:
        sample: Acceleration along the device x, y and z axes

    Returns:
        Orientation: pitch and roll in degrees
    """
    x, y, z = sample.x, sample.y, sample.z

    pitch = math.degrees(math.atan2(-x, math.sqrt(y ** 2 + z ** 2)))
    roll = math.degrees(math.atan2(y, z))

    return Orientation(pitch=pitch, roll=roll)
