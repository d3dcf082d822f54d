"""
Shared synthetic scene for the jitter solver tests.

Three linescan cameras fly along +Y at 100 m/s and 1000 m altitude, looking
straight down, side by side at X = -200, 0, 200. Each has 20 orientation and
20 position samples one second apart; the image spans 1000 lines from t = 5 s
to t = 15 s. Ten ground points are seen by all cameras, and their
observations are the exact projections of the points.
"""

import numpy as np
import pytest

from jitter_solve.camera import LinescanCamera
from jitter_solve.network import ControlNetwork
from jitter_solve.sampling import PoseSampleSequence

NUM_POSE_SAMPLES = 20
CAMERA_OFFSETS = (-200.0, 0.0, 200.0)
ALTITUDE = 1000.0
SPEED = 100.0

# 180 degrees about X: camera Z (boresight) points down, camera Y along -Y
NADIR_QUATERNION = (1.0, 0.0, 0.0, 0.0)


def make_camera(x0: float = 0.0, name: str = "", **kwargs) -> LinescanCamera:
    times = np.arange(NUM_POSE_SAMPLES, dtype=np.float64)
    quaternions = np.tile(NADIR_QUATERNION, (NUM_POSE_SAMPLES, 1))
    positions = np.column_stack([
        np.full(NUM_POSE_SAMPLES, x0),
        SPEED * times,
        np.full(NUM_POSE_SAMPLES, ALTITUDE),
    ])
    return LinescanCamera(
        quaternions=PoseSampleSequence(quaternions, 0.0, 1.0),
        positions=PoseSampleSequence(positions, 0.0, 1.0),
        first_line_time=5.0,
        dt_line=0.01,
        focal_length=1000.0,
        detector_center=500.0,
        num_lines=1000,
        num_samples=1000,
        name=name,
        **kwargs,
    )


def make_points() -> np.ndarray:
    return np.column_stack([
        np.linspace(-250.0, 250.0, 10),
        np.linspace(550.0, 1450.0, 10),
        10.0 * np.sin(np.arange(10)),
    ])


def observe_all(cameras, points) -> ControlNetwork:
    network = ControlNetwork(points=points)
    for icam, camera in enumerate(cameras):
        for ipt, point in enumerate(network.points):
            network.add_observation(icam, ipt, camera.project(point, desired_precision=1e-12))
    return network


@pytest.fixture
def camera():
    return make_camera(0.0, "cam")


@pytest.fixture
def cameras():
    return [make_camera(x0, f"cam{i}") for i, x0 in enumerate(CAMERA_OFFSETS)]


@pytest.fixture
def network(cameras):
    return observe_all(cameras, make_points())


@pytest.fixture
def camera_factory():
    return make_camera


@pytest.fixture
def observe():
    return observe_all
