"""
Time-sampled pose sequences.

A linescan camera carries its orientation and position as two independent
sequences of samples, each on its own uniform time grid:

    time(k) = t0 + k * dt,   k = 0 .. count - 1

Orientation samples are unit quaternions stored as (x, y, z, w), the
scalar-last order used by scipy's Rotation. Position samples are 3D vectors.

Poses between samples are obtained by Lagrange interpolation over a fixed
number of neighbouring samples (8 by default). The index bookkeeping here
is shared by the camera model and by the time-window resolver, so both
agree on which samples an interpolation reads.
"""

import numpy as np
from functools import lru_cache
from typing import Sequence
import logging

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# Number of samples consulted by one Lagrange interpolation
DEFAULT_INTERP_SAMPLES = 8

# Tolerance for checking the spacing of sample times, in seconds.
# Must not be too small as absolute times in seconds can be large.
SPACING_TOLERANCE = 1e-6


def check_spacing(
    times: Sequence[float],
    spacing: float,
    tol: float = SPACING_TOLERANCE,
    tag: str = "sample",
) -> None:
    """
    Check that consecutive times are separated by the given spacing.

    Args:
        times: Sample times, in increasing order
        spacing: Expected spacing between consecutive times
        tol: Largest accepted deviation from the spacing
        tag: Name of the sequence, used in the error message

    Raises:
        ConfigurationError: If the spacing is not positive or any gap
            deviates from it by more than tol
    """
    if spacing <= 0:
        raise ConfigurationError("Expecting positive time spacing between samples.")

    times = np.asarray(times, dtype=np.float64)
    for i in range(1, len(times)):
        err = abs((times[i] - times[i - 1]) - spacing)
        if err > tol:
            raise ConfigurationError(
                f"Expecting all {tag} values to be spaced by {spacing}. "
                f"Found a discrepancy of {err} seconds at index {i}."
            )


def interp_start_index(
    time: float,
    t0: float,
    dt: float,
    count: int,
    num_samples: int = DEFAULT_INTERP_SAMPLES,
) -> int:
    """
    First sample index read when interpolating at the given time.

    The interpolation brackets ``floor((time - t0) / dt)`` with
    ``num_samples // 2`` samples on the right and the rest on the left,
    shifted as needed to stay inside ``[0, count)``.
    """
    order = min(num_samples, count)
    index = int(np.floor((time - t0) / dt))
    start = index - order // 2 + 1
    return int(min(max(start, 0), count - order))


@lru_cache(maxsize=None)
def _lagrange_denominators(order: int) -> np.ndarray:
    nodes = np.arange(order, dtype=np.float64)
    diff = nodes[:, None] - nodes[None, :]
    np.fill_diagonal(diff, 1.0)
    return np.prod(diff, axis=1)


def lagrange_weights(u: float, order: int) -> np.ndarray:
    """Lagrange basis weights at local coordinate u for nodes 0 .. order-1."""
    diff = np.tile(u - np.arange(order, dtype=np.float64), (order, 1))
    np.fill_diagonal(diff, 1.0)
    return np.prod(diff, axis=1) / _lagrange_denominators(order)


class PoseSampleSequence:
    """
    Uniformly time-sampled sequence of pose values.

    Attributes:
        values: (count, dim) array of samples, mutated in place by the solver
        t0: Time of the first sample
        dt: Time spacing between samples
    """

    def __init__(self, values: np.ndarray, t0: float, dt: float):
        values = np.array(values, dtype=np.float64)
        if values.ndim != 2 or len(values) == 0:
            raise ConfigurationError("Expecting a non-empty (count, dim) array of samples.")
        if dt <= 0:
            raise ConfigurationError(f"Expecting positive sample spacing, got {dt}.")

        self.values = values
        self.t0 = float(t0)
        self.dt = float(dt)

    @classmethod
    def from_times(
        cls,
        times: Sequence[float],
        values: np.ndarray,
        tol: float = SPACING_TOLERANCE,
        tag: str = "sample",
    ) -> "PoseSampleSequence":
        """
        Build a sequence from explicit sample times, which must be uniform.

        Args:
            times: Sample times
            values: Samples, one row per time
            tol: Spacing tolerance in seconds
            tag: Name of the sequence for error messages
        """
        times = np.asarray(times, dtype=np.float64)
        if len(times) != len(values):
            raise ConfigurationError(
                f"Got {len(times)} {tag} times but {len(values)} {tag} values."
            )
        if len(times) < 2:
            raise ConfigurationError(f"Need at least two {tag} samples to define a grid.")

        dt = float(times[1] - times[0])
        check_spacing(times, dt, tol, tag)
        return cls(values, times[0], dt)

    @property
    def count(self) -> int:
        return len(self.values)

    @property
    def dim(self) -> int:
        return self.values.shape[1]

    @property
    def times(self) -> np.ndarray:
        return self.t0 + self.dt * np.arange(self.count)

    def index_of(self, time: float) -> int:
        """Index of the sample at or immediately before the given time (unclamped)."""
        return int(np.floor((time - self.t0) / self.dt))

    def interpolate(
        self,
        time: float,
        num_samples: int = DEFAULT_INTERP_SAMPLES,
    ) -> np.ndarray:
        """
        Lagrange-interpolate the sequence at the given time.

        Args:
            time: Query time; times outside the grid are extrapolated from
                the first or last ``num_samples`` samples
            num_samples: Number of samples used by the interpolation

        Returns:
            Interpolated value, shape (dim,)
        """
        order = min(num_samples, self.count)
        start = interp_start_index(time, self.t0, self.dt, self.count, num_samples)
        if order == 1:
            return self.values[start].copy()

        u = (time - self.t0) / self.dt - start
        weights = lagrange_weights(u, order)
        return weights @ self.values[start:start + order]

    def copy(self) -> "PoseSampleSequence":
        return PoseSampleSequence(self.values, self.t0, self.dt)

    def __repr__(self) -> str:
        return (
            f"PoseSampleSequence(count={self.count}, dim={self.dim}, "
            f"t0={self.t0}, dt={self.dt})"
        )
