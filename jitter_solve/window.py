"""
Time-window resolution.

For one observation, find the contiguous ranges of orientation and position
samples whose values can influence the projection of a point near the
observed pixel. Only these samples become variables of that observation's
residual.

The observed pixel is grown by ``line_extra`` lines in both along-track
directions, because during optimization the point and its projection move
somewhat. Both extremal lines are converted to times, each time to a sample
index ``floor((time - t0) / dt)``, and the index range is padded by half the
interpolation support on each side:

    beg = min(i1, i2) - support / 2 + 1
    end = max(i1, i2) + support / 2 + 1      (exclusive)

This is the bracket the camera's Lagrange interpolation reads, so
substituted samples are never shadowed by stale values.
"""

import numpy as np
from typing import Optional, Sequence, Tuple
from dataclasses import dataclass
import logging

from .camera import LinescanCamera
from .exceptions import DataError
from .sampling import PoseSampleSequence, interp_start_index

logger = logging.getLogger(__name__)

# Added to the outlier threshold to get the default along-track margin, in lines
LINE_EXTRA_PAD = 5.0


@dataclass(frozen=True)
class SampleWindow:
    """Half-open sample index ranges affecting one observation."""
    beg_quat: int
    end_quat: int
    beg_pos: int
    end_pos: int

    @property
    def num_quat(self) -> int:
        return self.end_quat - self.beg_quat

    @property
    def num_pos(self) -> int:
        return self.end_pos - self.beg_pos

    def contains(self, other: "SampleWindow") -> bool:
        return (
            self.beg_quat <= other.beg_quat and other.end_quat <= self.end_quat
            and self.beg_pos <= other.beg_pos and other.end_pos <= self.end_pos
        )


def default_line_extra(max_initial_reprojection_error: float) -> float:
    """Along-track margin used when none is configured."""
    return max_initial_reprojection_error + LINE_EXTRA_PAD


def sample_range(
    time1: float,
    time2: float,
    sequence: PoseSampleSequence,
    support: int,
) -> Tuple[int, int]:
    """
    Clamped index range of samples read when interpolating between two times.

    Returns:
        (beg, end) with end exclusive; beg >= end means the range fell
        entirely outside the grid
    """
    index1 = sequence.index_of(time1)
    index2 = sequence.index_of(time2)

    half = support // 2
    beg = min(index1, index2) - half + 1
    end = max(index1, index2) + half + 1

    beg = max(0, beg)
    end = min(end, sequence.count)
    if beg >= end:
        return beg, end

    # Near the ends of the grid the interpolation shifts its bracket inward
    # and reads samples past the nominal range. Include those as well.
    order = min(support, sequence.count)
    t_lo, t_hi = min(time1, time2), max(time1, time2)
    beg = min(beg, interp_start_index(t_lo, sequence.t0, sequence.dt, sequence.count, support))
    end = max(end, interp_start_index(t_hi, sequence.t0, sequence.dt, sequence.count, support) + order)
    return beg, end


def resolve_window(
    camera: LinescanCamera,
    pixel: Sequence[float],
    line_extra: float,
    support: Optional[int] = None,
) -> SampleWindow:
    """
    Resolve the orientation and position sample windows for an observation.

    Args:
        camera: Camera that made the observation
        pixel: Observed (sample, line) pixel
        line_extra: Along-track margin, in lines, added on both sides
        support: Samples consulted by one interpolation; the camera's
            own setting by default

    Returns:
        SampleWindow with 0 <= beg < end <= count for both sequences

    Raises:
        DataError: If either window collapses outside the sample grid
    """
    if support is None:
        support = camera.num_interp_samples

    pixel = np.asarray(pixel, dtype=np.float64)
    offset = np.array([0.0, line_extra])
    time1 = camera.time(pixel - offset)
    time2 = camera.time(pixel + offset)

    beg_quat, end_quat = sample_range(time1, time2, camera.quaternions, support)
    if beg_quat >= end_quat:
        raise DataError(f"Book-keeping error for pixel: {pixel.tolist()}.")

    beg_pos, end_pos = sample_range(time1, time2, camera.positions, support)
    if beg_pos >= end_pos:
        raise DataError(f"Book-keeping error for pixel: {pixel.tolist()}.")

    return SampleWindow(beg_quat, end_quat, beg_pos, end_pos)
