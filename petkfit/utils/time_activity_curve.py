"""
Helpers for the frame timing of time activity curves (TACs).
"""
import numpy as np


def estimate_frame_bounds_from_mid_times(tac_times_in_minutes: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Estimates frame start and end times from frame mid-times.

    Interior frame boundaries are placed half-way between consecutive mid-times. The first frame starts as far
    before its mid-time as the first interior boundary lies after it (but not before 0), and the last frame ends as
    far after its mid-time as the last interior boundary lies before it.

    The frame timing in the originating metadata is preferable to computing it here. However, if the frame timing
    is not available, this function is useful to recover it.

    Args:
        tac_times_in_minutes (np.ndarray): Frame mid-times, strictly increasing.

    Returns:
        tuple[np.ndarray, np.ndarray]: The estimated frame start and end times.

    Raises:
        ValueError: If fewer than two times are given, or if they are not strictly increasing.
    """
    mid_times = np.asarray(tac_times_in_minutes, dtype=float)
    if mid_times.shape[0] < 2:
        raise ValueError("At least two frame times are needed to estimate the frame boundaries.")
    if np.any(np.diff(mid_times) <= 0.0):
        raise ValueError("Frame times must be strictly increasing.")

    bounds = np.zeros(mid_times.shape[0] + 1)
    bounds[1:-1] = (mid_times[1:] + mid_times[:-1]) / 2.0
    bounds[0] = max(0.0, 2.0 * mid_times[0] - bounds[1])
    bounds[-1] = 2.0 * mid_times[-1] - bounds[-2]
    return bounds[:-1].copy(), bounds[1:].copy()
