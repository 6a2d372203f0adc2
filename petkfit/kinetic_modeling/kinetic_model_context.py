"""
This module provides :class:`KineticModelContext`, the immutable description of a dynamic PET experiment that is
shared, read-only, by every voxel fit of a fitting call.

The context holds the frame timing, the decay constant and the frame-aligned plasma and whole-blood input curves.
On construction, it also derives the uniform fine time grid on which the kinetic models perform their convolutions:

    * The input curves are treated as samples at frame mid-times and linearly interpolated onto cells of width ``td``
      whose centres are :math:`t_i=(i+1/2)\\,td`. The curves are 0 at :math:`t=0` and held constant after the last
      mid-time.
    * Each frame is represented by the fine-grid cells whose centres lie in ``[start, end)``. Model values are averaged
      over those cells, so every frame must contain at least one cell.
    * The decay factor :math:`e^{-\\lambda t_i}` is precomputed on the fine grid.

All arrays stored on the context are made read-only, so that the context can be shared across voxel fits (including
concurrent ones) without locks.

"""
from dataclasses import dataclass
from typing import Union
import numpy as np


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=float, copy=True)
    arr.flags.writeable = False
    return arr


def frame_starts_and_ends_from_scan_times(scan_times: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Converts the scan timing input into frame start and end times.

    Args:
        scan_times (np.ndarray): Either an array of shape ``(num_frm, 2)`` with the start and end time of each frame,
            or a 1D array of frame durations. Durations are assumed to be contiguous and to start at time 0.

    Returns:
        tuple[np.ndarray, np.ndarray]: The frame start times and the frame end times.

    Raises:
        ValueError: If the array has an unsupported shape, if a frame has a non-positive duration, or if the frames
            are not ordered in time or overlap.
    """
    scan_times = np.asarray(scan_times, dtype=float)
    if scan_times.ndim == 1:
        frm_ends = np.cumsum(scan_times)
        frm_starts = frm_ends - scan_times
    elif scan_times.ndim == 2 and scan_times.shape[1] == 2:
        frm_starts = scan_times[:, 0].copy()
        frm_ends = scan_times[:, 1].copy()
    else:
        raise ValueError("Scan times must be an array of frame durations or a (num_frm, 2) array of frame start "
                         f"and end times. Got shape {scan_times.shape}.")
    if frm_starts.shape[0] == 0:
        raise ValueError("Scan times must describe at least one frame.")
    if not (np.all(np.isfinite(frm_starts)) and np.all(np.isfinite(frm_ends))):
        raise ValueError("Scan times must be finite.")
    if np.any(frm_ends <= frm_starts):
        raise ValueError("Every frame must have a positive duration.")
    if np.any(frm_starts < 0.0):
        raise ValueError("Frame start times must be non-negative.")
    if np.any(np.diff(frm_starts) <= 0.0):
        raise ValueError("Frames must be ordered in time.")
    # Tolerates rounding in the start + duration conversion of contiguous frames.
    if np.any(frm_starts[1:] < frm_ends[:-1] - 1.0e-9):
        raise ValueError("Frames must not overlap: every frame must start at or after the end of the previous one.")
    return frm_starts, frm_ends


@dataclass(frozen=True, eq=False)
class KineticModelContext:
    """
    Immutable description of the experiment shared by every voxel fit.

    Use :meth:`from_scan_data` to build a context; it validates the inputs and derives the fine grid.

    Attributes:
        frame_starts (np.ndarray): Start time of each frame, in minutes.
        frame_ends (np.ndarray): End time of each frame, in minutes.
        plasma_tac (np.ndarray): Frame-aligned plasma input curve.
        whole_blood_tac (np.ndarray): Frame-aligned whole-blood input curve.
        decay_constant (float): Decay constant of the radionuclide, in 1/minutes.
        td (float): Step of the fine time grid, in minutes.
        fine_times (np.ndarray): Cell centres of the fine grid.
        fine_plasma (np.ndarray): Plasma input on the fine grid.
        fine_whole_blood (np.ndarray): Whole-blood input on the fine grid.
        fine_decay (np.ndarray): Decay factor :math:`e^{-\\lambda t}` on the fine grid.
        frame_idx_start (np.ndarray): First fine-grid index of each frame.
        frame_idx_stop (np.ndarray): One past the last fine-grid index of each frame.
    """
    frame_starts: np.ndarray
    frame_ends: np.ndarray
    plasma_tac: np.ndarray
    whole_blood_tac: np.ndarray
    decay_constant: float
    td: float
    fine_times: np.ndarray
    fine_plasma: np.ndarray
    fine_whole_blood: np.ndarray
    fine_decay: np.ndarray
    frame_idx_start: np.ndarray
    frame_idx_stop: np.ndarray

    @property
    def num_frm(self) -> int:
        """Number of frames."""
        return self.frame_starts.shape[0]

    @property
    def frame_mid_times(self) -> np.ndarray:
        """Mid-time of each frame, in minutes."""
        return (self.frame_starts + self.frame_ends) / 2.0

    @property
    def frame_durations(self) -> np.ndarray:
        """Duration of each frame, in minutes."""
        return self.frame_ends - self.frame_starts

    @classmethod
    def from_scan_data(cls,
                       scan_times: np.ndarray,
                       plasma_tac: np.ndarray,
                       whole_blood_tac: np.ndarray,
                       decay_constant: float = 0.0,
                       td: Union[float, None] = None) -> 'KineticModelContext':
        """
        Validates the scan data and builds the context, including the fine grid used for the convolutions.

        Args:
            scan_times (np.ndarray): Frame start/end times of shape ``(num_frm, 2)``, or frame durations.
            plasma_tac (np.ndarray): Frame-aligned plasma input curve of length ``num_frm``.
            whole_blood_tac (np.ndarray): Frame-aligned whole-blood input curve of length ``num_frm``.
            decay_constant (float): Decay constant, in 1/minutes. Use 0 for no decay. Defaults to 0.
            td (float, optional): Step of the fine grid, in minutes. If None, the shortest frame duration divided
                by 4 is used.

        Returns:
            KineticModelContext: The immutable context.

        Raises:
            ValueError: If the input curves do not have one value per frame, if they are not finite, if the decay
                constant or ``td`` are invalid, or if ``td`` is too coarse to place a fine-grid cell in every frame.
        """
        frm_starts, frm_ends = frame_starts_and_ends_from_scan_times(scan_times)
        num_frm = frm_starts.shape[0]
        plasma_tac = np.asarray(plasma_tac, dtype=float).ravel()
        whole_blood_tac = np.asarray(whole_blood_tac, dtype=float).ravel()
        for name, curve in (('plasma', plasma_tac), ('whole-blood', whole_blood_tac)):
            if curve.shape[0] != num_frm:
                raise ValueError(f"The {name} input must have one value per frame. Got {curve.shape[0]} values "
                                 f"for {num_frm} frames.")
            if not np.all(np.isfinite(curve)):
                raise ValueError(f"The {name} input must be finite.")
        decay_constant = float(decay_constant)
        if not np.isfinite(decay_constant) or decay_constant < 0.0:
            raise ValueError(f"The decay constant must be finite and non-negative. Got {decay_constant}.")
        if td is None:
            td = float(np.min(frm_ends - frm_starts)) / 4.0
        td = float(td)
        if not np.isfinite(td) or td <= 0.0:
            raise ValueError(f"The fine-grid time step `td` must be positive. Got {td}.")

        num_fine = int(np.ceil(frm_ends[-1] / td - 1.0e-9))
        fine_times = (np.arange(num_fine) + 0.5) * td
        frame_idx_start = np.searchsorted(fine_times, frm_starts, side='left').astype(np.int64)
        frame_idx_stop = np.searchsorted(fine_times, frm_ends, side='left').astype(np.int64)
        empty_frames = np.flatnonzero(frame_idx_stop <= frame_idx_start)
        if empty_frames.size > 0:
            raise ValueError(f"`td`={td} is too coarse: frames {empty_frames.tolist()} contain no fine-grid sample. "
                             "Use a time step shorter than the shortest frame.")

        mid_times = (frm_starts + frm_ends) / 2.0
        xp = np.concatenate(([0.0], mid_times))
        fine_plasma = np.interp(fine_times, xp, np.concatenate(([0.0], plasma_tac)))
        fine_whole_blood = np.interp(fine_times, xp, np.concatenate(([0.0], whole_blood_tac)))
        fine_decay = np.exp(-decay_constant * fine_times)

        idx_start = np.array(frame_idx_start, copy=True)
        idx_start.flags.writeable = False
        idx_stop = np.array(frame_idx_stop, copy=True)
        idx_stop.flags.writeable = False

        return cls(frame_starts=_frozen(frm_starts),
                   frame_ends=_frozen(frm_ends),
                   plasma_tac=_frozen(plasma_tac),
                   whole_blood_tac=_frozen(whole_blood_tac),
                   decay_constant=decay_constant,
                   td=td,
                   fine_times=_frozen(fine_times),
                   fine_plasma=_frozen(fine_plasma),
                   fine_whole_blood=_frozen(fine_whole_blood),
                   fine_decay=_frozen(fine_decay),
                   frame_idx_start=idx_start,
                   frame_idx_stop=idx_stop)
