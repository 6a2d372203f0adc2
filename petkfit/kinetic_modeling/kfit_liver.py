"""
Array-level entry point for voxel-wise fitting of the dual-input liver model.

:func:`kfit_liver` takes plain array inputs in the ``(frames, voxels)`` layout used by imaging pipelines, decodes and
checks them, reports non-fatal shape diagnostics, and runs
:func:`fit_voxels<petkfit.kinetic_modeling.voxel_fitting.fit_voxels>` with a
:class:`DualInputLiverModel<petkfit.kinetic_modeling.kinetic_models.DualInputLiverModel>`.

Example:
    .. code-block:: python

        import numpy as np
        from petkfit.kinetic_modeling.kfit_liver import kfit_liver

        p, c = kfit_liver(tac, w, scant, blood, wblood, dk=np.log(2) / 109.77,
                          pinit=[0.1, 0.5, 1.0, 0.05, 0.01, 1.0, 0.2],
                          plb=[0, 0, 0, 0, 0, 0, 0], pub=[1, 10, 10, 1, 1, 10, 1],
                          psens=[1, 1, 1, 1, 1, 1, 1], maxit=100, td=1.0 / 60.0)

"""
import warnings
from typing import Callable, Union
import numpy as np
from .kinetic_model_context import KineticModelContext
from .kinetic_models import DualInputLiverModel
from .levenberg_marquardt import DEFAULT_SETTINGS, LevenbergMarquardtSettings
from .voxel_fitting import fit_voxels


class ShapeWarning(UserWarning):
    """Non-fatal diagnostic about the shape of an input array."""


def warn_diagnostic(message: str) -> None:
    """Default diagnostic reporter; emits a :class:`ShapeWarning`."""
    warnings.warn(message, ShapeWarning, stacklevel=3)


def _decode_columns(name: str, arr) -> np.ndarray:
    arr = np.asarray(arr, dtype=float)
    if arr.ndim == 0:
        arr = arr.reshape(1, 1)
    elif arr.ndim == 1:
        arr = arr[:, np.newaxis]
    elif arr.ndim != 2:
        raise ValueError(f"`{name}` must be a vector or a matrix. Got an array with {arr.ndim} dimensions.")
    return arr


def _decode_vector(name: str, arr) -> np.ndarray:
    arr = np.asarray(arr, dtype=float)
    if arr.ndim > 2 or (arr.ndim == 2 and min(arr.shape) != 1):
        raise ValueError(f"`{name}` must be a vector. Got shape {arr.shape}.")
    return arr.ravel()


def kfit_liver(tac,
               w,
               scant,
               blood,
               wblood,
               dk: float,
               pinit,
               plb,
               pub,
               psens,
               maxit: int,
               td: Union[float, None] = None,
               report_diagnostic: Union[Callable[[str], None], None] = None,
               settings: LevenbergMarquardtSettings = DEFAULT_SETTINGS) -> tuple[np.ndarray, np.ndarray]:
    """
    Fits the dual-input liver model to every voxel TAC.

    Args:
        tac: Measured TACs, shape ``(num_frm, num_vox)``.
        w: Frame weights, shape ``(num_frm, 1)`` (shared) or ``(num_frm, num_vox)``. They multiply the squared
            residuals.
        scant: Frame start/end times of shape ``(num_frm, 2)``, or frame durations, in minutes.
        blood: Frame-aligned plasma input curve, length ``num_frm``.
        wblood: Frame-aligned whole-blood input curve, length ``num_frm``.
        dk (float): Decay constant in 1/minutes. Use 0 for no decay.
        pinit: Initial parameters, shape ``(num_par, 1)`` (shared) or ``(num_par, num_vox)``.
        plb: Lower bound of each parameter.
        pub: Upper bound of each parameter.
        psens: 1 for each parameter to estimate, 0 for each parameter to hold at its initial value.
        maxit (int): Maximum number of iterations per voxel.
        td (float, optional): Step of the fine time grid used by the model, in minutes. If None, a quarter of the
            shortest frame is used.
        report_diagnostic (Callable[[str], None], optional): Receives non-fatal diagnostics. Defaults to
            :func:`warn_diagnostic`.
        settings (LevenbergMarquardtSettings): Solver tuning constants.

    Returns:
        tuple[np.ndarray, np.ndarray]: The estimated parameters, shape ``(num_par, num_vox)``, and the fitted curves,
        shape ``(num_frm, num_vox)``.

    Raises:
        ValueError: If the inputs are structurally invalid, including initial parameters or weights whose number of
            columns is neither 1 nor ``num_vox``. Nothing is fitted in that case.
    """
    report = warn_diagnostic if report_diagnostic is None else report_diagnostic
    model = DualInputLiverModel()

    tac = _decode_columns('tac', tac)
    w = _decode_columns('w', w)
    pinit = _decode_columns('pinit', pinit)
    num_frm, num_vox = tac.shape

    if pinit.shape[0] == 1 and pinit.shape[1] > 1:
        report("pinit should be a column vector or a matrix! Treating the row vector as a single column.")
        pinit = pinit.T
    if pinit.shape[1] not in (1, num_vox):
        raise ValueError(f"pinit must have 1 or {num_vox} columns. Got {pinit.shape[1]}.")
    if w.shape[0] == 1 and w.shape[1] == num_frm and num_frm > 1:
        report("w should be a column vector or a matrix! Treating the row vector as a single column.")
        w = w.T
    if w.shape[1] not in (1, num_vox):
        raise ValueError(f"w must have 1 or {num_vox} columns. Got {w.shape[1]}.")

    context = KineticModelContext.from_scan_data(scan_times=np.asarray(scant, dtype=float),
                                                 plasma_tac=_decode_vector('blood', blood),
                                                 whole_blood_tac=_decode_vector('wblood', wblood),
                                                 decay_constant=dk,
                                                 td=td)

    results = fit_voxels(model=model,
                         context=context,
                         tacs=tac,
                         weights=w,
                         initial_params=pinit,
                         lower_bounds=_decode_vector('plb', plb),
                         upper_bounds=_decode_vector('pub', pub),
                         free_mask=_decode_vector('psens', psens) != 0,
                         max_iters=int(maxit),
                         settings=settings)
    return results.params, results.fitted_tacs
