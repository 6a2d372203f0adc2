"""
This module provides the voxel-wise batch driver: it applies
:func:`fit_tac_with_levenberg_marquardt<petkfit.kinetic_modeling.levenberg_marquardt.fit_tac_with_levenberg_marquardt>`
independently to every column of a ``(num_frm, num_vox)`` TAC matrix and collects the results into a parameter map
and a fitted-curve map.

The weights and the initial parameters may be shared by every voxel (a single column) or supplied per voxel (one
column per voxel); the choice is made once per call. All inputs are validated before any voxel is processed, so that
structurally invalid inputs never produce partial results. Numerical problems inside a single voxel fit do not abort
the batch: they are reported through the per-voxel status.

Voxel fits share nothing but the read-only :class:`KineticModelContext`, and each one only writes its own output
column.

"""
import logging
from collections import Counter
from dataclasses import dataclass
import numpy as np
from .kinetic_model_context import KineticModelContext
from .kinetic_models import KineticModel
from .levenberg_marquardt import (DEFAULT_SETTINGS,
                                  STATUS_STALLED,
                                  LevenbergMarquardtSettings,
                                  fit_tac_with_levenberg_marquardt)

logger = logging.getLogger(__name__)


@dataclass
class VoxelFitResults:
    """
    Results of a voxel-wise fit.

    Attributes:
        params (np.ndarray): Fitted parameters, shape ``(num_par, num_vox)``.
        fitted_tacs (np.ndarray): Fitted curves, shape ``(num_frm, num_vox)``.
        sse (np.ndarray): Weighted SSE of each voxel.
        num_iterations (np.ndarray): Number of solver iterations of each voxel.
        status (np.ndarray): Termination status of each voxel.
    """
    params: np.ndarray
    fitted_tacs: np.ndarray
    sse: np.ndarray
    num_iterations: np.ndarray
    status: np.ndarray

    @property
    def num_vox(self) -> int:
        """Number of fitted voxels."""
        return self.params.shape[1]

    def status_counts(self) -> dict:
        """Number of voxels per termination status."""
        return dict(Counter(self.status.tolist()))


def _as_columns(arr: np.ndarray) -> np.ndarray:
    arr = np.asarray(arr, dtype=float)
    if arr.ndim == 1:
        return arr[:, np.newaxis]
    return arr


def validate_fit_inputs(model: KineticModel,
                        context: KineticModelContext,
                        tacs: np.ndarray,
                        weights: np.ndarray,
                        initial_params: np.ndarray,
                        lower_bounds: np.ndarray,
                        upper_bounds: np.ndarray,
                        free_mask: np.ndarray,
                        max_iters: int) -> None:
    """
    Checks the structural consistency of the inputs of :func:`fit_voxels`.

    Args:
        model (KineticModel): The kinetic model to fit.
        context (KineticModelContext): The shared experiment description.
        tacs (np.ndarray): Measured TACs, shape ``(num_frm, num_vox)``.
        weights (np.ndarray): Weights, shape ``(num_frm, 1)`` or ``(num_frm, num_vox)``.
        initial_params (np.ndarray): Initial guesses, shape ``(num_par, 1)`` or ``(num_par, num_vox)``.
        lower_bounds (np.ndarray): Lower bounds, length ``num_par``.
        upper_bounds (np.ndarray): Upper bounds, length ``num_par``.
        free_mask (np.ndarray): Boolean mask of estimated parameters, length ``num_par``.
        max_iters (int): Maximum number of solver iterations.

    Raises:
        ValueError: If any dimension is inconsistent, if the bounds are reversed or not finite, if an initial guess
            lies outside the bounds, if a weight is negative or not finite, or if ``max_iters`` is negative.
    """
    num_par = model.num_params
    num_frm, num_vox = tacs.shape
    if num_frm != context.num_frm:
        raise ValueError(f"The TACs have {num_frm} frames but the scan has {context.num_frm} frames.")
    if weights.shape[0] != num_frm or weights.shape[1] not in (1, num_vox):
        raise ValueError(f"The weights must have shape ({num_frm}, 1) or ({num_frm}, {num_vox}). "
                         f"Got {weights.shape}.")
    if not np.all(np.isfinite(weights)) or np.any(weights < 0.0):
        raise ValueError("The weights must be finite and non-negative.")
    if initial_params.shape[0] != num_par or initial_params.shape[1] not in (1, num_vox):
        raise ValueError(f"The initial parameters must have shape ({num_par}, 1) or ({num_par}, {num_vox}) for "
                         f"the {type(model).__name__}. Got {initial_params.shape}.")
    for name, arr in (('lower bounds', lower_bounds), ('upper bounds', upper_bounds), ('free mask', free_mask)):
        if arr.shape != (num_par,):
            raise ValueError(f"The {name} must have one entry per parameter ({num_par}). Got shape {arr.shape}.")
    if not (np.all(np.isfinite(lower_bounds)) and np.all(np.isfinite(upper_bounds))):
        raise ValueError("The parameter bounds must be finite.")
    if np.any(lower_bounds > upper_bounds):
        raise ValueError("Every lower bound must be less than or equal to its upper bound.")
    if (np.any(initial_params < lower_bounds[:, np.newaxis])
            or np.any(initial_params > upper_bounds[:, np.newaxis])):
        raise ValueError("The initial parameters must lie within the parameter bounds.")
    if max_iters < 0:
        raise ValueError(f"`max_iters` must be non-negative. Got {max_iters}.")


def fit_voxels(model: KineticModel,
               context: KineticModelContext,
               tacs: np.ndarray,
               weights: np.ndarray,
               initial_params: np.ndarray,
               lower_bounds: np.ndarray,
               upper_bounds: np.ndarray,
               free_mask: np.ndarray,
               max_iters: int,
               settings: LevenbergMarquardtSettings = DEFAULT_SETTINGS) -> VoxelFitResults:
    """
    Fits ``model`` independently to every voxel TAC.

    Args:
        model (KineticModel): The kinetic model to fit.
        context (KineticModelContext): The shared experiment description.
        tacs (np.ndarray): Measured TACs, shape ``(num_frm, num_vox)``. A 1D array is treated as a single voxel.
        weights (np.ndarray): Weights, shape ``(num_frm, 1)`` (shared by every voxel) or ``(num_frm, num_vox)``. A 1D
            array is treated as a single shared column.
        initial_params (np.ndarray): Initial guesses, shape ``(num_par, 1)`` (shared by every voxel) or
            ``(num_par, num_vox)``. A 1D array is treated as a single shared column.
        lower_bounds (np.ndarray): Lower bounds, length ``num_par``.
        upper_bounds (np.ndarray): Upper bounds, length ``num_par``.
        free_mask (np.ndarray): Mask of estimated parameters (truthy) and fixed parameters (falsy), length
            ``num_par``.
        max_iters (int): Maximum number of solver iterations per voxel.
        settings (LevenbergMarquardtSettings): Solver tuning constants.

    Returns:
        VoxelFitResults: Parameter and fitted-curve maps, plus per-voxel fit diagnostics.

    Raises:
        ValueError: If the inputs are structurally inconsistent. See :func:`validate_fit_inputs`.
    """
    tacs = _as_columns(tacs)
    weights = _as_columns(weights)
    initial_params = _as_columns(initial_params)
    lower_bounds = np.asarray(lower_bounds, dtype=float).ravel()
    upper_bounds = np.asarray(upper_bounds, dtype=float).ravel()
    free_mask = np.asarray(free_mask).ravel().astype(bool)
    max_iters = int(max_iters)
    validate_fit_inputs(model=model, context=context, tacs=tacs, weights=weights, initial_params=initial_params,
                        lower_bounds=lower_bounds, upper_bounds=upper_bounds, free_mask=free_mask,
                        max_iters=max_iters)

    num_frm, num_vox = tacs.shape
    num_par = model.num_params
    shared_weights = weights.shape[1] == 1
    shared_init = initial_params.shape[1] == 1

    params_map = np.zeros((num_par, num_vox), float)
    fitted_map = np.zeros((num_frm, num_vox), float)
    sse = np.zeros(num_vox, float)
    num_iterations = np.zeros(num_vox, int)
    status = np.empty(num_vox, dtype=object)

    logger.info(f"Fitting {type(model).__name__} to {num_vox} voxels with {int(free_mask.sum())} free parameters.")
    for j in range(num_vox):
        w_j = weights[:, 0] if shared_weights else weights[:, j]
        p_j = initial_params[:, 0] if shared_init else initial_params[:, j]
        fit = fit_tac_with_levenberg_marquardt(model=model, context=context, tac=tacs[:, j], weights=w_j,
                                               initial_params=p_j, lower_bounds=lower_bounds,
                                               upper_bounds=upper_bounds, free_mask=free_mask,
                                               max_iters=max_iters, settings=settings)
        params_map[:, j] = fit.params
        fitted_map[:, j] = fit.fitted_tac
        sse[j] = fit.sse
        num_iterations[j] = fit.num_iterations
        status[j] = fit.status
        if fit.status == STATUS_STALLED:
            logger.debug(f"Voxel {j} stalled after {fit.num_iterations} iterations with SSE={fit.sse:.4g}.")

    results = VoxelFitResults(params=params_map, fitted_tacs=fitted_map, sse=sse,
                              num_iterations=num_iterations, status=status)
    logger.info(f"Finished fitting {num_vox} voxels: {results.status_counts()}")
    return results
