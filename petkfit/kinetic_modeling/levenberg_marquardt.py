r"""
This module provides a bounded Levenberg-Marquardt (LM) solver that is aware of fixed parameters, used to fit a
:class:`KineticModel<petkfit.kinetic_modeling.kinetic_models.KineticModel>` to a single TAC.

Given measured values :math:`y`, weights :math:`w` and a model :math:`f(p)`, the solver minimizes the weighted sum of
squared residuals

.. math::

    \mathrm{SSE}(p) = \sum_k w_k \left(y_k - f_k(p)\right)^2

subject to :math:`l \leq p \leq u`, while holding the fixed parameters at their initial values. Each iteration solves
the damped normal equations restricted to the free parameters,

.. math::

    \left(J^T W J + \lambda\, \mathrm{diag}(J^T W J)\right)\delta = J^T W r,

projects :math:`p+\delta` onto the bounds (the step is truncated, not discarded), and accepts the proposal only if
the SSE decreases. Accepted steps divide the damping :math:`\lambda`; rejected steps multiply it and retry from the
same parameters. If the damping exceeds its cap without an accepted step, the fit is *stalled* and the best
parameters found so far are returned.

Functions and classes in this module use :mod:`numpy` and :mod:`scipy.linalg`.

"""
from dataclasses import dataclass, field
import numpy as np
from scipy import linalg as sp_linalg
from .kinetic_model_context import KineticModelContext
from .kinetic_models import KineticModel

STATUS_CONVERGED = 'converged'
STATUS_MAX_ITERATIONS = 'max_iterations'
STATUS_STALLED = 'stalled'
STATUS_NO_FREE_PARAMETERS = 'no_free_parameters'


@dataclass(frozen=True)
class LevenbergMarquardtSettings:
    """
    Tuning constants of the solver.

    Attributes:
        initial_damping (float): Damping factor at the start of a fit.
        damping_up (float): Factor multiplying the damping after a rejected step.
        damping_down (float): Factor dividing the damping after an accepted step.
        max_damping (float): Damping above which the fit is declared stalled.
        ftol (float): Relative SSE improvement below which the fit has converged.
        xtol (float): Relative step norm below which the fit has converged.
        diagonal_floor (float): Lower bound for the entries of :math:`\\mathrm{diag}(J^T W J)` used in the damping
            term, so that insensitive parameters still get damped.
    """
    initial_damping: float = 1.0e-3
    damping_up: float = 10.0
    damping_down: float = 10.0
    max_damping: float = 1.0e16
    ftol: float = 1.0e-10
    xtol: float = 1.0e-10
    diagonal_floor: float = 1.0e-30


DEFAULT_SETTINGS = LevenbergMarquardtSettings()


@dataclass
class LevenbergMarquardtResult:
    """
    Outcome of fitting one TAC.

    Attributes:
        params (np.ndarray): Final parameter vector.
        fitted_tac (np.ndarray): Model TAC evaluated at :attr:`params`.
        sse (float): Weighted sum of squared residuals at :attr:`params`.
        num_iterations (int): Number of iterations (Jacobian evaluations) performed.
        status (str): One of ``'converged'``, ``'max_iterations'``, ``'stalled'`` or ``'no_free_parameters'``.
        sse_history (list[float]): SSE at the initial parameters followed by the SSE of every accepted step.
    """
    params: np.ndarray
    fitted_tac: np.ndarray
    sse: float
    num_iterations: int
    status: str
    sse_history: list = field(default_factory=list)

    @property
    def converged(self) -> bool:
        """Whether the fit terminated on a convergence criterion."""
        return self.status in (STATUS_CONVERGED, STATUS_NO_FREE_PARAMETERS)


def weighted_sse(tac: np.ndarray, fitted_tac: np.ndarray, weights: np.ndarray) -> float:
    """Weighted sum of squared residuals."""
    resid = tac - fitted_tac
    return float(np.sum(weights * resid * resid))


def _solve_damped_normal_equations(jtwj: np.ndarray,
                                   jtwr: np.ndarray,
                                   damping: float,
                                   diagonal_floor: float) -> np.ndarray:
    lhs = jtwj + damping * np.diag(np.maximum(np.diag(jtwj), diagonal_floor))
    return sp_linalg.solve(lhs, jtwr, assume_a='sym')


def fit_tac_with_levenberg_marquardt(model: KineticModel,
                                     context: KineticModelContext,
                                     tac: np.ndarray,
                                     weights: np.ndarray,
                                     initial_params: np.ndarray,
                                     lower_bounds: np.ndarray,
                                     upper_bounds: np.ndarray,
                                     free_mask: np.ndarray,
                                     max_iters: int,
                                     settings: LevenbergMarquardtSettings = DEFAULT_SETTINGS
                                     ) -> LevenbergMarquardtResult:
    r"""
    Fits ``model`` to one TAC with the bounded LM algorithm.

    The inputs are assumed to be consistent (see
    :func:`validate_fit_inputs<petkfit.kinetic_modeling.voxel_fitting.validate_fit_inputs>`); in particular the
    initial parameters are assumed to lie within the bounds.

    The objective is :math:`\sum_k w_k (y_k - f_k)^2`: weights multiply the squared residuals, not the residuals,
    so inverse-variance weights can be passed as they are.

    Args:
        model (KineticModel): The kinetic model to fit.
        context (KineticModelContext): The shared experiment description.
        tac (np.ndarray): Measured TAC, one value per frame.
        weights (np.ndarray): Weight of each frame.
        initial_params (np.ndarray): Starting parameter vector. It is copied, never modified.
        lower_bounds (np.ndarray): Lower bound of each parameter.
        upper_bounds (np.ndarray): Upper bound of each parameter.
        free_mask (np.ndarray): Boolean mask; True for parameters that are estimated, False for fixed ones.
        max_iters (int): Maximum number of iterations. With 0, the initial parameters are returned unchanged.
        settings (LevenbergMarquardtSettings): Tuning constants.

    Returns:
        LevenbergMarquardtResult: The fitted parameters, fitted TAC and termination information.

    """
    params = np.array(initial_params, dtype=float, copy=True)
    free_idx = np.flatnonzero(free_mask)
    fitted = model.evaluate(params, context)
    sse = weighted_sse(tac, fitted, weights)
    history = [sse]

    if free_idx.size == 0:
        return LevenbergMarquardtResult(params=params, fitted_tac=fitted, sse=sse, num_iterations=0,
                                        status=STATUS_NO_FREE_PARAMETERS, sse_history=history)

    lb_free = lower_bounds[free_idx]
    ub_free = upper_bounds[free_idx]
    damping = settings.initial_damping
    status = STATUS_MAX_ITERATIONS
    num_iters = 0

    while num_iters < max_iters:
        if sse == 0.0:
            status = STATUS_CONVERGED
            break
        num_iters += 1
        jac = model.jacobian(params, context)[:, free_idx]
        jtw = jac.T * weights
        jtwj = jtw @ jac
        jtwr = jtw @ (tac - fitted)

        accepted = False
        while damping <= settings.max_damping:
            try:
                delta = _solve_damped_normal_equations(jtwj, jtwr, damping, settings.diagonal_floor)
            except (sp_linalg.LinAlgError, ValueError):
                delta = None
            if delta is not None and np.all(np.isfinite(delta)):
                trial = params.copy()
                trial[free_idx] = np.clip(params[free_idx] + delta, lb_free, ub_free)
                trial_fitted = model.evaluate(trial, context)
                trial_sse = weighted_sse(tac, trial_fitted, weights)
                if np.isfinite(trial_sse) and trial_sse < sse:
                    accepted = True
                    break
            damping *= settings.damping_up

        if not accepted:
            status = STATUS_STALLED
            break

        step = trial[free_idx] - params[free_idx]
        improvement = sse - trial_sse
        prev_sse = sse
        params, fitted, sse = trial, trial_fitted, trial_sse
        history.append(sse)
        damping = max(damping / settings.damping_down, np.finfo(float).tiny)

        step_norm = np.linalg.norm(step)
        if (improvement <= settings.ftol * prev_sse
                or step_norm <= settings.xtol * (np.linalg.norm(params[free_idx]) + settings.xtol)):
            status = STATUS_CONVERGED
            break

    return LevenbergMarquardtResult(params=params, fitted_tac=fitted, sse=sse, num_iterations=num_iters,
                                    status=status, sse_history=history)
