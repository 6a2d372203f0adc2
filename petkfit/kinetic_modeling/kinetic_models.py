r"""
This module contains the kinetic models that can be fit with :mod:`petkfit.kinetic_modeling.levenberg_marquardt`.

A kinetic model is a small strategy object implementing :class:`KineticModel`: it knows the names of its parameters,
evaluates the frame-averaged model TAC for a parameter vector (:meth:`KineticModel.evaluate`), and evaluates the
matrix of partial derivatives of that TAC with respect to every parameter (:meth:`KineticModel.jacobian`). The solver
only interacts with models through this interface, so new compartmental models can be added without touching it.

The module currently provides :class:`DualInputLiverModel`: a reversible two-tissue compartment model driven by a
dual (hepatic artery + portal vein) input, plus a whole-blood vascular fraction. The portal-vein input is modeled as
the arterial plasma input dispersed through the gut,

.. math::

    C_{\mathrm{pv}}(t) = k_a e^{-k_a t} \otimes C_p(t),

and the liver sees the mixture

.. math::

    C_{\mathrm{in}}(t) = f_A C_p(t) + (1-f_A) C_{\mathrm{pv}}(t).

The tissue concentration is the convolution of :math:`C_{\mathrm{in}}` with the impulse response of both compartments
of the serial 2TCM (see :func:`petkfit.kinetic_modeling.tcms_as_convolutions.serial_2tcm_eigen_terms`), and the model
TAC is

.. math::

    C_{T}(t) = \left[(1-v_b) C_{\mathrm{tissue}}(t) + v_b C_{\mathrm{wb}}(t)\right] e^{-\lambda t},

averaged over each frame. The Jacobian is obtained by differentiating the discrete convolutions in closed form, and
uses exactly the same fine grid and frame averaging as the forward model.

"""
from abc import ABC, abstractmethod
from typing import Union
import numba
import numpy as np
from .kinetic_model_context import KineticModelContext
from .tcms_as_convolutions import (exp_convolution,
                                   exp_convolution_with_rate_derivative,
                                   frame_average,
                                   serial_2tcm_eigen_terms,
                                   serial_2tcm_tissue_rate_derivatives)


class KineticModel(ABC):
    """
    Interface shared by every kinetic model.

    Attributes:
        param_names (tuple[str, ...]): Names of the model parameters, in the order used by parameter vectors.
        default_initial (tuple[float, ...]): Default initial guess of each parameter.
        default_lower (tuple[float, ...]): Default lower bound of each parameter.
        default_upper (tuple[float, ...]): Default upper bound of each parameter.
    """
    param_names: tuple = ()
    default_initial: tuple = ()
    default_lower: tuple = ()
    default_upper: tuple = ()

    @property
    def num_params(self) -> int:
        """Number of model parameters."""
        return len(self.param_names)

    @abstractmethod
    def evaluate(self, params: np.ndarray, context: KineticModelContext) -> np.ndarray:
        """
        Evaluates the model TAC.

        Args:
            params (np.ndarray): Parameter vector of length :attr:`num_params`.
            context (KineticModelContext): The shared experiment description.

        Returns:
            np.ndarray: Model value for each frame.
        """
        raise NotImplementedError

    @abstractmethod
    def jacobian(self, params: np.ndarray, context: KineticModelContext) -> np.ndarray:
        """
        Evaluates the partial derivatives of the model TAC.

        Args:
            params (np.ndarray): Parameter vector of length :attr:`num_params`.
            context (KineticModelContext): The shared experiment description.

        Returns:
            np.ndarray: Array of shape ``(num_frm, num_params)``.
        """
        raise NotImplementedError


@numba.njit()
def _liver_tissue_and_input(params, cp, dt):
    ka = params[5]
    fa = params[6]
    cpv = ka * exp_convolution(cp, ka, dt)
    c_in = fa * cp + (1.0 - fa) * cpv
    alpha_1, alpha_2, c_1, c_2, _ = serial_2tcm_eigen_terms(params[2], params[3], params[4])
    c_t = params[1] * (c_1 * exp_convolution(c_in, alpha_1, dt) + c_2 * exp_convolution(c_in, alpha_2, dt))
    return c_t, c_in, cpv


@numba.njit()
def generate_liver_tac(params: np.ndarray,
                       cp: np.ndarray,
                       wb: np.ndarray,
                       decay: np.ndarray,
                       dt: float,
                       idx_start: np.ndarray,
                       idx_stop: np.ndarray) -> np.ndarray:
    r"""Frame-averaged TAC of the dual-input liver model.

    Args:
        params (np.ndarray): ``[vb, k1, k2, k3, k4, ka, fa]``.
        cp (np.ndarray): Plasma input on the fine grid.
        wb (np.ndarray): Whole-blood input on the fine grid.
        decay (np.ndarray): Decay factor on the fine grid.
        dt (float): Fine-grid step.
        idx_start (np.ndarray): First fine-grid index of each frame.
        idx_stop (np.ndarray): One past the last fine-grid index of each frame.

    Returns:
        (np.ndarray): Model value for each frame.
    """
    vb = params[0]
    c_t, _, _ = _liver_tissue_and_input(params, cp, dt)
    fine_tac = ((1.0 - vb) * c_t + vb * wb) * decay
    return frame_average(fine_tac, idx_start, idx_stop)


@numba.njit()
def generate_liver_jacobian(params: np.ndarray,
                            cp: np.ndarray,
                            wb: np.ndarray,
                            decay: np.ndarray,
                            dt: float,
                            idx_start: np.ndarray,
                            idx_stop: np.ndarray) -> np.ndarray:
    r"""Partial derivatives of the frame-averaged TAC of the dual-input liver model.

    Args:
        params (np.ndarray): ``[vb, k1, k2, k3, k4, ka, fa]``.
        cp (np.ndarray): Plasma input on the fine grid.
        wb (np.ndarray): Whole-blood input on the fine grid.
        decay (np.ndarray): Decay factor on the fine grid.
        dt (float): Fine-grid step.
        idx_start (np.ndarray): First fine-grid index of each frame.
        idx_stop (np.ndarray): One past the last fine-grid index of each frame.

    Returns:
        (np.ndarray): Array of shape ``(num_frm, 7)``; column ``i`` is the derivative with respect to ``params[i]``.
    """
    vb, k1, k2, k3, k4, ka, fa = params[0], params[1], params[2], params[3], params[4], params[5], params[6]
    num_frm = idx_start.shape[0]
    jac = np.empty((num_frm, 7))

    p_conv, d_p_conv = exp_convolution_with_rate_derivative(cp, ka, dt)
    cpv = ka * p_conv
    c_in = fa * cp + (1.0 - fa) * cpv
    d_cin_d_ka = (1.0 - fa) * (p_conv + ka * d_p_conv)
    d_cin_d_fa = cp - cpv

    alpha_1, alpha_2, c_1, c_2, _ = serial_2tcm_eigen_terms(k2, k3, k4)
    unit_tissue = c_1 * exp_convolution(c_in, alpha_1, dt) + c_2 * exp_convolution(c_in, alpha_2, dt)
    c_t = k1 * unit_tissue

    scale = (1.0 - vb) * decay
    jac[:, 0] = frame_average((wb - c_t) * decay, idx_start, idx_stop)
    jac[:, 1] = frame_average(scale * unit_tissue, idx_start, idx_stop)

    d_unit_tissue = serial_2tcm_tissue_rate_derivatives(c_in, k2, k3, k4, dt)
    for r in range(3):
        jac[:, 2 + r] = frame_average(scale * k1 * d_unit_tissue[r], idx_start, idx_stop)

    d_tissue_ka = k1 * (c_1 * exp_convolution(d_cin_d_ka, alpha_1, dt) + c_2 * exp_convolution(d_cin_d_ka, alpha_2, dt))
    jac[:, 5] = frame_average(scale * d_tissue_ka, idx_start, idx_stop)
    d_tissue_fa = k1 * (c_1 * exp_convolution(d_cin_d_fa, alpha_1, dt) + c_2 * exp_convolution(d_cin_d_fa, alpha_2, dt))
    jac[:, 6] = frame_average(scale * d_tissue_fa, idx_start, idx_stop)

    return jac


class DualInputLiverModel(KineticModel):
    """
    Dual-input reversible 2TCM of the liver with a whole-blood vascular fraction.

    Parameters, in order:
        * ``vb``: whole-blood volume fraction.
        * ``k1``: rate constant from the blood input into the first tissue compartment.
        * ``k2``: rate constant from the first tissue compartment back to blood.
        * ``k3``: rate constant from the first to the second tissue compartment.
        * ``k4``: rate constant from the second back to the first tissue compartment.
        * ``ka``: rate constant of the gut dispersion producing the portal-vein input.
        * ``fa``: hepatic artery fraction of the dual input.

    See Also:
        * :func:`generate_liver_tac`
        * :func:`generate_liver_jacobian`
    """
    param_names = ('vb', 'k1', 'k2', 'k3', 'k4', 'ka', 'fa')
    default_initial = (0.05, 0.5, 1.0, 0.01, 0.01, 1.0, 0.1)
    default_lower = (0.0, 0.0, 1.0e-4, 0.0, 0.0, 1.0e-4, 0.0)
    default_upper = (1.0, 10.0, 10.0, 1.0, 1.0, 10.0, 1.0)

    def evaluate(self, params: np.ndarray, context: KineticModelContext) -> np.ndarray:
        return generate_liver_tac(np.asarray(params, dtype=float),
                                  context.fine_plasma,
                                  context.fine_whole_blood,
                                  context.fine_decay,
                                  context.td,
                                  context.frame_idx_start,
                                  context.frame_idx_stop)

    def jacobian(self, params: np.ndarray, context: KineticModelContext) -> np.ndarray:
        return generate_liver_jacobian(np.asarray(params, dtype=float),
                                       context.fine_plasma,
                                       context.fine_whole_blood,
                                       context.fine_decay,
                                       context.td,
                                       context.frame_idx_start,
                                       context.frame_idx_stop)


_KINETIC_MODELS = {'liver': DualInputLiverModel}


def get_kinetic_model(model_name: str) -> KineticModel:
    """
    Function for obtaining a kinetic model by name.

    Args:
        model_name (str): Name of the model. Currently only ``'liver'`` is supported.

    Returns:
        KineticModel: A new instance of the requested model.

    Raises:
        ValueError: If the model name is not recognized.
    """
    if model_name not in _KINETIC_MODELS:
        raise ValueError(f"Invalid model! Must be one of {list(_KINETIC_MODELS)}. Got {model_name}.")
    return _KINETIC_MODELS[model_name]()


def get_parameter_config(model: KineticModel,
                         initial_params: Union[list, np.ndarray, None] = None,
                         lower_bounds: Union[list, np.ndarray, None] = None,
                         upper_bounds: Union[list, np.ndarray, None] = None,
                         fixed_params: Union[list, None] = None) -> tuple:
    """
    Builds the initial guess, bounds and free mask of a fit, falling back to the defaults of the model.

    Args:
        model (KineticModel): The kinetic model to fit.
        initial_params (list, optional): Initial guess of each parameter. Defaults to the model defaults.
        lower_bounds (list, optional): Lower bound of each parameter. Defaults to the model defaults.
        upper_bounds (list, optional): Upper bound of each parameter. Defaults to the model defaults.
        fixed_params (list[str], optional): Names of the parameters held at their initial value.

    Returns:
        tuple: ``(initial_params, lower_bounds, upper_bounds, free_mask)`` as numpy arrays.

    Raises:
        ValueError: If an array does not have one value per parameter, or if a fixed parameter name is unknown.
    """
    config = []
    for name, vals, default in (('initial guesses', initial_params, model.default_initial),
                                ('lower bounds', lower_bounds, model.default_lower),
                                ('upper bounds', upper_bounds, model.default_upper)):
        arr = np.asarray(default if vals is None else vals, dtype=float)
        if arr.shape != (model.num_params,):
            raise ValueError(f"The {name} must have one value per parameter {model.param_names}. Got {arr.tolist()}.")
        config.append(arr)
    free_mask = np.ones(model.num_params, dtype=bool)
    for name in (fixed_params or []):
        if name not in model.param_names:
            raise ValueError(f"Unknown parameter '{name}'. Must be one of {model.param_names}.")
        free_mask[model.param_names.index(name)] = False
    return config[0], config[1], config[2], free_mask
