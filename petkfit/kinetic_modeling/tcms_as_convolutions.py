r"""
This module contains the numerical kernels used to evaluate Tissue Compartment Models (TCMs) as explicit
convolutions on a uniform fine time grid, together with the derivatives of those convolutions with respect to the
rate constants.

All convolutions in this module are of an input function with a single decaying exponential. For a uniform grid with
step :math:`\Delta t` and samples :math:`u_j`, we define

.. math::

    E_i(a) = \Delta t \sum_{j\leq i} e^{-a (i-j) \Delta t} u_j,

which satisfies the recursion :math:`E_i = q E_{i-1} + \Delta t\, u_i` with :math:`q=e^{-a\Delta t}`. The derivative
with respect to the rate is

.. math::

    \frac{\partial E_i}{\partial a} = -\Delta t^2 \sum_{j\leq i} (i-j) e^{-a (i-j) \Delta t} u_j,

which satisfies a second, coupled recursion. Both are evaluated in a single :math:`O(n)` pass, so the derivative is
the exact derivative of the discrete convolution and not an approximation of it.

Note:
    All kernels in this module are decorated with :func:`numba.njit`. They are compiled to machine code at runtime
    (Just-In-Time compilation), which provides a significant speed-up for voxel-wise fitting.

Requires:
    The module relies on the :doc:`numpy <numpy:index>` and :doc:`numba <numba:index>` modules.

"""

import numba
import numpy as np

#: Smallest separation allowed between the two eigenvalues of the serial 2TCM.
MIN_EIGENVALUE_SEPARATION = 1.0e-10

#: Eigenvalue separation below which tissue derivatives use the coincident-eigenvalue expansion.
COINCIDENT_EIGENVALUE_SEPARATION = 1.0e-6


@numba.njit()
def exp_convolution(u: np.ndarray, rate: float, dt: float) -> np.ndarray:
    r"""Discrete convolution of ``u`` with :math:`e^{-\mathrm{rate}\cdot t}`, scaled by ``dt``.

    Args:
        u (np.ndarray): Input function sampled on a uniform grid.
        rate (float): Rate of the exponential kernel.
        dt (float): Grid step.

    Returns:
        (np.ndarray): Convolution values on the same grid as ``u``.
    """
    q = np.exp(-rate * dt)
    out = np.empty(u.shape[0])
    acc = 0.0
    for i in range(u.shape[0]):
        acc = q * acc + u[i]
        out[i] = acc * dt
    return out


@numba.njit()
def exp_convolution_with_rate_derivative(u: np.ndarray, rate: float, dt: float):
    r"""Discrete convolution of ``u`` with :math:`e^{-\mathrm{rate}\cdot t}` and its derivative with respect to
    ``rate``.

    Args:
        u (np.ndarray): Input function sampled on a uniform grid.
        rate (float): Rate of the exponential kernel.
        dt (float): Grid step.

    Returns:
        tuple[np.ndarray, np.ndarray]: The convolution and its derivative with respect to ``rate``.
    """
    q = np.exp(-rate * dt)
    conv = np.empty(u.shape[0])
    d_conv = np.empty(u.shape[0])
    s_acc = 0.0
    t_acc = 0.0
    for i in range(u.shape[0]):
        t_acc = q * (t_acc + s_acc)
        s_acc = q * s_acc + u[i]
        conv[i] = s_acc * dt
        d_conv[i] = -t_acc * dt * dt
    return conv, d_conv


@numba.njit()
def exp_convolution_with_second_rate_derivative(u: np.ndarray, rate: float, dt: float):
    r"""Discrete convolution of ``u`` with :math:`e^{-\mathrm{rate}\cdot t}` and its first and second derivatives
    with respect to ``rate``.

    The second derivative is :math:`\Delta t^3 \sum_{j\leq i} (i-j)^2 e^{-a (i-j) \Delta t} u_j`, which is
    accumulated in the same pass as the first two sums.

    Args:
        u (np.ndarray): Input function sampled on a uniform grid.
        rate (float): Rate of the exponential kernel.
        dt (float): Grid step.

    Returns:
        tuple[np.ndarray, np.ndarray, np.ndarray]: The convolution, its first and its second derivative.
    """
    q = np.exp(-rate * dt)
    conv = np.empty(u.shape[0])
    d_conv = np.empty(u.shape[0])
    d2_conv = np.empty(u.shape[0])
    s_acc = 0.0
    t_acc = 0.0
    r_acc = 0.0
    for i in range(u.shape[0]):
        r_acc = q * (r_acc + 2.0 * t_acc + s_acc)
        t_acc = q * (t_acc + s_acc)
        s_acc = q * s_acc + u[i]
        conv[i] = s_acc * dt
        d_conv[i] = -t_acc * dt * dt
        d2_conv[i] = r_acc * dt * dt * dt
    return conv, d_conv, d2_conv


@numba.njit()
def frame_average(vals: np.ndarray, idx_start: np.ndarray, idx_stop: np.ndarray) -> np.ndarray:
    r"""Averages fine-grid samples over each frame.

    Frame ``k`` is the mean of ``vals[idx_start[k]:idx_stop[k]]``.

    Args:
        vals (np.ndarray): Values on the fine grid.
        idx_start (np.ndarray): First fine-grid index of each frame.
        idx_stop (np.ndarray): One past the last fine-grid index of each frame.

    Returns:
        (np.ndarray): Frame-averaged values.
    """
    num_frm = idx_start.shape[0]
    out = np.empty(num_frm)
    for k in range(num_frm):
        acc = 0.0
        for i in range(idx_start[k], idx_stop[k]):
            acc += vals[i]
        out[k] = acc / (idx_stop[k] - idx_start[k])
    return out


@numba.njit()
def serial_2tcm_eigen_terms(k2: float, k3: float, k4: float):
    r"""Exponents and amplitudes of the impulse response of both compartments of the *serial* 2TCM.

    The total tissue response is :math:`f(t)=k_1\left[c_1 e^{-\alpha_1 t} + c_2 e^{-\alpha_2 t}\right]` with

    .. math::

        s&= k_{2}+k_{3}+k_{4}\\
        \Delta \alpha&=\sqrt{s^{2}-4k_{2}k_{4}}=\sqrt{(k_2-k_4)^{2}+k_3(k_3+2k_2+2k_4)}\\
        \alpha_{1,2}&=\frac{s\mp\Delta \alpha}{2}\\
        c_1&=\frac{k_3+k_4-\alpha_1}{\Delta \alpha},\quad c_2=\frac{\alpha_2-k_3-k_4}{\Delta \alpha}

    :math:`\Delta\alpha` is floored at :data:`MIN_EIGENVALUE_SEPARATION`.

    Args:
        k2 (float): Rate constant for transport from first tissue compartment back to plasma/blood.
        k3 (float): Rate constant for transport from first tissue compartment to second tissue compartment.
        k4 (float): Rate constant for transport from second tissue compartment back to first tissue compartment.

    Returns:
        tuple: ``(alpha_1, alpha_2, c_1, c_2, delta_a)``.
    """
    s = k2 + k3 + k4
    # Equal to s^2 - 4 k2 k4, without the cancellation when the eigenvalues are close.
    disc = (k2 - k4) * (k2 - k4) + k3 * (k3 + 2.0 * k2 + 2.0 * k4)
    delta_a = np.sqrt(disc) if disc > 0.0 else 0.0
    if delta_a < MIN_EIGENVALUE_SEPARATION:
        delta_a = MIN_EIGENVALUE_SEPARATION
    alpha_1 = (s - delta_a) / 2.0
    alpha_2 = (s + delta_a) / 2.0
    # c_1 + c_2 = 1 must hold exactly when the separation is floored.
    g = (k3 + k4 - k2) / 2.0
    c_1 = 0.5 + g / delta_a
    c_2 = 0.5 - g / delta_a
    return alpha_1, alpha_2, c_1, c_2, delta_a


@numba.njit()
def serial_2tcm_eigen_derivatives(k2: float, k3: float, k4: float):
    r"""Derivatives of :math:`(\alpha_1, \alpha_2, c_1, c_2)` with respect to :math:`(k_2, k_3, k_4)`.

    They are unbounded when the eigenvalues coincide; see :func:`serial_2tcm_tissue_rate_derivatives`.

    Args:
        k2 (float): Rate constant for transport from first tissue compartment back to plasma/blood.
        k3 (float): Rate constant for transport from first tissue compartment to second tissue compartment.
        k4 (float): Rate constant for transport from second tissue compartment back to first tissue compartment.

    Returns:
        (np.ndarray): Array of shape ``(3, 4)``. Row ``r`` holds the derivatives with respect to ``k_{r+2}`` of
        ``alpha_1``, ``alpha_2``, ``c_1`` and ``c_2`` in that order.
    """
    alpha_1, alpha_2, c_1, c_2, delta_a = serial_2tcm_eigen_terms(k2, k3, k4)
    s = k2 + k3 + k4
    m = k3 + k4
    d_delta = np.array([(s - 2.0 * k4) / delta_a, s / delta_a, (s - 2.0 * k2) / delta_a])
    d_m = np.array([0.0, 1.0, 1.0])
    out = np.empty((3, 4))
    for r in range(3):
        d_a1 = (1.0 - d_delta[r]) / 2.0
        d_a2 = (1.0 + d_delta[r]) / 2.0
        out[r, 0] = d_a1
        out[r, 1] = d_a2
        out[r, 2] = ((d_m[r] - d_a1) * delta_a - (m - alpha_1) * d_delta[r]) / (delta_a * delta_a)
        out[r, 3] = ((d_a2 - d_m[r]) * delta_a - (alpha_2 - m) * d_delta[r]) / (delta_a * delta_a)
    return out


@numba.njit()
def serial_2tcm_tissue_rate_derivatives(c_in: np.ndarray, k2: float, k3: float, k4: float, dt: float) -> np.ndarray:
    r"""Derivatives of the unit-:math:`K_1` serial 2TCM tissue curve with respect to :math:`(k_2, k_3, k_4)`.

    The tissue curve is :math:`U = c_1 E(\alpha_1) + c_2 E(\alpha_2)`, where :math:`E` is the convolution of the
    input with a decaying exponential. Away from coincident eigenvalues, the derivatives follow from
    :func:`serial_2tcm_eigen_derivatives`. Those diverge as :math:`\Delta\alpha\to0` (e.g. :math:`k_3=0` and
    :math:`k_2=k_4`) even though :math:`U` stays smooth, so below :data:`COINCIDENT_EIGENVALUE_SEPARATION` the
    expansion of :math:`U` around :math:`a=s/2` is differentiated instead:

    .. math::

        U \approx E(a) - g E'(a) + \frac{\Delta\alpha^2}{8} E''(a),\quad g=\frac{k_3+k_4-k_2}{2}.

    Args:
        c_in (np.ndarray): Input function on the fine grid.
        k2 (float): Rate constant for transport from first tissue compartment back to plasma/blood.
        k3 (float): Rate constant for transport from first tissue compartment to second tissue compartment.
        k4 (float): Rate constant for transport from second tissue compartment back to first tissue compartment.
        dt (float): Fine-grid step.

    Returns:
        (np.ndarray): Array of shape ``(3, len(c_in))``. Row ``r`` is the derivative with respect to ``k_{r+2}``.
    """
    alpha_1, alpha_2, c_1, c_2, delta_a = serial_2tcm_eigen_terms(k2, k3, k4)
    out = np.empty((3, c_in.shape[0]))
    if delta_a < COINCIDENT_EIGENVALUE_SEPARATION:
        s = k2 + k3 + k4
        g = (k3 + k4 - k2) / 2.0
        _, d_e, d2_e = exp_convolution_with_second_rate_derivative(c_in, s / 2.0, dt)
        out[0] = d_e + ((s - 2.0 * k4) / 4.0 - g / 2.0) * d2_e
        out[1] = (s / 4.0 - g / 2.0) * d2_e
        out[2] = ((s - 2.0 * k2) / 4.0 - g / 2.0) * d2_e
        return out
    e_1, d_e_1 = exp_convolution_with_rate_derivative(c_in, alpha_1, dt)
    e_2, d_e_2 = exp_convolution_with_rate_derivative(c_in, alpha_2, dt)
    d_eigen = serial_2tcm_eigen_derivatives(k2, k3, k4)
    for r in range(3):
        d_a1, d_a2, d_c1, d_c2 = d_eigen[r, 0], d_eigen[r, 1], d_eigen[r, 2], d_eigen[r, 3]
        out[r] = d_c1 * e_1 + c_1 * d_e_1 * d_a1 + d_c2 * e_2 + c_2 * d_e_2 * d_a2
    return out


@numba.njit()
def response_function_serial_2tcm(t: np.ndarray, k1: float, k2: float, k3: float, k4: float) -> np.ndarray:
    r"""The response function for both compartments of the *serial* 2TCM.

    Args:
        t (np.ndarray): Array containing time-points where :math:`t\geq0`.
        k1 (float): Rate constant for transport from plasma/blood to tissue compartment.
        k2 (float): Rate constant for transport from first tissue compartment back to plasma/blood.
        k3 (float): Rate constant for transport from first tissue compartment to second tissue compartment.
        k4 (float): Rate constant for transport from second tissue compartment back to first tissue compartment.

    Returns:
        (np.ndarray): Array containing response function values given the constants.

    See Also:
        :func:`serial_2tcm_eigen_terms`
    """
    alpha_1, alpha_2, c_1, c_2, _ = serial_2tcm_eigen_terms(k2, k3, k4)
    return k1 * (c_1 * np.exp(-alpha_1 * t) + c_2 * np.exp(-alpha_2 * t))
