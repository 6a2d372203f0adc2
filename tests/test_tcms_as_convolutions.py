import unittest
import numpy as np
from petkfit.kinetic_modeling.tcms_as_convolutions import (exp_convolution,
                                                           exp_convolution_with_rate_derivative,
                                                           exp_convolution_with_second_rate_derivative,
                                                           frame_average,
                                                           response_function_serial_2tcm,
                                                           serial_2tcm_eigen_derivatives,
                                                           serial_2tcm_eigen_terms,
                                                           serial_2tcm_tissue_rate_derivatives)
from synthetic_data import plasma_curve


class TestConvolutionKernels(unittest.TestCase):
    def setUp(self):
        self.dt = 0.05
        self.t = np.arange(400) * self.dt
        self.u = plasma_curve(self.t + self.dt / 2.0)

    def test_exp_convolution_matches_direct_convolution(self):
        rate = 0.7
        expected = np.convolve(self.u, np.exp(-rate * self.t))[:self.u.shape[0]] * self.dt
        np.testing.assert_allclose(exp_convolution(self.u, rate, self.dt), expected, rtol=1e-10, atol=1e-12)

    def test_serial_2tcm_response_convolution(self):
        k1, k2, k3, k4 = 0.8, 1.2, 0.05, 0.02
        alpha_1, alpha_2, c_1, c_2, _ = serial_2tcm_eigen_terms(k2, k3, k4)
        recursive = k1 * (c_1 * exp_convolution(self.u, alpha_1, self.dt)
                          + c_2 * exp_convolution(self.u, alpha_2, self.dt))
        response = response_function_serial_2tcm(self.t, k1, k2, k3, k4)
        expected = np.convolve(self.u, response)[:self.u.shape[0]] * self.dt
        np.testing.assert_allclose(recursive, expected, rtol=1e-9, atol=1e-12)

    def test_response_starts_at_k1(self):
        self.assertAlmostEqual(response_function_serial_2tcm(np.zeros(1), 0.3, 0.5, 0.1, 0.05)[0], 0.3)

    def test_rate_derivative_matches_finite_differences(self):
        rate, h = 0.7, 1e-6
        conv, d_conv = exp_convolution_with_rate_derivative(self.u, rate, self.dt)
        np.testing.assert_allclose(conv, exp_convolution(self.u, rate, self.dt))
        fd = (exp_convolution(self.u, rate + h, self.dt) - exp_convolution(self.u, rate - h, self.dt)) / (2.0 * h)
        np.testing.assert_allclose(d_conv, fd, rtol=1e-6, atol=1e-9)

    def test_second_rate_derivative_matches_finite_differences(self):
        rate, h = 0.7, 1e-6
        conv, d_conv, d2_conv = exp_convolution_with_second_rate_derivative(self.u, rate, self.dt)
        np.testing.assert_allclose(conv, exp_convolution(self.u, rate, self.dt))
        np.testing.assert_allclose(d_conv, exp_convolution_with_rate_derivative(self.u, rate, self.dt)[1])
        fd = (exp_convolution_with_rate_derivative(self.u, rate + h, self.dt)[1]
              - exp_convolution_with_rate_derivative(self.u, rate - h, self.dt)[1]) / (2.0 * h)
        np.testing.assert_allclose(d2_conv, fd, rtol=1e-6, atol=1e-9)

    def test_frame_average(self):
        vals = np.arange(10, dtype=float)
        out = frame_average(vals, np.array([0, 2, 5], dtype=np.int64), np.array([2, 5, 10], dtype=np.int64))
        np.testing.assert_allclose(out, [0.5, 3.0, 7.0])


class TestSerial2TCMEigenTerms(unittest.TestCase):
    def test_amplitudes_sum_to_one(self):
        alpha_1, alpha_2, c_1, c_2, delta_a = serial_2tcm_eigen_terms(1.2, 0.05, 0.02)
        self.assertAlmostEqual(c_1 + c_2, 1.0)
        self.assertLess(alpha_1, alpha_2)
        self.assertAlmostEqual(alpha_1 * alpha_2, 1.2 * 0.02)
        self.assertAlmostEqual(alpha_1 + alpha_2, 1.2 + 0.05 + 0.02)
        self.assertGreater(delta_a, 0.0)

    def test_separation_is_floored(self):
        *_, delta_a = serial_2tcm_eigen_terms(0.0, 0.0, 0.0)
        self.assertGreater(delta_a, 0.0)

    def test_derivatives_match_finite_differences(self):
        ks = np.array([1.2, 0.05, 0.02])
        analytic = serial_2tcm_eigen_derivatives(*ks)
        h = 1e-7
        for r in range(3):
            k_hi = ks.copy()
            k_lo = ks.copy()
            k_hi[r] += h
            k_lo[r] -= h
            fd = (np.array(serial_2tcm_eigen_terms(*k_hi)[:4]) - np.array(serial_2tcm_eigen_terms(*k_lo)[:4])) / (2 * h)
            np.testing.assert_allclose(analytic[r], fd, rtol=1e-5, atol=1e-7)

    def test_separation_without_cancellation(self):
        *_, delta_a = serial_2tcm_eigen_terms(0.5, 0.0, 0.5 + 1e-8)
        self.assertAlmostEqual(delta_a / 1e-8, 1.0, places=6)


class TestSerial2TCMTissueDerivatives(unittest.TestCase):
    def setUp(self):
        self.dt = 0.05
        self.u = plasma_curve((np.arange(400) + 0.5) * self.dt)

    def unit_tissue(self, k2, k3, k4):
        alpha_1, alpha_2, c_1, c_2, _ = serial_2tcm_eigen_terms(k2, k3, k4)
        return c_1 * exp_convolution(self.u, alpha_1, self.dt) + c_2 * exp_convolution(self.u, alpha_2, self.dt)

    def test_matches_finite_differences(self):
        ks = np.array([1.2, 0.05, 0.02])
        analytic = serial_2tcm_tissue_rate_derivatives(self.u, ks[0], ks[1], ks[2], self.dt)
        h = 1e-6
        for r in range(3):
            k_hi = ks.copy()
            k_lo = ks.copy()
            k_hi[r] += h
            k_lo[r] -= h
            fd = (self.unit_tissue(*k_hi) - self.unit_tissue(*k_lo)) / (2.0 * h)
            np.testing.assert_allclose(analytic[r], fd, rtol=1e-5, atol=1e-8)

    def test_coincident_eigenvalues_are_finite(self):
        k2 = k4 = 0.3
        analytic = serial_2tcm_tissue_rate_derivatives(self.u, k2, 0.0, k4, self.dt)
        self.assertTrue(np.all(np.isfinite(analytic)))
        # k3 is at its lower bound, so its derivative is taken from above.
        h = 1e-5
        fd_k3 = (-3.0 * self.unit_tissue(k2, 0.0, k4) + 4.0 * self.unit_tissue(k2, h, k4)
                 - self.unit_tissue(k2, 2.0 * h, k4)) / (2.0 * h)
        np.testing.assert_allclose(analytic[1], fd_k3, rtol=1e-5, atol=1e-8)
        # Without k3 the second compartment is disconnected: only k2 matters.
        d_conv = exp_convolution_with_rate_derivative(self.u, k2, self.dt)[1]
        np.testing.assert_allclose(analytic[0], d_conv, rtol=1e-10, atol=1e-14)
        np.testing.assert_allclose(analytic[2], 0.0, atol=1e-14)


if __name__ == '__main__':
    unittest.main()
