import unittest

import numpy as np

import oneshotsg_dsp as dsp
from models import AnalysisWindow, BoundsError, ConfigurationError, Signal
from sg_fixtures import circular_convolve, shaped_noise, system_response


class RoundingTests(unittest.TestCase):
    def test_half_rounds_away_from_zero(self):
        self.assertEqual(dsp.round_half_up(2.5), 3)
        self.assertEqual(dsp.round_half_up(-2.5), -3)
        self.assertEqual(dsp.round_half_up(0.4), 0)
        self.assertEqual(dsp.round_half_up(2400.0), 2400)


class FrequencyAxisTests(unittest.TestCase):
    def test_bilateral_axis_folds_upper_half(self):
        np.testing.assert_allclose(dsp.bilateral_frequency_axis(8, 8), [0, 1, 2, 3, 4, -3, -2, -1])

    def test_bilateral_axis_is_antisymmetric(self):
        n = 11
        f = dsp.bilateral_frequency_axis(n, 44100)
        for k in range(1, n):
            self.assertEqual(f[k], -f[n - k])

    def test_unilateral_axis(self):
        np.testing.assert_allclose(dsp.frequency_axis(4, 8), [0, 2, 4, 6])


class SafeDivideTests(unittest.TestCase):
    def test_zero_denominator_is_flagged_and_zeroed(self):
        num = np.array([1.0, 2.0, 3.0])
        den = np.array([1.0, 0.0, 2.0])
        q, report = dsp.safe_divide(num, den, 1e-12)
        np.testing.assert_allclose(q, [1.0, 0.0, 1.5])
        self.assertEqual(report.count, 1)
        self.assertEqual(report.non_finite, 1)
        self.assertTrue(report.mask[1])

    def test_small_but_finite_quotient_is_kept(self):
        q, report = dsp.safe_divide(np.array([1.0, 1e-20]), np.array([1.0, 1e-20]), 1e-12)
        np.testing.assert_allclose(q, [1.0, 1.0])
        self.assertEqual(report.count, 1)
        self.assertEqual(report.non_finite, 0)


class DeconvolveTests(unittest.TestCase):
    def setUp(self):
        self.fs = 8000
        self.n = 4096
        self.x = shaped_noise(self.n, rolloff_db=20.0)

    def test_recovers_system_response(self):
        h = system_response(self.n, peak=300)
        y = circular_convolve(self.x, h)
        ir = dsp.deconvolve(Signal(y, self.fs), Signal(self.x, self.fs))
        self.assertEqual(ir.data.shape, (self.n,))
        np.testing.assert_allclose(ir.data, h, atol=1e-8)
        self.assertFalse(ir.singularities.has_singularities)

    def test_signal_against_itself_is_unit_impulse(self):
        ir = dsp.deconvolve(Signal(self.x, self.fs), Signal(self.x, self.fs))
        expected = np.zeros(self.n)
        expected[0] = 1.0
        np.testing.assert_allclose(ir.data, expected, atol=1e-10)
        self.assertEqual(dsp.locate_peak(ir), 0)
        self.assertEqual(ir.singularities.count, 0)

    def test_mono_stimulus_broadcasts_over_channels(self):
        h = np.column_stack([system_response(self.n, 100), 0.5 * system_response(self.n, 200)])
        y = circular_convolve(self.x, h)
        ir = dsp.deconvolve(Signal(y, self.fs), Signal(self.x, self.fs))
        self.assertEqual(ir.n_channels, 2)
        np.testing.assert_allclose(ir.data, h, atol=1e-8)

    def test_sample_rate_mismatch_raises(self):
        with self.assertRaises(ConfigurationError):
            dsp.deconvolve(Signal(self.x, 8000), Signal(self.x, 16000))

    def test_length_mismatch_raises(self):
        with self.assertRaises(ConfigurationError):
            dsp.deconvolve(Signal(self.x[:-1], self.fs), Signal(self.x, self.fs))

    def test_zero_stimulus_bin_is_reported(self):
        played = np.fft.irfft(np.ones(self.n // 2 + 1), n=self.n)
        spec = np.fft.rfft(played)
        spec[10] = 0.0
        played = np.fft.irfft(spec, n=self.n)
        ir = dsp.deconvolve(Signal(played, self.fs), Signal(played, self.fs))
        self.assertTrue(ir.singularities.has_singularities)
        self.assertTrue(np.all(np.isfinite(ir.data)))


class WindowTests(unittest.TestCase):
    def test_window_positions(self):
        lti, noise = dsp.build_windows(4800, 0.05, 0.5, 48000, 96000)
        self.assertEqual((lti.start, lti.length), (2400, 24000))
        self.assertEqual((noise.start, noise.length), (48000, 24000))
        self.assertEqual(lti.indices(), slice(2400, 26400))

    def test_peak_too_early_raises(self):
        with self.assertRaises(BoundsError):
            dsp.build_windows(0, 0.05, 0.5, 48000, 96000)

    def test_window_past_end_raises(self):
        with self.assertRaises(BoundsError):
            dsp.build_windows(4800, 0.05, 2.0, 48000, 96000)

    def test_empty_window_raises(self):
        with self.assertRaises(ConfigurationError):
            dsp.build_windows(4800, 0.05, 0.0, 48000, 96000)

    def test_locate_peak_uses_absolute_value(self):
        x = np.zeros((100, 2))
        x[10, 0] = 0.5
        x[20, 1] = -0.9
        x[30, 1] = 0.3
        ir = Signal(x, 1000)
        self.assertEqual(dsp.locate_peak(ir, 1), 20)
        self.assertEqual(dsp.locate_peak(ir, 0), 10)
        with self.assertRaises(ConfigurationError):
            dsp.locate_peak(ir, 2)

    def test_window_spectrum_is_zero_padded(self):
        x = np.zeros(64)
        x[5] = 1.0
        spec = dsp.window_spectrum(Signal(x, 64), AnalysisWindow(4, 8))
        self.assertEqual(spec.shape, (64,))
        np.testing.assert_allclose(np.abs(spec), np.ones(64))


class TaperTests(unittest.TestCase):
    def setUp(self):
        self.fs = 8000
        self.n = 1024
        rng = np.random.default_rng(3)
        self.spec = np.fft.fft(rng.standard_normal(self.n))

    def test_passband_unchanged_and_edges_zeroed(self):
        tapered, original = dsp.taper(self.spec, 100.0, 3000.0, self.fs)
        f = np.abs(dsp.bilateral_frequency_axis(self.n, self.fs))
        band = (f >= 100.0) & (f <= 3000.0)
        np.testing.assert_array_equal(tapered[band], self.spec[band])
        self.assertEqual(tapered[0], 0)
        self.assertEqual(tapered[self.n // 2], 0)
        self.assertIs(original, self.spec)

    def test_rolloff_follows_anchor_value(self):
        tapered, _ = dsp.taper(np.ones(self.n, dtype=complex), 100.0, 3000.0, self.fs)
        f = dsp.bilateral_frequency_axis(self.n, self.fs)
        low = (np.abs(f) < 100.0)
        expected = (1.0 - np.cos(np.pi * np.abs(f[low]) / 100.0)) / 2.0
        np.testing.assert_allclose(tapered[low].real, expected)

    def test_keeps_conjugate_symmetry(self):
        tapered, _ = dsp.taper(self.spec, 150.0, 2500.0, self.fs)
        for k in range(1, self.n):
            self.assertAlmostEqual(tapered[k], np.conj(tapered[self.n - k]))
        ir = np.fft.ifft(tapered)
        self.assertLess(np.max(np.abs(ir.imag)), 1e-12)

    def test_two_channel_spectrum(self):
        spec2 = np.column_stack([self.spec, 2.0 * self.spec])
        tapered, _ = dsp.taper(spec2, 100.0, 3000.0, self.fs)
        single, _ = dsp.taper(self.spec, 100.0, 3000.0, self.fs)
        np.testing.assert_allclose(tapered[:, 0], single)
        np.testing.assert_allclose(tapered[:, 1], 2.0 * single)

    def test_invalid_cutoffs_raise(self):
        for low, high in [(3000.0, 100.0), (100.0, 100.0), (0.0, 1000.0), (100.0, 4000.0)]:
            with self.assertRaises(ConfigurationError):
                dsp.taper(self.spec, low, high, self.fs)

    def test_inverse_to_real(self):
        x = np.random.default_rng(4).standard_normal(self.n)
        np.testing.assert_allclose(dsp.inverse_to_real(np.fft.fft(x)), x, atol=1e-12)


class TransferFunctionTests(unittest.TestCase):
    def test_channel_ratio(self):
        ref = np.fft.fft(np.random.default_rng(5).standard_normal(256))
        tf, report = dsp.transfer_function(np.column_stack([0.5 * ref, ref]))
        np.testing.assert_allclose(tf, 0.5 * np.ones(256))
        self.assertFalse(report.has_singularities)

    def test_needs_two_channels(self):
        with self.assertRaises(ConfigurationError):
            dsp.transfer_function(np.ones(16))

    def test_gain_difference_peaks_at_zero_in_band(self):
        n, fs = 256, 8000
        freqs = dsp.frequency_axis(n, fs)
        spec = np.column_stack([np.linspace(1.0, 2.0, n), np.ones(n)])
        g = dsp.gain_difference_db(spec, freqs, 100.0, 2000.0)
        band = (freqs > 100.0) & (freqs < 2000.0)
        self.assertAlmostEqual(float(np.max(g[band])), 0.0)

    def test_centered_time_axis_matches_fftshift(self):
        t = dsp.centered_time_axis(4, 1.0)
        np.testing.assert_allclose(t, [-2.0, -1.0, 0.0, 1.0])
        shifted = np.fft.fftshift(np.array([10.0, 1.0, 2.0, 3.0]))
        self.assertEqual(shifted[int(np.argmin(np.abs(t)))], 10.0)


if __name__ == "__main__":
    unittest.main()
