import math
import tempfile
import unittest
from pathlib import Path

import numpy as np
import scipy.io.wavfile

from models import ConfigurationError, OptimizationResult, Signal, ThresholdCandidate
from oneshotsg_io.audio_wav import load_audio, save_audio
from oneshotsg_io.params_json import build_params_record, load_params, save_params
from oneshotsg_io.safeguard_ref import resolve_safeguard


class AudioWavTests(unittest.TestCase):
    def setUp(self):
        t = np.arange(4800) / 48000.0
        self.x = 0.5 * np.sin(2 * np.pi * 1000.0 * t)

    def test_24_bit_with_comment(self):
        with tempfile.TemporaryDirectory() as td:
            p = save_audio(Path(td) / "ir.wav", Signal(self.x, 48000), 24, "Refined SG IR from a.wav.")
            self.assertEqual(scipy.io.wavfile.read(str(p))[1].dtype, np.int32)
            self.assertEqual(p.with_suffix(".txt").read_text(encoding="utf-8").strip(), "Refined SG IR from a.wav.")
            back = load_audio(p)
            self.assertEqual(back.fs, 48000)
            np.testing.assert_allclose(back.data, self.x, atol=1e-6)

    def test_16_bit_and_float(self):
        with tempfile.TemporaryDirectory() as td:
            p16 = save_audio(Path(td) / "a.wav", Signal(self.x, 48000), 16)
            self.assertEqual(scipy.io.wavfile.read(str(p16))[1].dtype, np.int16)
            np.testing.assert_allclose(load_audio(p16).data, self.x, atol=1e-4)

            pf = save_audio(Path(td) / "b.wav", Signal(2.0 * self.x, 48000), 0)
            self.assertEqual(scipy.io.wavfile.read(str(pf))[1].dtype, np.float32)
            self.assertAlmostEqual(float(np.max(load_audio(pf).data)), 1.0, places=5)

    def test_clipping_is_logged(self):
        with tempfile.TemporaryDirectory() as td:
            with self.assertLogs("OneShotSG.io", level="WARNING"):
                p = save_audio(Path(td) / "loud.wav", Signal(3.0 * self.x, 48000), 24)
            self.assertLessEqual(float(np.max(np.abs(load_audio(p).data))), 1.0)

    def test_stereo(self):
        with tempfile.TemporaryDirectory() as td:
            x2 = np.column_stack([self.x, -self.x])
            back = load_audio(save_audio(Path(td) / "st.wav", Signal(x2, 48000), 24))
            self.assertEqual(back.n_channels, 2)

    def test_unsupported_bit_depth(self):
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(ConfigurationError):
                save_audio(Path(td) / "x.wav", Signal(self.x, 48000), 8)

    def test_missing_file(self):
        with self.assertRaises(FileNotFoundError):
            load_audio("/nonexistent/file.wav")

    def test_too_many_channels(self):
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "multi.wav"
            scipy.io.wavfile.write(str(p), 48000, np.zeros((100, 3), dtype=np.float32))
            with self.assertRaises(ConfigurationError):
                load_audio(p)


class ParamsJsonTests(unittest.TestCase):
    def _result(self):
        a = ThresholdCandidate(-10.0, -12.5, scale=1.01)
        b = ThresholdCandidate(-20.0, float("nan"), error="RuntimeError: x")
        return OptimizationResult(best=a, candidates=(a, b))

    def test_record_contents(self):
        rec = build_params_record(self._result(), {"fLow": np.float64(20.0), "gains": np.array([1.0, 2.0])})
        self.assertEqual(rec["optimization"]["bestThresholdDb"], -10.0)
        self.assertIsNone(rec["optimization"]["candidates"][1]["error_level_db"])
        self.assertEqual(rec["safeguardParams"], {"fLow": 20.0, "gains": [1.0, 2.0]})
        self.assertIn("created", rec)

    def test_non_finite_becomes_null(self):
        rec = build_params_record(None, {"x": float("inf")})
        self.assertIsNone(rec["safeguardParams"]["x"])
        self.assertNotIn("optimization", rec)

    def test_save_and_load(self):
        with tempfile.TemporaryDirectory() as td:
            p = save_params(Path(td) / "best_SG_params.json", self._result(), {"fHigh": 20000.0}, {"source": "a.wav"})
            rec = load_params(p)
            self.assertEqual(rec["source"], "a.wav")
            self.assertEqual(rec["safeguardParams"]["fHigh"], 20000.0)


class SafeguardRefTests(unittest.TestCase):
    def test_resolves_function(self):
        self.assertIs(resolve_safeguard("math:sqrt"), math.sqrt)

    def test_bad_references(self):
        for ref in ["math", "no_such_module_xyz:f", "math:no_such_fn", "math:pi", ""]:
            with self.assertRaises(ConfigurationError, msg=ref):
                resolve_safeguard(ref)


if __name__ == "__main__":
    unittest.main()
