import tempfile
import unittest
from pathlib import Path

import oneshotsg_pipeline as pipeline
import oneshotsg_plot as plots
from models import AnalysisConfig
from sg_fixtures import floor_safeguard, measurement

PNG_MAGIC = b"\x89PNG"


class PlotTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cfg = AnalysisConfig.from_dict({
            "low_cut_hz": 50.0,
            "high_cut_hz": 3500.0,
            "high_freq_limit_hz": 4000.0,
            "threshold_list_db": [-10.0, -20.0],
        })
        stim, played, rec_sg, rec_raw = measurement(8000, 16384, peak=800, two_channel=True)
        cls.analysis = pipeline.analyze(cfg, played, rec_sg, rec_raw, "rig.wav")
        cls.refined = pipeline.refine(cls.analysis, 50.0, 3500.0)
        cls.result = pipeline.optimize_retro(cls.analysis, cls.refined, stim, floor_safeguard)
        cls.best = pipeline.best_retro(cls.analysis, cls.refined, cls.result, stim, floor_safeguard)

    def test_reports_render_png(self):
        pngs = [
            plots.plot_impulse_responses(self.analysis),
            plots.plot_frequency_response(self.analysis, "sg", 50.0, 4000.0, -20.0),
            plots.plot_frequency_response(self.analysis, "retro"),
            plots.plot_gain_comparison(self.analysis, 50.0, 3500.0),
            plots.plot_refined(self.analysis, self.refined),
            plots.plot_refined(self.analysis, self.refined, self.best),
            plots.plot_optimization_curve(self.result),
        ]
        for png in pngs:
            self.assertTrue(png.startswith(PNG_MAGIC))

    def test_save_png(self):
        with tempfile.TemporaryDirectory() as td:
            p = plots.save_png(Path(td) / "sub" / "curve.png", plots.plot_optimization_curve(self.result))
            self.assertTrue(p.is_file())
            with self.assertLogs("OneShotSG.plot", level="WARNING"):
                self.assertIsNone(plots.save_png(Path(td) / "empty.png", b""))


if __name__ == "__main__":
    unittest.main()
