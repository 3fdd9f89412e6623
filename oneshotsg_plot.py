import io
import logging
from pathlib import Path

import numpy as np
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

import oneshotsg_dsp as dsp
from oneshotsg_cq import band_levels_db, build_filter_bank
from oneshotsg_pipeline import display_response

logger = logging.getLogger("OneShotSG.plot")

# Version 1.1.0

FONT_SIZE = 13
LINE_WIDTH = 2
PNG_DPI = 200


def _db(x):
    return 20.0 * np.log10(np.abs(x) + 1e-300)


def _style(ax, title, xlabel, ylabel):
    ax.set_title(title)
    ax.set_xlabel(xlabel)
    ax.set_ylabel(ylabel)
    ax.grid(True, which='both', alpha=0.3)
    ax.tick_params(labelsize=FONT_SIZE)
    for s in ax.spines.values():
        s.set_linewidth(LINE_WIDTH)


def _fig_to_png(fig) -> bytes:
    buf = io.BytesIO()
    fig.tight_layout()
    fig.savefig(buf, format='png', dpi=PNG_DPI)
    plt.close(fig)
    buf.seek(0)
    return buf.getvalue()


def _channel_labels(n_ch, prefix=""):
    if n_ch == 2:
        return [f"{prefix}Target mic", f"{prefix}Close mic"]
    return [f"{prefix}Response"]


def plot_impulse_responses(analysis) -> bytes:
    """Initial SG and Retro-SG impulse responses (first second, dB)."""
    try:
        fs = analysis.fs
        n = min(analysis.n_samples, fs)
        t = np.arange(n) / fs
        fig, (ax1, ax2) = plt.subplots(2, 1, figsize=(12, 9))
        sg = analysis.ir_sg.as_2d()[:n]
        retro = analysis.ir_retro.as_2d()[:n]
        for i, lab in enumerate(_channel_labels(analysis.n_channels)):
            ax1.plot(t, _db(sg[:, i]), linewidth=LINE_WIDTH, label=lab)
            ax2.plot(t, _db(retro[:, i]), linewidth=LINE_WIDTH, label=f"Retro-SG {lab}")
            ax2.plot(t, _db(sg[:, i]), linewidth=LINE_WIDTH, alpha=0.7, label=f"SG {lab}")
        for ax, title in ((ax1, 'Impulse Response from Safeguarded Signal Playback'),
                          (ax2, 'Impulse Response Comparison')):
            ax.axis([0, 1, -100, 0])
            ax.legend(loc='upper right', fontsize='small')
            _style(ax, title, 'Time (s)', 'Level (dB)')
        return _fig_to_png(fig)
    except Exception as e:
        logger.exception(f"Impulse response plot failed: {e}")
        return b""


def plot_frequency_response(analysis, which="sg", f_low=None, f_high=None, threshold_db=None) -> bytes:
    """LTI response vs noise floor, with safeguarding limits and 1/3-oct band levels."""
    try:
        fs = analysis.fs
        lti = analysis.lti_sg if which == "sg" else analysis.lti_retro
        noise = analysis.noise_sg if which == "sg" else analysis.noise_retro
        f = analysis.freqs
        half = slice(1, analysis.n_samples // 2 + 1)
        lti2 = np.asarray(lti).reshape(analysis.n_samples, -1)
        noise2 = np.asarray(noise).reshape(analysis.n_samples, -1)
        lti_db = dsp.spectrum_db(lti2)
        top = float(np.max(lti_db[half]))

        bank = build_filter_bank(f[half], 1.0 / 3.0, 1.0 / 3.0)
        lti_bands = band_levels_db(bank, lti2[half])
        noise_bands = band_levels_db(bank, noise2[half])

        fig, ax = plt.subplots(figsize=(12, 6))
        labels = _channel_labels(analysis.n_channels)
        for i, lab in enumerate(labels):
            ax.plot(f[half], lti_db[half, i], linewidth=1, alpha=0.5, label=f"{lab} LTI")
            ax.plot(f[half], dsp.spectrum_db(noise2[half, i]), linewidth=1, alpha=0.5, linestyle='--', label=f"{lab} noise")
            ax.plot(bank.fc_set, lti_bands[:, i], 'o-', linewidth=LINE_WIDTH, label=f"{lab} LTI (1/3 oct)")
            ax.plot(bank.fc_set, noise_bands[:, i], 's--', linewidth=LINE_WIDTH, label=f"{lab} noise (1/3 oct)")
        if f_low is not None and f_low > 0:
            ax.axvline(f_low, color='g', linewidth=LINE_WIDTH, label='Low Freq Limit')
        if f_high is not None:
            ax.axvline(f_high, color='g', linewidth=LINE_WIDTH, label='High Freq Limit')
        ax.set_xscale('log')
        ax.axis([20, fs / 2, top - 70, top + 10])
        name = "Safeguarded" if which == "sg" else "Retro-Safeguarded"
        title = f"Frequency Response ({name})"
        if threshold_db is not None:
            title += f" | Threshold: {threshold_db:g} dB"
        ax.legend(loc='lower left', fontsize='small')
        _style(ax, title, "Frequency (Hz)", "Level (dB)")
        return _fig_to_png(fig)
    except Exception as e:
        logger.exception(f"Frequency response plot failed: {e}")
        return b""


def plot_gain_comparison(analysis, f_low, f_high) -> bytes:
    """Normalized ch1 - ch2 LTI gain difference for SG and Retro-SG."""
    try:
        f = analysis.freqs
        g_retro = dsp.gain_difference_db(analysis.lti_retro, f, f_low, f_high)
        g_sg = dsp.gain_difference_db(analysis.lti_sg, f, f_low, f_high)
        fig, ax = plt.subplots(figsize=(12, 6))
        ax.plot(f, g_retro, linewidth=LINE_WIDTH, label="Retro-SG")
        ax.plot(f, g_sg, linewidth=LINE_WIDTH, label="SG")
        if f_low > 0:
            ax.axvline(f_low, color='g', linewidth=LINE_WIDTH, label='Low Freq Limit')
        ax.axvline(f_high, color='g', linewidth=LINE_WIDTH, label='High Freq Limit')
        ax.set_xscale('log')
        ax.axis([20, analysis.fs / 2, -60, 20])
        ax.legend(loc='upper left')
        _style(ax, 'LTI Gain Difference Comparison (Ch1 - Ch2)', "Frequency (Hz)", "Normalized Gain Difference (dB)")
        return _fig_to_png(fig)
    except Exception as e:
        logger.exception(f"Gain comparison plot failed: {e}")
        return b""


def plot_refined(analysis, refined, best=None) -> bytes:
    """Refined (or best retro) response: spectrum on top, impulse response below."""
    try:
        fs = analysis.fs
        f = analysis.freqs
        half = slice(1, analysis.n_samples // 2 + 1)
        retro_est = best.estimate if best is not None else refined.estimate_retro
        retro_ir = best.refined_ir if best is not None else refined.refined_ir_retro
        retro_label = "Best Retro" if best is not None else "Refined Retro"

        orig = np.asarray(refined.estimate_sg.original).reshape(analysis.n_samples, -1)
        sg_tap = np.asarray(refined.estimate_sg.tapered).reshape(analysis.n_samples, -1)
        rt_tap = np.asarray(retro_est.tapered).reshape(analysis.n_samples, -1)
        top = float(np.max(_db(orig[half])))

        fig, (ax1, ax2) = plt.subplots(2, 1, figsize=(12, 10))
        ax1.semilogx(f[half], _db(orig[half]), linewidth=1.5, color=(0.7, 0.7, 0.7), label='Original SG')
        ax1.semilogx(f[half], _db(rt_tap[half]), 'g', linewidth=LINE_WIDTH, label=retro_label)
        ax1.semilogx(f[half], _db(sg_tap[half]), 'r', linewidth=LINE_WIDTH, label='Refined SG')
        ax1.axvline(refined.low_cut_hz, color='k', linestyle='--', linewidth=1)
        ax1.axvline(refined.high_cut_hz, color='k', linestyle='--', linewidth=1)
        ax1.set_xlim(20, fs / 2)
        ax1.set_ylim(top - 80, top + 20)
        ax1.legend(loc='lower left', fontsize='small')
        title = f"Freq Range: {refined.low_cut_hz:g} - {refined.high_cut_hz:g} Hz"
        if best is not None:
            title = f"Best Retrospective Response (Threshold: {best.threshold_db:g} dB) | " + title
        _style(ax1, title, 'Frequency (Hz)', 'Magnitude (dB)')

        t_sg, ir_sg = display_response(refined.refined_ir_sg, fs, refined.centered)
        t_rt, ir_rt = display_response(retro_ir, fs, refined.centered)
        ax2.plot(t_sg, _db(ir_sg), 'r', linewidth=LINE_WIDTH, label='Refined SG')
        ax2.plot(t_rt, _db(ir_rt), 'g', linewidth=LINE_WIDTH, label=retro_label)
        ir_top = float(np.max(_db(ir_sg)))
        if refined.centered:
            ax2.set_xlim(-0.01, 0.5)
        else:
            ax2.set_xlim(0, min(5.0, analysis.n_samples / fs))
        ax2.set_ylim(-200, max(0.0, ir_top + 10.0))
        ax2.legend(loc='upper right', fontsize='small')
        _style(ax2, 'Resulting Refined Impulse Response', 'Time (s)', 'Amplitude (dB)')
        return _fig_to_png(fig)
    except Exception as e:
        logger.exception(f"Refined response plot failed: {e}")
        return b""


def plot_optimization_curve(result) -> bytes:
    try:
        thr, err = result.error_curve()
        fig, ax = plt.subplots(figsize=(10, 6))
        ax.plot(thr, err, '-o', linewidth=LINE_WIDTH)
        ax.plot([result.best_threshold_db], [result.best_error_db], 'r*', markersize=16,
                label=f"Best: {result.best_threshold_db:g} dB")
        ax.legend(loc='best')
        _style(ax, 'Optimization of Retrospective SG Threshold',
               'Safeguarding Threshold (dB)', 'Relative Error (dB vs. Refined SG)')
        return _fig_to_png(fig)
    except Exception as e:
        logger.exception(f"Optimization plot failed: {e}")
        return b""


def save_png(path, png: bytes):
    """Write PNG bytes; empty bytes (failed plot) are skipped."""
    if not png:
        logger.warning(f"Skipping empty plot: {path}")
        return None
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(png)
    return p
