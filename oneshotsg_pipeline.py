# oneshotsg_pipeline.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import numpy as np

import oneshotsg_dsp as dsp
import oneshotsg_optimize as opt
from models import (
    AnalysisConfig,
    AnalysisWindow,
    ConfigurationError,
    ImpulseResponse,
    OptimizationResult,
    Signal,
    TransferFunctionEstimate,
)

logger = logging.getLogger("OneShotSG.pipeline")


@dataclass(frozen=True, eq=False)
class Analysis:
    """Everything derived from one SG / raw measurement pair before refinement."""
    config: AnalysisConfig
    source_name: str
    played_sg: Signal
    recorded_raw: Signal
    ir_sg: ImpulseResponse
    ir_retro: ImpulseResponse
    reference_channel: int
    peak_index: int
    lti_window: AnalysisWindow
    noise_window: AnalysisWindow
    freqs: np.ndarray
    lti_sg: np.ndarray
    noise_sg: np.ndarray
    lti_retro: np.ndarray
    noise_retro: np.ndarray

    @property
    def fs(self) -> int:
        return self.ir_sg.fs

    @property
    def n_samples(self) -> int:
        return self.ir_sg.n_samples

    @property
    def n_channels(self) -> int:
        return self.ir_sg.n_channels

    @property
    def uses_transfer_function(self) -> bool:
        return self.n_channels == 2


@dataclass(frozen=True, eq=False)
class RefinedResult:
    low_cut_hz: float
    high_cut_hz: float
    estimate_sg: TransferFunctionEstimate
    estimate_retro: TransferFunctionEstimate
    refined_ir_sg: np.ndarray
    refined_ir_retro: np.ndarray
    centered: bool                  # two-channel TF responses are displayed fftshifted
    comment_sg: str
    comment_retro: str


@dataclass(frozen=True, eq=False)
class BestRetroResult:
    threshold_db: float
    refined_ir: np.ndarray
    estimate: TransferFunctionEstimate
    comment: str
    safeguard_params: Dict[str, Any] = field(default_factory=dict)


def _match_length(sig: Signal, n: int, fs: int, name: str) -> Signal:
    if sig.fs != fs:
        raise ConfigurationError(f"{name}: sample rate {sig.fs} Hz, expected {fs} Hz.")
    if sig.n_samples < n:
        raise ConfigurationError(f"{name}: {sig.n_samples} samples, need at least {n}.")
    return sig.trimmed(n) if sig.n_samples > n else sig


def analyze(
    config: AnalysisConfig,
    played_sg: Signal,
    recorded_sg: Signal,
    recorded_raw: Signal,
    source_name: str = "",
) -> Analysis:
    """
    Deconvolve both recordings against the safeguarded stimulus that was
    actually played, locate the direct-path peak on the reference channel
    of the SG response, and compute LTI / noise window spectra.
    """
    n = played_sg.n_samples
    fs = played_sg.fs
    recorded_sg = _match_length(recorded_sg, n, fs, "recorded SG signal")
    recorded_raw = _match_length(recorded_raw, n, fs, "recorded raw signal")
    eps = config.singular_epsilon

    logger.info("Calculating impulse responses...")
    ir_sg = dsp.deconvolve(recorded_sg, played_sg, eps)
    # Retro-SG: raw recording referenced to the safeguarded stimulus spectrum
    ir_retro = dsp.deconvolve(recorded_raw, played_sg, eps)

    ref_ch = config.resolve_reference_channel(ir_sg.n_channels)
    peak = dsp.locate_peak(ir_sg, ref_ch)
    lti_w, noise_w = dsp.build_windows(peak, config.pre_delay_s, config.window_duration_s, fs, n)
    logger.info(
        f"Peak at sample {peak} (ch {ref_ch + 1}); LTI window [{lti_w.start}, {lti_w.stop}), "
        f"noise window [{noise_w.start}, {noise_w.stop})"
    )

    return Analysis(
        config=config,
        source_name=source_name,
        played_sg=played_sg,
        recorded_raw=recorded_raw,
        ir_sg=ir_sg,
        ir_retro=ir_retro,
        reference_channel=ref_ch,
        peak_index=peak,
        lti_window=lti_w,
        noise_window=noise_w,
        freqs=dsp.frequency_axis(n, fs),
        lti_sg=dsp.window_spectrum(ir_sg, lti_w),
        noise_sg=dsp.window_spectrum(ir_sg, noise_w),
        lti_retro=dsp.window_spectrum(ir_retro, lti_w),
        noise_retro=dsp.window_spectrum(ir_retro, noise_w),
    )


def refined_comment(kind: str, source_name: str, low_cut_hz: float, high_cut_hz: float,
                    threshold_db: Optional[float] = None) -> str:
    if threshold_db is None:
        return f"Refined {kind} IR from {source_name}. F-Range: {low_cut_hz:.1f}-{high_cut_hz:.1f} Hz."
    return (f"Best {kind} IR from {source_name}. Best Thr: {threshold_db:.1f}dB. "
            f"F-Range: {low_cut_hz:.1f}-{high_cut_hz:.1f} Hz.")


def safeguard_limits(params: Optional[Dict[str, Any]], default_low: float, default_high: float) -> Tuple[float, float]:
    """
    (fLow, fHigh) reported by the safeguarding transform. Accepts the params
    dict itself or a saved best_SG_params record; missing or non-numeric
    entries fall back to the defaults.
    """
    params = params if isinstance(params, dict) else {}
    if isinstance(params.get("safeguardParams"), dict):
        params = params["safeguardParams"]

    def _value(key, default):
        try:
            v = float(params.get(key))
        except (TypeError, ValueError):
            return float(default)
        return v if np.isfinite(v) else float(default)

    low, high = _value("fLow", default_low), _value("fHigh", default_high)
    if not low < high:
        logger.warning(f"Safeguard limits fLow={low:g}, fHigh={high:g} are inverted; using defaults.")
        return float(default_low), float(default_high)
    return low, high


def refine(analysis: Analysis, low_cut_hz: float, high_cut_hz: float) -> RefinedResult:
    """
    One refinement step. Single channel: taper the LTI spectra. Two channels:
    taper the target/reference transfer function. Pure; the caller decides
    whether to accept the result or call again with other limits.
    """
    if low_cut_hz >= high_cut_hz:
        raise ConfigurationError("Low frequency limit must be less than high frequency limit.")
    eps = analysis.config.singular_epsilon
    fs = analysis.fs

    if analysis.uses_transfer_function:
        spec_sg, _ = dsp.transfer_function(analysis.lti_sg, eps)
        spec_retro, _ = dsp.transfer_function(analysis.lti_retro, eps)
    else:
        spec_sg, spec_retro = analysis.lti_sg, analysis.lti_retro

    est_sg = dsp.taper_estimate(spec_sg, low_cut_hz, high_cut_hz, fs)
    est_retro = dsp.taper_estimate(spec_retro, low_cut_hz, high_cut_hz, fs)

    return RefinedResult(
        low_cut_hz=float(low_cut_hz),
        high_cut_hz=float(high_cut_hz),
        estimate_sg=est_sg,
        estimate_retro=est_retro,
        refined_ir_sg=dsp.inverse_to_real(est_sg.tapered),
        refined_ir_retro=dsp.inverse_to_real(est_retro.tapered),
        centered=analysis.uses_transfer_function,
        comment_sg=refined_comment("SG", analysis.source_name, low_cut_hz, high_cut_hz),
        comment_retro=refined_comment("Retro-SG", analysis.source_name, low_cut_hz, high_cut_hz),
    )


def optimize_retro(
    analysis: Analysis,
    refined: RefinedResult,
    stimulus: Signal,
    safeguard: opt.SafeguardFn,
    cancel_event: Optional[threading.Event] = None,
) -> OptimizationResult:
    """
    Threshold sweep against the accepted refined SG response.

    Two-channel rigs are scored on the reference channel: its refined SG
    response is the reference, and each candidate deconvolution is refined on
    that channel alone. The channel ratio cancels the stimulus, so it cannot
    tell thresholds apart.
    """
    cfg = analysis.config
    channel = None
    reference = refined.refined_ir_sg
    if analysis.uses_transfer_function:
        channel = analysis.reference_channel
        single = ImpulseResponse(analysis.ir_sg.channel(channel), analysis.fs)
        reference, _ = dsp.refined_impulse_response(
            single, analysis.lti_window, refined.low_cut_hz, refined.high_cut_hz, epsilon=cfg.singular_epsilon
        )
    return opt.optimize(
        reference,
        analysis.recorded_raw,
        stimulus,
        cfg.threshold_list_db,
        cfg.high_freq_limit_hz,
        refined.low_cut_hz,
        refined.high_cut_hz,
        analysis.fs,
        analysis.lti_window,
        safeguard,
        pre_delay_s=cfg.pre_delay_s,
        window_duration_s=cfg.window_duration_s,
        comparison_margin_s=cfg.comparison_margin_s,
        magnitudes=cfg.magnitude_list(),
        channel=channel,
        epsilon=cfg.singular_epsilon,
        workers=cfg.workers,
        cancel_event=cancel_event,
    )


def best_retro(
    analysis: Analysis,
    refined: RefinedResult,
    result: OptimizationResult,
    stimulus: Signal,
    safeguard: opt.SafeguardFn,
) -> BestRetroResult:
    """Recompute the retro response at the selected threshold."""
    cfg = analysis.config
    thr = result.best_threshold_db
    sg, params = opt.run_safeguard(safeguard, stimulus, thr, cfg.high_freq_limit_hz, analysis.n_samples)
    ir = dsp.deconvolve(analysis.recorded_raw, sg, cfg.singular_epsilon)
    refined_ir, est = dsp.refined_impulse_response(
        ir,
        analysis.lti_window,
        refined.low_cut_hz,
        refined.high_cut_hz,
        use_transfer_function=analysis.uses_transfer_function,
        epsilon=cfg.singular_epsilon,
    )
    return BestRetroResult(
        threshold_db=thr,
        refined_ir=refined_ir,
        estimate=est,
        comment=refined_comment("Retro-SG", analysis.source_name, refined.low_cut_hz, refined.high_cut_hz, thr),
        safeguard_params=params,
    )


def display_response(ir: np.ndarray, fs: float, centered: bool) -> Tuple[np.ndarray, np.ndarray]:
    """(time_axis_s, samples) for plotting; transfer-function responses are fftshifted."""
    n = ir.shape[0]
    if centered:
        return dsp.centered_time_axis(n, fs), np.fft.fftshift(ir, axes=0)
    return np.arange(n) / float(fs), ir
