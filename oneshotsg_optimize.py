"""
OneShotSG - retrospective safeguarding threshold search.

For every candidate threshold the stimulus is safeguarded again, the raw
recording is deconvolved against it, the LTI window is tapered, and the
refined response is compared with a reference refined response (normally
the one measured with the safeguarded stimulus).
Two-channel recordings are scored on a single channel; the channel ratio
cancels the stimulus and cannot tell thresholds apart.

Error measure (per candidate)
    err(scale) = std(candidate * scale - reference) / std(reference)
over the comparison window, minimized over a fine scale scan
(0.9 .. 1.1 step 0.001), reported as 20*log10(min err).

Candidates are independent: they can run in a thread pool and are always
reduced in the order given, so the pick is deterministic (ties -> first).
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

import oneshotsg_dsp as dsp
from models import (
    AnalysisWindow,
    ImpulseResponse,
    ConfigurationError,
    OptimizationError,
    OptimizationResult,
    Signal,
    ThresholdCandidate,
    ThresholdSweepCancelled,
)

__all__ = [
    "SafeguardFn",
    "DEFAULT_MAGNITUDES",
    "run_safeguard",
    "comparison_mask",
    "normalized_error_db",
    "evaluate_threshold",
    "optimize",
]

logger = logging.getLogger("OneShotSG.optimize")

# safeguard(signal, fs_in, fs_out, threshold_db, high_freq_limit_hz, display) -> (signal, {"fLow", "fHigh"})
SafeguardFn = Callable[..., Tuple[Any, Dict[str, Any]]]

DEFAULT_MAGNITUDES = np.linspace(0.9, 1.1, 201)


def run_safeguard(
    safeguard: SafeguardFn,
    stimulus: Signal,
    threshold_db: float,
    high_freq_limit_hz: float,
    n_samples: Optional[int] = None,
    display: bool = False,
) -> Tuple[Signal, Dict[str, Any]]:
    """
    Call the external safeguard function and coerce its output to a Signal of
    n_samples (longer output is trimmed, shorter output is an error).
    """
    out, params = safeguard(stimulus.data, stimulus.fs, stimulus.fs, float(threshold_db), float(high_freq_limit_hz), display)
    sg = Signal(np.asarray(out, dtype=float), stimulus.fs)
    n = stimulus.n_samples if n_samples is None else int(n_samples)
    if sg.n_samples < n:
        raise ConfigurationError(f"Safeguarded signal has {sg.n_samples} samples, expected {n}.")
    if sg.n_samples > n:
        sg = sg.trimmed(n)
    return sg, dict(params or {})


def comparison_mask(
    n_samples: int,
    fs: float,
    pre_delay_s: float,
    window_duration_s: float,
    margin_s: float = 0.01,
) -> np.ndarray:
    """Samples with pre_delay - margin <= t < window_duration (t from sample 0)."""
    t = np.arange(int(n_samples)) / float(fs)
    mask = (t >= pre_delay_s - margin_s) & (t < window_duration_s)
    if not np.any(mask):
        raise ConfigurationError(
            f"Empty comparison window [{pre_delay_s - margin_s:.4f}, {window_duration_s:.4f}) s."
        )
    return mask


def normalized_error_db(
    candidate: np.ndarray,
    reference: np.ndarray,
    mask: np.ndarray,
    magnitudes: Optional[np.ndarray] = None,
) -> Tuple[float, float]:
    """
    Minimum over `magnitudes` of std(candidate*m - reference)/std(reference)
    inside `mask`. Returns (error_db, best_scale).
    """
    mags = DEFAULT_MAGNITUDES if magnitudes is None else np.asarray(magnitudes, dtype=float)
    cand = np.asarray(candidate)[mask].ravel()
    ref = np.asarray(reference)[mask].ravel()
    if cand.shape != ref.shape:
        raise ConfigurationError(f"Candidate/reference shape mismatch: {cand.shape} vs {ref.shape}")

    ref_std = float(np.std(ref))
    if not np.isfinite(ref_std) or ref_std <= 0.0:
        raise ConfigurationError("Reference response is silent inside the comparison window.")

    err = np.std(cand[:, None] * mags[None, :] - ref[:, None], axis=0) / ref_std
    i = int(np.argmin(err))
    best = max(float(err[i]), np.finfo(float).tiny)
    return 20.0 * np.log10(best), float(mags[i])


def evaluate_threshold(
    threshold_db: float,
    *,
    reference: np.ndarray,
    raw_recorded: Signal,
    stimulus: Signal,
    safeguard: SafeguardFn,
    high_freq_limit_hz: float,
    low_cut_hz: float,
    high_cut_hz: float,
    lti_window: AnalysisWindow,
    mask: np.ndarray,
    magnitudes: np.ndarray,
    channel: Optional[int] = None,
    epsilon: float = 1e-12,
) -> ThresholdCandidate:
    """
    Score one threshold. Failures become a nan candidate instead of raising.
    Two-channel recordings are scored on `channel` only.
    """
    singularities = None
    try:
        sg, _ = run_safeguard(safeguard, stimulus, threshold_db, high_freq_limit_hz, raw_recorded.n_samples)
        ir = dsp.deconvolve(raw_recorded, sg, epsilon)
        if ir.singularities is not None:
            singularities = ir.singularities.as_dict()
        if channel is not None:
            ir = ImpulseResponse(ir.channel(channel), ir.fs, singularities=ir.singularities)
        refined, _ = dsp.refined_impulse_response(ir, lti_window, low_cut_hz, high_cut_hz, epsilon=epsilon)
        err_db, scale = normalized_error_db(refined, reference, mask, magnitudes)
    except Exception as e:
        logger.exception(f"Threshold {threshold_db:g} dB failed: {e}")
        return ThresholdCandidate(float(threshold_db), float("nan"), error=f"{type(e).__name__}: {e}",
                                  singularities=singularities)

    if not np.isfinite(err_db):
        logger.warning(f"Threshold {threshold_db:g} dB: non-finite error, excluded.")
        return ThresholdCandidate(float(threshold_db), float("nan"), error="non-finite error",
                                  singularities=singularities)

    logger.debug(f"Threshold {threshold_db:g} dB -> {err_db:.2f} dB (scale {scale:.3f})")
    return ThresholdCandidate(float(threshold_db), float(err_db), scale=scale, singularities=singularities)


def _select_best(candidates: Sequence[ThresholdCandidate]) -> ThresholdCandidate:
    err = np.array([c.error_level_db for c in candidates], dtype=float)
    if not np.any(np.isfinite(err)):
        raise OptimizationError("No threshold candidate could be evaluated.")
    return candidates[int(np.nanargmin(err))]


def optimize(
    reference_ir,
    raw_recorded: Signal,
    stimulus: Signal,
    candidate_thresholds_db: Iterable[float],
    high_freq_limit_hz: float,
    low_cut_hz: float,
    high_cut_hz: float,
    fs: int,
    lti_window: AnalysisWindow,
    safeguard: SafeguardFn,
    *,
    pre_delay_s: float = 0.05,
    window_duration_s: Optional[float] = None,
    comparison_margin_s: float = 0.01,
    magnitudes: Optional[np.ndarray] = None,
    channel: Optional[int] = None,
    epsilon: float = 1e-12,
    workers: int = 1,
    cancel_event: Optional[threading.Event] = None,
    progress: Optional[Callable[[ThresholdCandidate], None]] = None,
) -> OptimizationResult:
    """
    Sweep candidate thresholds and pick the one whose refined retrospective
    response best matches `reference_ir`.

    reference_ir       refined reference response (array or Signal), same
                       shape as the candidates' refined responses
    raw_recorded       recording made with the unprocessed stimulus
    stimulus           the unprocessed stimulus handed to `safeguard`
    channel            channel of a two-channel recording to score (required
                       for two-channel recordings; the reference is that
                       channel's refined response)
    window_duration_s  end of the comparison window (default: LTI window length)
    workers            >1 evaluates candidates in a thread pool
    cancel_event       checked before each candidate; when set the sweep
                       raises ThresholdSweepCancelled with the partial results
    """
    thresholds = [float(t) for t in candidate_thresholds_db]
    if not thresholds:
        raise ConfigurationError("Candidate threshold list is empty.")
    if raw_recorded.fs != int(fs) or stimulus.fs != int(fs):
        raise ConfigurationError("Sample rate mismatch between fs, recording and stimulus.")
    if raw_recorded.n_channels > 1:
        if channel is None:
            raise ConfigurationError("Two-channel recordings need the channel to score.")
        if not 0 <= int(channel) < raw_recorded.n_channels:
            raise ConfigurationError(f"Channel {channel} not in 0..{raw_recorded.n_channels - 1}")
        channel = int(channel)
    elif channel not in (None, 0):
        raise ConfigurationError(f"Mono recording has no channel {channel}.")
    else:
        channel = None

    reference = np.asarray(getattr(reference_ir, "data", reference_ir), dtype=float)
    if reference.shape[0] != raw_recorded.n_samples:
        raise ConfigurationError(
            f"Reference has {reference.shape[0]} samples, recording has {raw_recorded.n_samples}."
        )
    if window_duration_s is None:
        window_duration_s = lti_window.length / float(fs)
    mask = comparison_mask(raw_recorded.n_samples, fs, pre_delay_s, window_duration_s, comparison_margin_s)
    if reference.ndim != 1:
        raise ConfigurationError(f"Reference must be a single response, got shape {reference.shape}.")
    total = float(np.sum(reference ** 2))
    if total > 0 and float(np.sum(reference[mask] ** 2)) < 1e-6 * total:
        logger.warning("Reference response has almost no energy inside the comparison window.")
    mags = DEFAULT_MAGNITUDES if magnitudes is None else np.asarray(magnitudes, dtype=float)

    def _job(thr: float) -> Optional[ThresholdCandidate]:
        if cancel_event is not None and cancel_event.is_set():
            return None
        cand = evaluate_threshold(
            thr,
            reference=reference,
            raw_recorded=raw_recorded,
            stimulus=stimulus,
            safeguard=safeguard,
            high_freq_limit_hz=high_freq_limit_hz,
            low_cut_hz=low_cut_hz,
            high_cut_hz=high_cut_hz,
            lti_window=lti_window,
            mask=mask,
            magnitudes=mags,
            channel=channel,
            epsilon=epsilon,
        )
        if progress is not None:
            progress(cand)
        return cand

    logger.info(f"Testing {len(thresholds)} threshold levels (workers={int(workers)})...")
    results: List[Optional[ThresholdCandidate]]
    if int(workers) <= 1:
        results = []
        for thr in thresholds:
            results.append(_job(thr))
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=int(workers)) as ex:
            futs = [ex.submit(_job, thr) for thr in thresholds]
            results = [f.result() for f in futs]

    done = [c for c in results if c is not None]
    if len(done) < len(thresholds):
        logger.warning(f"Threshold sweep cancelled after {len(done)}/{len(thresholds)} candidates.")
        raise ThresholdSweepCancelled("Threshold sweep cancelled.", partial=done)

    best = _select_best(done)
    logger.info(f"Optimal retrospective threshold found: {best.threshold_db:g} dB ({best.error_level_db:.2f} dB)")
    return OptimizationResult(best=best, candidates=tuple(done))
