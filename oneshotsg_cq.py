"""
OneShotSG - constant-Q-like Gaussian band-pass weights.

Gaussian weighting windows of fixed octave bandwidth on a geometric
(octave-spaced) center-frequency grid. Used to smooth spectra into
fractional-octave bands for the reports.

Note
- Not a standard constant-Q design: the effective upper bound
  is f[-1] + f[1] and the lowest center is 1000 * 2**-6 Hz.
- No I/O, no other OneShotSG imports besides models.
"""

from __future__ import annotations

import time
import logging

import numpy as np
from scipy.stats import norm

from models import ConfigurationError, FilterBank

__all__ = [
    "FC_LOW_HZ",
    "build_filter_bank",
    "band_levels_db",
]

logger = logging.getLogger("OneShotSG.cq")

FC_LOW_HZ = 1000.0 * 2.0 ** (-6)   # lowest center frequency (15.625 Hz)


def _validate_axis(frequency_axis) -> np.ndarray:
    f = np.asarray(frequency_axis, dtype=float).ravel()
    if f.size < 2:
        raise ConfigurationError("frequency_axis must contain at least two elements.")
    if not np.all(np.isfinite(f)):
        raise ConfigurationError("frequency_axis must be finite.")
    if np.any(f < 0):
        raise ConfigurationError("frequency_axis must be non-negative.")
    if np.any(np.diff(f) <= 0):
        raise ConfigurationError("frequency_axis must be ascending.")
    return f


def build_filter_bank(frequency_axis, bandwidth_octaves: float, step_octaves: float) -> FilterBank:
    """
    Build Gaussian band-pass weights on the log2-frequency axis.

    sigma (in octaves) = bandwidth / 2 / (2 * norm.ppf(0.75)), i.e. the
    bandwidth is the inter-quartile width of the Gaussian.

    Returns FilterBank with (n_channel x n_freq) matrices:
      filter_weight       rows normalized to sum 1
      filter_weight_raw   unnormalized Gaussians
      quad_filter_weight  sqrt(|raw|), for filtering with quadrature responses
    """
    t0 = time.perf_counter()
    f = _validate_axis(frequency_axis)
    try:
        bw = float(bandwidth_octaves)
        step = float(step_octaves)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid bandwidth/step: {e}") from e
    if not (np.isfinite(bw) and bw > 0):
        raise ConfigurationError(f"bandwidth_octaves must be positive, got {bandwidth_octaves}")
    if not (np.isfinite(step) and step > 0):
        raise ConfigurationError(f"step_octaves must be positive, got {step_octaves}")

    fs_estimate = f[-1] + f[1]
    max_octave_index = np.log2(fs_estimate / 2.0 / FC_LOW_HZ)
    n_channel = int(np.floor(max_octave_index / step)) + 1
    if n_channel < 1:
        raise ConfigurationError(
            f"Frequency axis too narrow: upper bound {fs_estimate / 2.0:.3f} Hz is below {FC_LOW_HZ} Hz."
        )
    fc_set = FC_LOW_HZ * 2.0 ** (np.arange(n_channel) * step)

    base_sigma = norm.ppf(0.75) * 2.0
    sigma_log = bw / 2.0 / base_sigma

    with np.errstate(divide="ignore"):
        log_f = np.log2(f)       # f = 0 -> -inf -> weight 0
    dist = log_f[None, :] - np.log2(fc_set)[:, None]
    raw = np.exp(-(dist ** 2) / (2.0 * sigma_log ** 2))

    sums = np.sum(raw, axis=1, keepdims=True)
    if np.any(sums <= 0):
        raise ConfigurationError("A filter channel has no support on the frequency axis.")
    weight = raw / sums

    elapsed = time.perf_counter() - t0
    logger.debug(f"Filter bank: {n_channel} channels, bw={bw} oct, step={step} oct, {elapsed * 1000:.1f} ms")
    return FilterBank(
        n_channel=n_channel,
        fc_set=fc_set,
        filter_weight=weight,
        filter_weight_raw=raw,
        quad_filter_weight=np.sqrt(np.abs(raw)),
        bandwidth_octaves=bw,
        step_octaves=step,
        elapsed_s=elapsed,
    )


def band_levels_db(bank: FilterBank, spectrum, floor: float = 1e-24) -> np.ndarray:
    """
    Fractional-octave band levels: 10*log10(W @ |X|^2).

    `spectrum` is sampled on the same axis the bank was built on; (n,) gives
    (n_channel,), (n, ch) gives (n_channel, ch).
    """
    power = np.abs(np.asarray(spectrum)) ** 2
    if power.shape[0] != bank.filter_weight.shape[1]:
        raise ConfigurationError(
            f"Spectrum has {power.shape[0]} bins, filter bank expects {bank.filter_weight.shape[1]}."
        )
    return 10.0 * np.log10(np.maximum(bank.filter_weight @ power, floor))
