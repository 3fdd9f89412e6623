import numpy as np
import logging
logger = logging.getLogger("OneShotSG.dsp")
from models import (
    AnalysisWindow,
    BoundsError,
    ConfigurationError,
    ImpulseResponse,
    Signal,
    SingularityReport,
    TransferFunctionEstimate,
)
#OneShotSG DSP core v1.2.0
#1.1.0 Shared frequency taper for mono and two-channel flows
#1.1.1 Negative-side taper anchors mirror the positive side (keeps conjugate symmetry)
#1.2.0 Singular bins reported instead of silently floored


def round_half_up(x: float) -> int:
    """Round half away from zero (0.5 -> 1, -0.5 -> -1); Python's round() is banker's."""
    x = float(x)
    return int(np.sign(x) * np.floor(abs(x) + 0.5))


def frequency_axis(n: int, fs: float) -> np.ndarray:
    """Bin frequencies 0..fs*(n-1)/n for one DFT cycle."""
    return np.arange(int(n)) / float(n) * float(fs)


def bilateral_frequency_axis(n: int, fs: float) -> np.ndarray:
    """
    Bin frequencies with bins above fs/2 folded to negative frequencies.

    Folding is done on integer bin indices so bin k and bin n-k map to exactly
    opposite frequencies. The Nyquist bin of an even length stays at +fs/2.
    """
    n = int(n)
    k = np.arange(n)
    k_folded = np.where(2 * k > n, k - n, k)
    return k_folded / float(n) * float(fs)


def spectrum_db(spectrum, floor: float = 1e-12) -> np.ndarray:
    return 20.0 * np.log10(np.maximum(np.abs(spectrum), floor))


def safe_divide(numerator: np.ndarray, denominator: np.ndarray, epsilon: float = 1e-12):
    """
    Elementwise spectral division with singularity bookkeeping.

    Bins where |den| <= epsilon * max|den| (per column) are flagged. Finite
    quotients are kept as computed; inf/nan quotients are set to 0 so a single
    bin does not contaminate the whole inverse transform.
    Returns (quotient, SingularityReport).
    """
    num = np.asarray(numerator)
    den = np.asarray(denominator)
    mag = np.abs(den)
    peak = np.max(mag, axis=0, keepdims=True) if mag.size else mag
    near_zero = mag <= float(epsilon) * peak

    with np.errstate(divide="ignore", invalid="ignore"):
        quotient = num / den
    bad = ~np.isfinite(quotient)
    if np.any(bad):
        quotient = np.where(bad, 0.0, quotient)

    if near_zero.ndim > 1:
        near_zero = np.any(near_zero, axis=1)
        bad = np.any(bad, axis=tuple(range(1, bad.ndim)))
    report = SingularityReport(mask=near_zero, epsilon=float(epsilon), non_finite=int(np.count_nonzero(bad)))
    return quotient, report


def deconvolve(recorded: Signal, played: Signal, epsilon: float = 1e-12) -> ImpulseResponse:
    """
    System impulse response IFFT(FFT(recorded) / FFT(played)), per channel.

    A mono `played` signal is broadcast over the channels of `recorded`.
    Near-zero bins of FFT(played) are reported on the result's `singularities`
    (mask over the non-negative frequency bins).
    """
    if recorded.fs != played.fs:
        raise ConfigurationError(f"Sample rate mismatch: recorded {recorded.fs} Hz, played {played.fs} Hz.")
    if recorded.n_samples != played.n_samples:
        raise ConfigurationError(
            f"Length mismatch: recorded {recorded.n_samples}, played {played.n_samples} samples."
        )
    if recorded.n_channels != played.n_channels and 1 not in (recorded.n_channels, played.n_channels):
        raise ConfigurationError("Channel count mismatch between recorded and played signals.")

    n = recorded.n_samples
    # Real inputs: the half spectrum carries everything, irfft returns the real IFFT.
    rec_spec = np.fft.rfft(recorded.as_2d(), axis=0)
    play_spec = np.fft.rfft(played.as_2d(), axis=0)
    ratio, report = safe_divide(rec_spec, play_spec, epsilon)
    ir = np.fft.irfft(ratio, n=n, axis=0)

    if report.has_singularities:
        logger.warning(
            f"Deconvolution: {report.count} near-zero bins (eps={epsilon:g}), "
            f"{report.non_finite} non-finite bins zeroed."
        )
    if recorded.data.ndim == 1 and played.data.ndim == 1:
        ir = ir[:, 0]
    return ImpulseResponse(ir, recorded.fs, singularities=report)


def locate_peak(ir: Signal, channel_index: int = 0) -> int:
    """Index of maximum absolute amplitude on the given channel."""
    ch = int(channel_index)
    if ch < 0 or ch >= ir.n_channels:
        raise ConfigurationError(f"Channel {ch} not in 0..{ir.n_channels - 1}")
    return int(np.argmax(np.abs(ir.channel(ch))))


def build_windows(
    peak_index: int,
    pre_delay_s: float,
    window_duration_s: float,
    fs: int,
    total_samples: int,
):
    """
    LTI window starting pre_delay_s before the peak and a noise window from
    the middle of the response, both window_duration_s long.

    Windows are validated against [0, total_samples); nothing is clamped.
    """
    length = round_half_up(window_duration_s * fs)
    if length <= 0:
        raise ConfigurationError(f"Window duration {window_duration_s} s gives an empty window.")
    pre = round_half_up(pre_delay_s * fs)

    lti = AnalysisWindow(start=int(peak_index) - pre, length=length, kind="lti")
    noise = AnalysisWindow(start=round_half_up(total_samples / 2.0), length=length, kind="noise")

    for w in (lti, noise):
        if w.start < 0:
            raise BoundsError(
                f"{w.kind} window starts at {w.start} (peak {peak_index}, pre-delay {pre} samples)."
            )
        if w.stop > total_samples:
            raise BoundsError(
                f"{w.kind} window [{w.start}, {w.stop}) exceeds signal length {total_samples}."
            )
    return lti, noise


def window_spectrum(ir: Signal, window: AnalysisWindow) -> np.ndarray:
    """FFT of the windowed samples, zero-padded to the full signal length."""
    n = ir.n_samples
    if window.start < 0 or window.stop > n:
        raise BoundsError(f"Window [{window.start}, {window.stop}) outside signal of {n} samples.")
    seg = ir.as_2d()[window.indices()]
    spec = np.fft.fft(seg, n=n, axis=0)
    return spec[:, 0] if ir.data.ndim == 1 else spec


def _check_cutoffs(low_cut_hz: float, high_cut_hz: float, fs: float) -> None:
    if not (0.0 < low_cut_hz < high_cut_hz < fs / 2.0):
        raise ConfigurationError(
            f"Taper cutoffs must satisfy 0 < low < high < fs/2 "
            f"(low={low_cut_hz}, high={high_cut_hz}, fs={fs})."
        )


def taper(spectrum, low_cut_hz: float, high_cut_hz: float, fs: float):
    """
    Band-limit a complex spectrum with raised-cosine roll-offs.

    Below low_cut_hz (both signs) bins become
        (1 - cos(pi * |f| / low)) / 2 * anchor
    and above high_cut_hz
        (1 - cos(pi * (fs/2 - |f|) / (fs/2 - high))) / 2 * anchor
    where the anchor is the ORIGINAL value of the bin nearest the cutoff.
    The roll-off is therefore shaped on the anchor magnitude, not on each
    bin's own content. Bins between the cutoffs pass unchanged.

    Works on (n,) or (n, channels). Returns (tapered, original).
    """
    low_cut_hz = float(low_cut_hz)
    high_cut_hz = float(high_cut_hz)
    fs = float(fs)
    _check_cutoffs(low_cut_hz, high_cut_hz, fs)

    original = np.asarray(spectrum)
    n = original.shape[0]
    if n < 4:
        raise ConfigurationError(f"Spectrum too short for tapering ({n} bins).")

    src = original.reshape(n, -1)
    out = src.astype(complex, copy=True)
    bil = bilateral_frequency_axis(n, fs)
    mag = np.abs(bil)
    nyq = fs / 2.0

    low_pos = int(np.argmin(np.abs(bil - low_cut_hz)))
    high_pos = int(np.argmin(np.abs(bil - high_cut_hz)))
    low_neg = (n - low_pos) % n
    high_neg = (n - high_pos) % n

    # --- low-frequency roll-off (high-pass) ---
    w_low = (1.0 - np.cos(np.pi * mag / low_cut_hz)) / 2.0
    reg_pos = (bil >= 0) & (bil < low_cut_hz)
    reg_neg = (bil < 0) & (bil > -low_cut_hz)
    out[reg_pos] = w_low[reg_pos, None] * src[low_pos]
    out[reg_neg] = w_low[reg_neg, None] * src[low_neg]

    # --- high-frequency roll-off (low-pass) ---
    w_high = (1.0 - np.cos(np.pi * (nyq - mag) / (nyq - high_cut_hz))) / 2.0
    reg_pos = bil > high_cut_hz
    reg_neg = bil < -high_cut_hz
    out[reg_pos] = w_high[reg_pos, None] * src[high_pos]
    out[reg_neg] = w_high[reg_neg, None] * src[high_neg]

    return out.reshape(original.shape), original


def taper_estimate(spectrum, low_cut_hz: float, high_cut_hz: float, fs: float) -> TransferFunctionEstimate:
    tapered, original = taper(spectrum, low_cut_hz, high_cut_hz, fs)
    return TransferFunctionEstimate(
        tapered=tapered, original=original, low_cut_hz=float(low_cut_hz), high_cut_hz=float(high_cut_hz)
    )


def inverse_to_real(spectrum) -> np.ndarray:
    """
    Real-forcing inverse FFT: only bins 0..n/2 are used and the spectrum is
    treated as conjugate-symmetric, so imaginary rounding error is discarded.
    """
    spec = np.asarray(spectrum)
    n = spec.shape[0]
    return np.fft.irfft(spec[: n // 2 + 1], n=n, axis=0)


def transfer_function(lti_spectrum: np.ndarray, epsilon: float = 1e-12):
    """Target/reference channel ratio lti[:, 0] / lti[:, 1]. Returns (tf, SingularityReport)."""
    spec = np.asarray(lti_spectrum)
    if spec.ndim != 2 or spec.shape[1] != 2:
        raise ConfigurationError(f"Transfer function needs a two-channel spectrum, got shape {spec.shape}.")
    tf, report = safe_divide(spec[:, 0], spec[:, 1], epsilon)
    if report.has_singularities:
        logger.warning(f"Transfer function: {report.count} near-zero reference bins, {report.non_finite} zeroed.")
    return tf, report


def gain_difference_db(lti_spectrum: np.ndarray, freqs: np.ndarray, f_low: float, f_high: float) -> np.ndarray:
    """
    Channel 1 minus channel 2 level (dB), shifted so its maximum inside
    (f_low, f_high) is 0 dB.
    """
    spec = np.asarray(lti_spectrum)
    if spec.ndim != 2 or spec.shape[1] != 2:
        raise ConfigurationError("Gain comparison needs a two-channel spectrum.")
    db = spectrum_db(spec)
    diff = db[:, 0] - db[:, 1]
    mask = (freqs > f_low) & (freqs < f_high)
    if not np.any(mask):
        raise ConfigurationError(f"No bins inside ({f_low}, {f_high}) Hz for gain comparison.")
    return diff - float(np.max(diff[mask]))


def centered_time_axis(n: int, fs: float) -> np.ndarray:
    """Time axis matching np.fft.fftshift of an n-sample response."""
    return (np.arange(1, n + 1) - n / 2.0 - 1.0) / float(fs)


def refined_impulse_response(
    ir: Signal,
    lti_window: AnalysisWindow,
    low_cut_hz: float,
    high_cut_hz: float,
    use_transfer_function: bool = False,
    epsilon: float = 1e-12,
):
    """
    LTI window spectrum -> (optional ch1/ch2 transfer function) -> taper ->
    real inverse. Returns (refined_ir, TransferFunctionEstimate).
    """
    spec = window_spectrum(ir, lti_window)
    if use_transfer_function:
        spec, _ = transfer_function(spec, epsilon)
    est = taper_estimate(spec, low_cut_hz, high_cut_hz, ir.fs)
    return inverse_to_real(est.tapered), est
