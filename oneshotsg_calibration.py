# oneshotsg_calibration.py
# One-octave wide sum of sinusoids for sound pressure level calibration.

from __future__ import annotations

import numpy as np

from models import ConfigurationError, Signal

SUPPORTED_FS = (8000, 10000, 12000, 16000, 20000, 22050, 32000, 44100, 48000,
                88200, 96000, 176400, 192000)


def one_octave_calibration_signal(
    fs: int = 48000,
    fc: float = 1000.0,
    duration_s: float = 1.0,
    rms: float = 0.1,
    seed: int | None = None,
) -> Signal:
    """
    Sum of unit sinusoids at every integer frequency in
    round(fc/sqrt(2)) .. round(fc*sqrt(2)) Hz with random phases,
    normalized to standard deviation `rms`.
    """
    fs = int(fs)
    if fs <= 0 or duration_s <= 0:
        raise ConfigurationError("fs and duration_s must be positive.")
    f_lo = int(np.floor(fc * 2 ** (-0.5) + 0.5))
    f_hi = int(np.floor(fc * 2 ** 0.5 + 0.5))
    if f_lo <= 0 or f_hi >= fs / 2:
        raise ConfigurationError(f"Octave band {f_lo}-{f_hi} Hz does not fit fs={fs} Hz.")

    rng = np.random.default_rng(seed)
    n = int(round(duration_s * fs))
    tt = np.arange(1, n + 1) / float(fs)
    x = np.zeros(n)
    for f in range(f_lo, f_hi + 1):
        x += np.sin(2.0 * np.pi * (f * tt + rng.random()))
    x = x / np.std(x) * float(rms)
    return Signal(x, fs)


def calibration_file_name(fs: int) -> str:
    return f"oneOct1sSS{int(fs)}Hz.wav"
