# oneshotsg_io/audio_wav.py
import logging
from pathlib import Path
from typing import Optional

import numpy as np
import scipy.io.wavfile

from models import ConfigurationError, Signal

logger = logging.getLogger("OneShotSG.io")


def _wav_to_float(sig: np.ndarray) -> np.ndarray:
    x = np.asarray(sig)
    if x.dtype.kind == "f":
        return x.astype(np.float64, copy=False)
    if x.dtype == np.int16:
        return x.astype(np.float64) / 32768.0
    if x.dtype == np.int32:
        # 24-bit files are read left-justified into int32
        return x.astype(np.float64) / 2147483648.0
    if x.dtype == np.uint8:
        return (x.astype(np.float64) - 128.0) / 128.0
    return x.astype(np.float64)


def _float_to_pcm(x: np.ndarray, bit_depth: int) -> np.ndarray:
    if bit_depth == 0:
        return np.asarray(x, dtype=np.float32)
    peak = float(np.max(np.abs(x))) if x.size else 0.0
    if peak > 1.0:
        logger.warning(f"Samples exceed full scale (peak {peak:.3f}); clipping to +-1.")
    y = np.clip(x, -1.0, 1.0)
    if bit_depth == 16:
        return np.round(y * 32767.0).astype(np.int16)
    # 24-bit goes into an int32 container
    return np.round(y * 2147483647.0).astype(np.int32)


def load_audio(path) -> Signal:
    """Read a WAV file into a float Signal (n,) or (n, 2)."""
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"WAV file not found: {p}")
    fs, sig = scipy.io.wavfile.read(str(p))
    data = _wav_to_float(sig)
    if data.ndim == 2 and data.shape[1] > 2:
        raise ConfigurationError(f"{p.name}: {data.shape[1]} channels, at most 2 supported.")
    logger.info(f"Loaded {p.name}: {data.shape[0]} samples, {int(fs)} Hz, "
                f"{1 if data.ndim == 1 else data.shape[1]} ch")
    return Signal(data, int(fs))


def save_audio(path, signal: Signal, bit_depth: int = 24, comment: Optional[str] = None) -> Path:
    """
    Write a Signal as WAV. bit_depth 16 -> int16, 24/32 -> int32, 0 -> float32.
    `comment` (provenance) goes to a .txt file next to the WAV.
    """
    if bit_depth not in (0, 16, 24, 32):
        raise ConfigurationError(f"Unsupported bit depth: {bit_depth}")
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    scipy.io.wavfile.write(str(p), int(signal.fs), _float_to_pcm(signal.data, int(bit_depth)))
    if comment:
        p.with_suffix(".txt").write_text(comment + "\n", encoding="utf-8")
    logger.info(f"Saved {p.name}")
    return p
