from dataclasses import dataclass, field, fields
from typing import Optional, List, Dict, Tuple, Any

import numpy as np


# --- ERRORS ---

class OneShotSGError(Exception):
    """Base class for analysis errors."""


class ConfigurationError(OneShotSGError, ValueError):
    """Invalid parameters: cutoff order, bandwidth, axis, mismatched signals."""


class BoundsError(OneShotSGError, IndexError):
    """An analysis window falls outside the signal."""


class OptimizationError(OneShotSGError):
    """No threshold candidate could be scored."""


class ThresholdSweepCancelled(OneShotSGError):
    """Sweep stopped by its cancel flag. `partial` holds the scored candidates."""

    def __init__(self, message: str, partial: Optional[List["ThresholdCandidate"]] = None):
        super().__init__(message)
        self.partial = list(partial or [])


# --- SIGNALS ---

@dataclass(frozen=True, eq=False)
class Signal:
    data: np.ndarray                # (n,) or (n, channels)
    fs: int

    def __post_init__(self):
        arr = np.asarray(self.data, dtype=float)
        if arr.ndim not in (1, 2):
            raise ConfigurationError(f"Signal must be 1-D or 2-D, got shape {arr.shape}.")
        if arr.ndim == 2 and arr.shape[1] not in (1, 2):
            raise ConfigurationError(f"Signal must have 1 or 2 channels, got {arr.shape[1]}.")
        if int(self.fs) <= 0:
            raise ConfigurationError(f"Invalid sample rate: {self.fs}")
        object.__setattr__(self, "data", arr)
        object.__setattr__(self, "fs", int(self.fs))

    @property
    def n_samples(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_channels(self) -> int:
        return 1 if self.data.ndim == 1 else int(self.data.shape[1])

    @property
    def duration_s(self) -> float:
        return self.n_samples / float(self.fs)

    def as_2d(self) -> np.ndarray:
        """Samples as (n, channels); mono becomes one column."""
        return self.data.reshape(self.n_samples, -1)

    def channel(self, index: int) -> np.ndarray:
        return self.as_2d()[:, int(index)]

    def trimmed(self, n_samples: int) -> "Signal":
        if n_samples > self.n_samples:
            raise BoundsError(f"Cannot trim {self.n_samples} samples to {n_samples}.")
        return Signal(self.data[:n_samples], self.fs)


@dataclass(frozen=True, eq=False)
class SingularityReport:
    """Near-zero denominator bins found during spectral division."""
    mask: np.ndarray                # True where |den| <= epsilon * max|den|
    epsilon: float
    non_finite: int = 0             # bins whose quotient was inf/nan (zeroed)

    @property
    def count(self) -> int:
        return int(np.count_nonzero(self.mask))

    @property
    def has_singularities(self) -> bool:
        return self.count > 0 or self.non_finite > 0

    def as_dict(self) -> Dict[str, Any]:
        return {"count": self.count, "non_finite": int(self.non_finite), "epsilon": float(self.epsilon)}


@dataclass(frozen=True, eq=False)
class ImpulseResponse(Signal):
    singularities: Optional[SingularityReport] = None


@dataclass(frozen=True)
class AnalysisWindow:
    start: int
    length: int
    kind: str = "lti"               # "lti" or "noise"

    @property
    def stop(self) -> int:
        return self.start + self.length

    def indices(self) -> slice:
        return slice(self.start, self.stop)


@dataclass(frozen=True, eq=False)
class TransferFunctionEstimate:
    tapered: np.ndarray
    original: np.ndarray
    low_cut_hz: float
    high_cut_hz: float


# --- OPTIMIZATION ---

@dataclass(frozen=True)
class ThresholdCandidate:
    threshold_db: float
    error_level_db: float           # nan = failed / excluded
    scale: float = float("nan")
    error: Optional[str] = None
    singularities: Optional[Dict[str, Any]] = None   # SingularityReport.as_dict() of the deconvolution

    @property
    def ok(self) -> bool:
        return bool(np.isfinite(self.error_level_db))

    def as_dict(self) -> Dict[str, Any]:
        return {
            "threshold_db": float(self.threshold_db),
            "error_level_db": None if not self.ok else float(self.error_level_db),
            "scale": None if not np.isfinite(self.scale) else float(self.scale),
            "error": self.error,
            "singularities": self.singularities,
        }


@dataclass(frozen=True)
class OptimizationResult:
    best: ThresholdCandidate
    candidates: Tuple[ThresholdCandidate, ...]

    @property
    def best_threshold_db(self) -> float:
        return float(self.best.threshold_db)

    @property
    def best_error_db(self) -> float:
        return float(self.best.error_level_db)

    @property
    def best_scale(self) -> float:
        return float(self.best.scale)

    def error_curve(self) -> Tuple[np.ndarray, np.ndarray]:
        thr = np.array([c.threshold_db for c in self.candidates], dtype=float)
        err = np.array([c.error_level_db for c in self.candidates], dtype=float)
        return thr, err

    def as_dict(self) -> Dict[str, Any]:
        return {
            "bestThresholdDb": self.best_threshold_db,
            "bestErrorDb": self.best_error_db,
            "bestScale": self.best_scale,
            "candidates": [c.as_dict() for c in self.candidates],
        }


# --- FILTER BANK ---

@dataclass(frozen=True, eq=False)
class FilterBank:
    n_channel: int
    fc_set: np.ndarray              # center frequencies (Hz)
    filter_weight: np.ndarray       # (n_channel, n_freq), rows sum to 1
    filter_weight_raw: np.ndarray   # (n_channel, n_freq)
    quad_filter_weight: np.ndarray  # sqrt(|raw|)
    bandwidth_octaves: float
    step_octaves: float
    elapsed_s: float = 0.0


# --- CONFIG ---

def _default_threshold_list() -> List[float]:
    return [float(t) for t in range(0, -42, -2)]


@dataclass
class AnalysisConfig:

    # --- 1. IR WINDOWING ---
    pre_delay_s: float = 0.05           # time before main peak
    window_duration_s: float = 0.5      # plausible IR length
    reference_channel: Optional[int] = None  # None -> 1 for two channels, else 0

    # --- 2. REFINEMENT (TAPER) ---
    low_cut_hz: float = 100.0
    high_cut_hz: float = 18000.0

    # --- 3. SAFEGUARDING ---
    threshold_db: float = -20.0
    high_freq_limit_hz: float = 20000.0
    threshold_list_db: List[float] = field(default_factory=_default_threshold_list)

    # --- 4. RETRO OPTIMIZATION ---
    mag_min: float = 0.9
    mag_max: float = 1.1
    mag_step: float = 0.001
    comparison_margin_s: float = 0.01
    workers: int = 1

    # --- 5. NUMERICS / OUTPUT ---
    singular_epsilon: float = 1e-12
    bit_depth: int = 24
    results_prefix: str = "oneShotSG_Test_"
    make_plots: bool = True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AnalysisConfig":
        known = {f.name for f in fields(cls)}
        cfg = cls(**{k: v for k, v in (data or {}).items() if k in known})
        cfg.validate()
        return cfg

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def resolve_reference_channel(self, n_channels: int) -> int:
        if self.reference_channel is None:
            return 1 if n_channels >= 2 else 0
        ch = int(self.reference_channel)
        if ch < 0 or ch >= n_channels:
            raise ConfigurationError(f"reference_channel {ch} not in 0..{n_channels - 1}")
        return ch

    def magnitude_list(self) -> np.ndarray:
        """Scale factors mag_min..mag_max inclusive (0.9..1.1 -> 201 values)."""
        n = int(round((self.mag_max - self.mag_min) / self.mag_step)) + 1
        return np.linspace(self.mag_min, self.mag_max, n)

    def validate(self) -> None:
        try:
            self.pre_delay_s = float(self.pre_delay_s)
            self.window_duration_s = float(self.window_duration_s)
            self.low_cut_hz = float(self.low_cut_hz)
            self.high_cut_hz = float(self.high_cut_hz)
            self.threshold_db = float(self.threshold_db)
            self.high_freq_limit_hz = float(self.high_freq_limit_hz)
            self.threshold_list_db = [float(t) for t in self.threshold_list_db]
            self.mag_min = float(self.mag_min)
            self.mag_max = float(self.mag_max)
            self.mag_step = float(self.mag_step)
            self.comparison_margin_s = float(self.comparison_margin_s)
            self.workers = int(self.workers)
            self.singular_epsilon = float(self.singular_epsilon)
            self.bit_depth = int(self.bit_depth)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration value: {e}") from e

        if self.pre_delay_s < 0:
            raise ConfigurationError("pre_delay_s must be >= 0")
        if self.window_duration_s <= 0:
            raise ConfigurationError("window_duration_s must be > 0")
        if not 0 < self.low_cut_hz < self.high_cut_hz:
            raise ConfigurationError(
                f"Low frequency limit must be less than high frequency limit "
                f"(got {self.low_cut_hz} / {self.high_cut_hz})."
            )
        if not self.threshold_list_db:
            raise ConfigurationError("threshold_list_db is empty")
        if not 0 < self.mag_min <= self.mag_max or self.mag_step <= 0:
            raise ConfigurationError("Invalid magnitude scan (mag_min, mag_max, mag_step).")
        if self.workers < 1:
            raise ConfigurationError("workers must be >= 1")
        if self.singular_epsilon < 0:
            raise ConfigurationError("singular_epsilon must be >= 0")
        if self.bit_depth not in (0, 16, 24, 32):
            raise ConfigurationError(f"Unsupported bit depth: {self.bit_depth}")
