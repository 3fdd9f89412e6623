import argparse
import logging
import sys
from datetime import datetime
from enum import IntEnum
from pathlib import Path

import numpy as np

import oneshotsg_calibration as calibration
import oneshotsg_dsp as dsp
import oneshotsg_pipeline as pipeline
import oneshotsg_plot as plots
from models import AnalysisConfig, ConfigurationError, OneShotSGError, Signal, ThresholdSweepCancelled
from oneshotsg_config import CONFIG_FILE, load_config, save_config
from oneshotsg_cq import build_filter_bank
from oneshotsg_io.audio_wav import load_audio, save_audio
from oneshotsg_io.params_json import load_params, save_params
from oneshotsg_io.safeguard_ref import resolve_safeguard
from oneshotsg_optimize import run_safeguard

logger = logging.getLogger("OneShotSG")

VERSION = "v1.3.1"

# v1.3.1: [CLI] plots use the safeguard's fLow/fHigh (--sg-params); results dir gets a suffix on collision
# v1.3.0: [CLI] filterbank subcommand
# v1.2.1: [IO] refined IR comments written next to the WAV
# v1.2.0: [OPT] parallel threshold sweep (--workers)
# v1.1.0: [CLI] interactive accept/reject of the refinement range


class ExitCode(IntEnum):
    OK = 0
    USAGE = 2
    RUNTIME_ERROR = 10
    CANCELLED = 20


def setup_logging(verbose: bool = False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def results_dir(prefix: str = "oneShotSG_Test_", base=".") -> Path:
    """
    Create <base>/<prefix>yyyyMMdd_HHmmss so runs never overwrite each other.
    Runs started within the same second get _1, _2, ... appended.
    """
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    Path(base).mkdir(parents=True, exist_ok=True)
    path = Path(base) / f"{prefix}{stamp}"
    suffix = 0
    while True:
        try:
            path.mkdir(exist_ok=False)
            break
        except FileExistsError:
            suffix += 1
            path = Path(base) / f"{prefix}{stamp}_{suffix}"
    logger.info(f"Results will be saved in: {path}")
    return path


# --- analyze ---

def _config_from_args(args) -> AnalysisConfig:
    data = load_config(args.config) if args.config else load_config(CONFIG_FILE)
    overrides = {
        "low_cut_hz": args.low_cut,
        "high_cut_hz": args.high_cut,
        "pre_delay_s": args.pre_delay,
        "window_duration_s": args.window,
        "threshold_db": args.threshold,
        "high_freq_limit_hz": args.hf_limit,
        "workers": args.workers,
        "reference_channel": args.reference_channel,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    if args.no_plots:
        data["make_plots"] = False
    return AnalysisConfig.from_dict(data)


def _ask_float(prompt: str, default: float) -> float:
    raw = input(f"{prompt} [{default:g}]: ").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        print(f"Not a number: {raw!r}, keeping {default:g}")
        return default


def _refine_interactive(analysis, cfg, outdir):
    low, high = cfg.low_cut_hz, cfg.high_cut_hz
    while True:
        low = _ask_float("Enter the desired LOW frequency limit (Hz)", low)
        high = _ask_float("Enter the desired HIGH frequency limit (Hz)", high)
        try:
            refined = pipeline.refine(analysis, low, high)
        except ConfigurationError as e:
            print(f"Error: {e} Please try again.")
            continue
        if cfg.make_plots:
            plots.save_png(outdir / _refined_png(analysis), plots.plot_refined(analysis, refined))
        answer = input("Are these results OK? (Y/N) [Y]: ").strip().upper()
        if not answer or answer == "Y":
            logger.info("Finalizing results from interactive session.")
            return refined
        logger.info("Retrying with new frequency limits.")


def _refined_png(analysis) -> str:
    return "refined_TF_and_IR.png" if analysis.uses_transfer_function else "refined_FreqResp_and_IR.png"


def _save_initial_plots(analysis, cfg, outdir, sg_params=None):
    mark_low, mark_high = pipeline.safeguard_limits(sg_params, cfg.low_cut_hz, cfg.high_freq_limit_hz)
    plots.save_png(outdir / "initial_impulse_response.png", plots.plot_impulse_responses(analysis))
    plots.save_png(
        outdir / "initial_freq_response_SG.png",
        plots.plot_frequency_response(analysis, "sg", mark_low, mark_high, cfg.threshold_db),
    )
    plots.save_png(
        outdir / "initial_freq_response_RetroSG.png",
        plots.plot_frequency_response(analysis, "retro", mark_low, mark_high),
    )
    if analysis.uses_transfer_function:
        gain_low, gain_high = pipeline.safeguard_limits(sg_params, cfg.low_cut_hz, cfg.high_cut_hz)
        plots.save_png(
            outdir / "gain_comparison_RetroSG.png",
            plots.plot_gain_comparison(analysis, gain_low, gain_high),
        )


def cmd_analyze(args) -> int:
    cfg = _config_from_args(args)
    safeguard = resolve_safeguard(args.safeguard) if args.safeguard else None
    stimulus = load_audio(args.stimulus) if args.stimulus else None

    if args.optimize and (safeguard is None or stimulus is None):
        raise ConfigurationError("--optimize needs both --stimulus and --safeguard.")

    sg_params = load_params(args.sg_params) if args.sg_params else None
    if args.played_sg:
        played_sg = load_audio(args.played_sg)
    elif stimulus is not None and safeguard is not None:
        logger.info(f"Safeguarding stimulus at {cfg.threshold_db:g} dB (limit {cfg.high_freq_limit_hz:g} Hz)")
        played_sg, params = run_safeguard(safeguard, stimulus, cfg.threshold_db, cfg.high_freq_limit_hz)
        sg_params = sg_params or params
    else:
        raise ConfigurationError("Give --played-sg, or --stimulus with --safeguard.")

    recorded_sg = load_audio(args.recorded_sg)
    recorded_raw = load_audio(args.recorded_raw)
    source_name = Path(args.recorded_sg).name

    outdir = results_dir(cfg.results_prefix, args.outdir or ".")
    save_config(cfg.to_dict(), str(outdir / "config.json"))

    analysis = pipeline.analyze(cfg, played_sg, recorded_sg, recorded_raw, source_name)
    if cfg.make_plots:
        _save_initial_plots(analysis, cfg, outdir, sg_params)

    if args.interactive:
        refined = _refine_interactive(analysis, cfg, outdir)
    else:
        refined = pipeline.refine(analysis, cfg.low_cut_hz, cfg.high_cut_hz)
        if cfg.make_plots:
            plots.save_png(outdir / _refined_png(analysis), plots.plot_refined(analysis, refined))

    fs = analysis.fs
    save_audio(outdir / "refinedImpulseResponse.wav", Signal(refined.refined_ir_sg, fs),
               cfg.bit_depth, refined.comment_sg)
    save_audio(outdir / "refinedImpulseResponseRetro.wav", Signal(refined.refined_ir_retro, fs),
               cfg.bit_depth, refined.comment_retro)

    if not args.optimize:
        logger.info("Done.")
        return ExitCode.OK

    logger.info("Starting retrospective optimization...")
    result = pipeline.optimize_retro(analysis, refined, stimulus, safeguard)
    logger.info(f"Optimal Threshold: {result.best_threshold_db:g} dB (Error: {result.best_error_db:.2f} dB)")

    best = pipeline.best_retro(analysis, refined, result, stimulus, safeguard)
    save_audio(outdir / "bestImpulseResponseRetro.wav", Signal(best.refined_ir, fs),
               cfg.bit_depth, best.comment)
    save_params(
        outdir / "best_SG_params.json",
        result,
        best.safeguard_params,
        extra={"source": source_name, "lowCutHz": refined.low_cut_hz, "highCutHz": refined.high_cut_hz},
    )
    if cfg.make_plots:
        plots.save_png(outdir / "retrospective_optimization_error.png", plots.plot_optimization_curve(result))
        plots.save_png(outdir / "best_FreqResp_and_IR.png", plots.plot_refined(analysis, refined, best))

    logger.info("Done.")
    return ExitCode.OK


# --- calibration ---

def cmd_calibration(args) -> int:
    sig = calibration.one_octave_calibration_signal(fs=args.fs, fc=args.fc, seed=args.seed)
    out = Path(args.outdir or ".") / calibration.calibration_file_name(args.fs)
    save_audio(out, sig, bit_depth=24)
    return ExitCode.OK


# --- filterbank ---

def cmd_filterbank(args) -> int:
    n = int(args.length)
    freqs = dsp.frequency_axis(n, args.fs)[: n // 2 + 1]
    bank = build_filter_bank(freqs, args.bandwidth, args.step)
    print(f"{bank.n_channel} channels ({bank.elapsed_s * 1000:.1f} ms)")
    for i, fc in enumerate(np.asarray(bank.fc_set)):
        print(f"{i + 1:3d}  {fc:10.2f} Hz")
    return ExitCode.OK


COMMANDS = {
    "analyze": cmd_analyze,
    "calibration": cmd_calibration,
    "filterbank": cmd_filterbank,
}


def build_parser():
    parser = argparse.ArgumentParser(prog="oneshotsg", description="One-shot safeguarded IR measurement analysis")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command")

    p_an = sub.add_parser("analyze", help="Analyze SG and raw recordings")
    p_an.add_argument("--played-sg", help="Safeguarded signal that was played (WAV)")
    p_an.add_argument("--recorded-sg", required=True, help="Recording of the safeguarded playback (WAV)")
    p_an.add_argument("--recorded-raw", required=True, help="Recording of the raw playback (WAV)")
    p_an.add_argument("--stimulus", help="Original (raw) test signal (WAV)")
    p_an.add_argument("--config", help=f"JSON config (default {CONFIG_FILE})")
    p_an.add_argument("--outdir", help="Base directory for the results folder")
    p_an.add_argument("--safeguard", help="Safeguarding function as module:function")
    p_an.add_argument("--sg-params", help="JSON with the safeguard's fLow/fHigh for --played-sg (e.g. best_SG_params.json)")
    p_an.add_argument("--low-cut", type=float, help="Refinement low frequency limit (Hz)")
    p_an.add_argument("--high-cut", type=float, help="Refinement high frequency limit (Hz)")
    p_an.add_argument("--pre-delay", type=float, help="Time before the main peak (s)")
    p_an.add_argument("--window", type=float, help="Plausible impulse response length (s)")
    p_an.add_argument("--threshold", type=float, help="Safeguarding threshold (dB)")
    p_an.add_argument("--hf-limit", type=float, help="Safeguarding high frequency limit (Hz)")
    p_an.add_argument("--reference-channel", type=int, help="Channel used for peak search (0-based)")
    p_an.add_argument("--optimize", action="store_true", help="Run the retrospective threshold sweep")
    p_an.add_argument("--workers", type=int, help="Parallel threshold evaluations")
    p_an.add_argument("--interactive", action="store_true", help="Ask for frequency limits until accepted")
    p_an.add_argument("--no-plots", action="store_true")

    p_cal = sub.add_parser("calibration", help="Write the one-octave calibration signal")
    p_cal.add_argument("--fs", type=int, default=48000, choices=calibration.SUPPORTED_FS)
    p_cal.add_argument("--fc", type=float, default=1000.0)
    p_cal.add_argument("--seed", type=int)
    p_cal.add_argument("--outdir")

    p_fb = sub.add_parser("filterbank", help="Print constant-Q channel centers")
    p_fb.add_argument("--fs", type=int, default=48000)
    p_fb.add_argument("--length", type=int, default=65536, help="FFT length")
    p_fb.add_argument("--bandwidth", type=float, default=1.0 / 3.0, help="Bandwidth (octaves)")
    p_fb.add_argument("--step", type=float, default=1.0 / 6.0, help="Channel spacing (octaves)")

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:] if argv is None else argv))
    setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        return ExitCode.USAGE

    try:
        return COMMANDS[args.command](args)
    except (ThresholdSweepCancelled, KeyboardInterrupt) as e:
        logger.warning(f"Cancelled: {e}")
        return ExitCode.CANCELLED
    except (OneShotSGError, OSError) as e:
        logger.error(f"Error: {e}")
        return ExitCode.RUNTIME_ERROR


if __name__ == '__main__':
    sys.exit(main())
