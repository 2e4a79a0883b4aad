from __future__ import annotations
import argparse
import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

SCHEMA_VERSION = "1.0"

from .helpers import validate_float, validate_int
from .clock_sync import SyncParams
from .controller import LinkController
from .polarization import WaveplateMisalignment
from .sources import LinkParams, SimulatedLink
from .stages import SimulatedRotationStage
from .state_correction import DEFAULT_POSITIONS, OptimizationMode, StateCorrectionParams
from .settings import LinkSettings, save_settings
from .plotting import (
    plot_correlation_histogram,
    plot_drift_trials,
    plot_key_qber,
    plot_optimizer_trace,
)

logger = logging.getLogger(__name__)


def main(argv: Optional[Sequence[str]] = None) -> None:
    p = argparse.ArgumentParser(
        prog="eqkd-lab",
        description="Entangled-photon QKD link control against a simulated link.",
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    def common(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--packet-size", type=int, default=50_000,
                        help="Events per capture packet (default: 50000)")
        sp.add_argument("--drift", type=float, default=0.05,
                        help="True drift coefficient of the simulated Bob clock (default: 0.05)")
        sp.add_argument("--drift-guess", type=float, default=None,
                        help="Initial drift coefficient (default: drift * 1.002)")
        sp.add_argument("--base-error", type=float, default=0.01,
                        help="Intrinsic bit error probability of the source (default: 0.01)")
        sp.add_argument("--seed", type=int, default=0)
        sp.add_argument("--settings", type=str, default=None,
                        help="Link settings JSON; written back after the run")
        sp.add_argument("--outdir", type=str, default=".",
                        help="Output directory for figures/reports/keys (default: .)")
        sp.add_argument("--no-plots", action="store_true", help="Skip figure generation")
        sp.add_argument("-v", "--verbose", action="store_true", help="Log status lines")

    s = sub.add_parser(
        "sync",
        help="Run clock synchronization cycles.",
        epilog="Examples:\n  eqkd-lab sync --cycles 3 --drift 0.05",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common(s)
    s.add_argument("--cycles", type=int, default=3, help="Synchronization cycles (default: 3)")

    c = sub.add_parser(
        "correct",
        help="Run polarization state correction.",
        epilog="Examples:\n  eqkd-lab correct --mode grid --misalignment 3",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common(c)
    c.add_argument("--mode", choices=[m.value for m in OptimizationMode], default="grid",
                   help="Optimization strategy (default: grid)")
    c.add_argument("--misalignment", type=float, default=3.0,
                   help="Offset of the true optimum from the start position per axis, deg (default: 3)")
    c.add_argument("--init-range", type=float, default=10.0,
                   help="Initial grid range in degrees (default: 10)")
    c.add_argument("--perturbation", type=float, default=5.0,
                   help="Initial simplex step in degrees (default: 5)")
    c.add_argument("--accuracy", type=float, default=1.0,
                   help="Grid range at which the search stops, deg (default: 1.0)")

    k = sub.add_parser(
        "keygen",
        help="Run key generation cycles.",
        epilog="Examples:\n  eqkd-lab keygen --cycles 5",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common(k)
    k.add_argument("--cycles", type=int, default=5, help="Key generation cycles (default: 5)")

    d = sub.add_parser(
        "demo",
        help="Synchronize, correct the polarization, then generate keys.",
        epilog="Examples:\n  eqkd-lab demo --outdir out",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common(d)
    d.add_argument("--cycles", type=int, default=3, help="Key generation cycles (default: 3)")
    d.add_argument("--misalignment", type=float, default=3.0)

    args = p.parse_args(argv)

    _validate_args(args)
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )

    if args.cmd == "sync":
        _run_sync(args)
    elif args.cmd == "correct":
        _run_correct(args)
    elif args.cmd == "keygen":
        _run_keygen(args)
    elif args.cmd == "demo":
        _run_demo(args)


def _validate_args(args: argparse.Namespace) -> None:
    validate_int("packet_size", args.packet_size, min_value=1000)
    validate_float("drift", args.drift, min_value=-0.5, max_value=0.5)
    validate_float("base_error", args.base_error, min_value=0.0, max_value=0.5)
    if getattr(args, "cycles", None) is not None:
        validate_int("cycles", args.cycles, min_value=1)
    if getattr(args, "init_range", None) is not None:
        validate_float("init_range", args.init_range, min_value=0.0)


def _prepare_outdir(args: argparse.Namespace) -> Path:
    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    (outdir / "figures").mkdir(exist_ok=True)
    (outdir / "reports").mkdir(exist_ok=True)
    return outdir


def _build_link(args: argparse.Namespace, misalignment: float = 0.0):
    """Simulated link, three stages and the polarization model tying them together."""
    stages = [
        SimulatedRotationStage(name=name, position=pos)
        for name, pos in zip(("QWP_A", "HWP", "QWP_B"), DEFAULT_POSITIONS)
    ]
    optimum = tuple(pos + misalignment for pos in DEFAULT_POSITIONS)
    polarization = WaveplateMisalignment(stages, optimum, base_error=args.base_error)
    link = SimulatedLink(
        LinkParams(drift_coefficient=args.drift, base_error=args.base_error, seed=args.seed),
        polarization=polarization,
    )
    return link, stages, optimum


def _build_controller(
    args: argparse.Namespace,
    link: SimulatedLink,
    stages,
    outdir: Path,
    correction: Optional[StateCorrectionParams] = None,
    stats_format: str = "local",
) -> LinkController:
    guess = args.drift_guess if args.drift_guess is not None else args.drift * 1.002
    settings_path = args.settings or str(outdir / "settings.json")
    if args.settings is None or not Path(settings_path).exists():
        logger.info("Seeding %s with drift coefficient %.6g", settings_path, guess)
        save_settings(LinkSettings(packet_size=args.packet_size, linear_drift_coefficient=guess), settings_path)
    return LinkController(
        link.alice,
        link.bob,
        stages=stages,
        settings_path=settings_path,
        output_dir=str(outdir / "keys"),
        sync_params=SyncParams(),
        correction_params=correction,
        stats_format=stats_format,
    )


def _write_report(outdir: Path, command: str, args: argparse.Namespace, results: Dict[str, Any]) -> Path:
    report = {
        "schema_version": SCHEMA_VERSION,
        "generated_utc": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "command": command,
        "params": {k: v for k, v in vars(args).items() if k != "cmd"},
        "results": results,
    }
    report_path = outdir / "reports" / "latest.json"
    with open(report_path, "w") as f:
        json.dump(report, f, indent=2)
        f.write("\n")
    print("Wrote:", report_path)
    return report_path


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None or not math.isfinite(value):
        return None
    return float(value)


def _sync_cycles(controller: LinkController, n_cycles: int):
    rows = []
    last = None
    for i in range(n_cycles):
        cycle = controller.synchronization_cycle()
        last = cycle
        rows.append({
            "cycle": i + 1,
            "is_synchronized": cycle.clock.is_synchronized,
            "linear_drift_coefficient": cycle.clock.linear_drift_coefficient,
            "sigma_ps": _finite(cycle.clock.sigma),
            "global_clock_offset_ps": cycle.clock.global_clock_offset,
            "fiber_offset_ps": controller.sync_state.fiber_offset,
            "corr_peak_found": bool(cycle.correlation and cycle.correlation.corr_peak_found),
        })
    return rows, last


def _run_sync(args: argparse.Namespace) -> None:
    outdir = _prepare_outdir(args)
    link, stages, _ = _build_link(args)
    controller = _build_controller(args, link, stages, outdir)
    rows, last = _sync_cycles(controller, args.cycles)
    controller.save_settings()

    if not args.no_plots and last is not None:
        clock = last.clock
        if clock.histogram is not None:
            path = plot_correlation_histogram(
                clock.histogram,
                str(outdir / "figures" / "clock_sync_histogram.png"),
                fit_curve=clock.fit_curve,
                peaks=clock.peaks,
                title="Clock synchronization",
            )
            print("Plot:", path)
        path = plot_drift_trials(
            [t.coefficient for t in clock.trials],
            [t.sigma for t in clock.trials],
            str(outdir / "figures" / "drift_trials.png"),
        )
        print("Plot:", path)

    _write_report(outdir, "sync", args, {
        "cycles": rows,
        "true_drift_coefficient": args.drift,
        "final_drift_coefficient": controller.sync_state.linear_drift_coefficient,
    })


def _correction_params(args: argparse.Namespace) -> StateCorrectionParams:
    return StateCorrectionParams(
        mode=OptimizationMode(getattr(args, "mode", "grid")),
        init_range=getattr(args, "init_range", 10.0),
        accuracy_grid=getattr(args, "accuracy", 1.0),
        accuracy_simplex=getattr(args, "accuracy", 1.0),
        initial_positions=DEFAULT_POSITIONS,
        initial_perturbation=(getattr(args, "perturbation", 5.0),) * 3,
    )


def _run_correction(args: argparse.Namespace, controller: LinkController, optimum, outdir: Path) -> Dict[str, Any]:
    result = controller.run_state_correction()
    if not args.no_plots and result.evaluations:
        path = plot_optimizer_trace(
            [e.cost for e in result.evaluations],
            [e.error for e in result.evaluations],
            str(outdir / "figures" / "state_correction_trace.png"),
        )
        print("Plot:", path)
    return {
        "mode": result.mode.value,
        "started": result.started,
        "converged": result.converged,
        "exit_reason": result.exit_reason,
        "evaluations": len(result.evaluations),
        "best_cost": _finite(result.best_cost),
        "final_positions": list(result.final_positions),
        "true_optimum": list(optimum),
    }


def _run_correct(args: argparse.Namespace) -> None:
    outdir = _prepare_outdir(args)
    link, stages, optimum = _build_link(args, misalignment=args.misalignment)
    controller = _build_controller(args, link, stages, outdir, correction=_correction_params(args))
    _sync_cycles(controller, 1)
    results = _run_correction(args, controller, optimum, outdir)
    controller.save_settings()
    _write_report(outdir, "correct", args, results)


def _key_cycles(args: argparse.Namespace, controller: LinkController, n_cycles: int, outdir: Path) -> Dict[str, Any]:
    rows = []
    for i in range(n_cycles):
        cycle = controller.key_generation_cycle()
        rows.append({
            "cycle": i + 1,
            "skipped": cycle.sift.skipped,
            "bits": cycle.sift.n_bits,
            "cycle_qber": _finite(cycle.sift.cycle_qber),
            "qber": _finite(cycle.sift.qber),
            "raw_rate": cycle.sift.raw_rate,
        })
    done = [r for r in rows if not r["skipped"]]
    if not args.no_plots and done:
        path = plot_key_qber(
            [r["qber"] if r["qber"] is not None else float("nan") for r in done],
            [r["raw_rate"] for r in done],
            str(outdir / "figures" / "key_generation.png"),
        )
        print("Plot:", path)
    return {
        "cycles": rows,
        "key_length": controller.sifter.total_bits,
        "qber": _finite(controller.sifter.qber),
    }


def _run_keygen(args: argparse.Namespace) -> None:
    outdir = _prepare_outdir(args)
    link, stages, _ = _build_link(args)
    controller = _build_controller(args, link, stages, outdir)
    results = _key_cycles(args, controller, args.cycles, outdir)
    controller.save_settings()
    _write_report(outdir, "keygen", args, results)


def _run_demo(args: argparse.Namespace) -> None:
    outdir = _prepare_outdir(args)
    link, stages, optimum = _build_link(args, misalignment=args.misalignment)
    controller = _build_controller(args, link, stages, outdir, correction=_correction_params(args))
    sync_rows, _ = _sync_cycles(controller, 2)
    correction = _run_correction(args, controller, optimum, outdir)
    keys = _key_cycles(args, controller, args.cycles, outdir)
    controller.save_settings()
    _write_report(outdir, "demo", args, {
        "sync": sync_rows,
        "state_correction": correction,
        "key_generation": keys,
    })


if __name__ == "__main__":
    main()
