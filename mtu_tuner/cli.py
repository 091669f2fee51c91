#!/usr/bin/env python3
"""
Command line interface for the MTU tuner.

Subcommands:
    optimize   probe an MTU range and apply the best value
    evaluate   run the continuous evaluation loop
    analyze    rebuild the condition model from the history
    predict    forecast the optimal MTU range for a current MTU
    adapt      decide (and apply) the next MTU
"""

import argparse
import json
import logging
import signal
import sys
from typing import List, Optional

from .analyzer import recommendations
from .config import configure_logging, load_config
from .controller import MtuTuner, start_metrics_server
from .exceptions import MtuTunerError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wg-mtu-tune", description="Adaptive MTU tuning for WireGuard interfaces"
    )
    parser.add_argument("-c", "--config", type=str, help="YAML configuration file")
    parser.add_argument("-l", "--log-file", type=str, help="Also log to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--state-dir", type=str, help="Learning state directory")
    parser.add_argument("--prometheus-port", type=int, help="Expose Prometheus metrics on this port")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-i", "--interface", type=str, help="Interface (auto-detected if omitted)")

    sub = parser.add_subparsers(dest="command", required=True)

    opt = sub.add_parser("optimize", parents=[common], help="Probe an MTU range and apply the best value")
    opt.add_argument("-s", "--server", type=str, help="Reference endpoint running iperf3")
    opt.add_argument("-m", "--min-mtu", type=int, help="Lowest MTU to test")
    opt.add_argument("-n", "--max-mtu", type=int, help="Highest MTU to test")
    opt.add_argument("-p", "--step", type=int, help="MTU increment")
    opt.add_argument("-j", "--jobs", type=int, help="Parallel probe workers")
    opt.add_argument("-r", "--retries", type=int, help="Attempts per candidate")
    opt.add_argument("--auto-tune", action="store_true",
                     help="Derive probe parameters from the detected network conditions")
    opt.add_argument("--report", type=str, help="Write the optimization report to this path")
    opt.add_argument("--graph", type=str, help="Write a score-vs-MTU plot (PNG) to this path")
    opt.add_argument("--no-apply", action="store_true",
                     help="Restore the original MTU instead of applying the best one")

    ev = sub.add_parser("evaluate", parents=[common], help="Run the continuous evaluation loop")
    ev.add_argument("-s", "--server", type=str, help="Reference endpoint running iperf3")
    ev.add_argument("--interval", type=float, help="Seconds between cycles")
    ev.add_argument("--threshold", type=int, help="Cycles between adaptations")
    ev.add_argument("--cycles", type=int, help="Stop after this many cycles")

    sub.add_parser("analyze", parents=[common], help="Rebuild the condition model from the history")

    pr = sub.add_parser("predict", parents=[common], help="Forecast the optimal MTU range")
    pr.add_argument("--mtu", type=int, help="Current MTU (read from the interface if omitted)")

    ad = sub.add_parser("adapt", parents=[common], help="Decide the next MTU and apply it")
    ad.add_argument("--mtu", type=int, help="Current MTU (read from the interface if omitted)")
    ad.add_argument("--dry-run", action="store_true", help="Print the decision without applying it")

    return parser


def _cmd_optimize(tuner: MtuTuner, args: argparse.Namespace) -> int:
    best_mtu, report = tuner.run_optimization(
        args.interface, args.min_mtu, args.max_mtu, args.step, args.retries, args.jobs,
        apply_best=not args.no_apply, auto_tune=args.auto_tune,
    )
    if args.report:
        report.write(args.report)
    if args.graph:
        report.plot_scores(args.graph)
    print(report.render())
    logger.info(f"Recommended MTU for {report.interface}: {best_mtu}")
    return EXIT_OK


def _cmd_evaluate(tuner: MtuTuner, args: argparse.Namespace) -> int:
    handle = tuner.evaluate_continuously(
        args.interface, interval=args.interval, threshold=args.threshold, max_cycles=args.cycles
    )
    try:
        while not handle.join(timeout=1.0):
            pass
    except KeyboardInterrupt:
        handle.cancel()
        handle.join()
        raise
    return EXIT_OK if handle.last_error is None else EXIT_ERROR


def _cmd_analyze(tuner: MtuTuner, args: argparse.Namespace) -> int:
    interface = tuner.resolve_interface(args.interface)
    model = tuner.analyze(interface)
    print(json.dumps(model.to_dict(), indent=2))
    for line in recommendations(model):
        print(f"- {line}")
    return EXIT_OK


def _cmd_predict(tuner: MtuTuner, args: argparse.Namespace) -> int:
    interface = tuner.resolve_interface(args.interface)
    current = args.mtu if args.mtu is not None else tuner.control.get_mtu(interface)
    prediction = tuner.predict(interface, current)
    print(json.dumps(prediction.to_dict(), indent=2))
    return EXIT_OK


def _cmd_adapt(tuner: MtuTuner, args: argparse.Namespace) -> int:
    interface = tuner.resolve_interface(args.interface)
    current = args.mtu if args.mtu is not None else tuner.control.get_mtu(interface)
    new_mtu = tuner.adapt(interface, current)
    print(new_mtu)
    if new_mtu != current and not args.dry_run:
        if not tuner.apply_mtu(interface, new_mtu):
            logger.error(f"Failed to apply MTU {new_mtu} to {interface}")
            return EXIT_ERROR
        logger.info(f"Applied MTU {new_mtu} to {interface}")
    return EXIT_OK


COMMANDS = {
    "optimize": _cmd_optimize,
    "evaluate": _cmd_evaluate,
    "analyze": _cmd_analyze,
    "predict": _cmd_predict,
    "adapt": _cmd_adapt,
}


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    config = load_config(args.config).with_overrides(
        state_dir=args.state_dir,
        prometheus_port=args.prometheus_port,
        log_file=args.log_file,
        interface=args.interface,
        server=getattr(args, "server", None),
        verbose=args.verbose or None,
    )
    configure_logging(config.verbose, config.log_file)

    # SIGTERM unwinds like Ctrl-C so the original MTU is restored
    signal.signal(signal.SIGTERM, _raise_interrupt)

    tuner = None
    try:
        tuner = MtuTuner(config)
        if config.prometheus_port:
            start_metrics_server(config.prometheus_port)
        return COMMANDS[args.command](tuner, args)
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, cleaning up...")
        if tuner is not None:
            tuner.cancel_optimization()
        return EXIT_INTERRUPTED
    except MtuTunerError as e:
        logger.error(str(e))
        return EXIT_ERROR
    finally:
        if tuner is not None:
            tuner.close()


if __name__ == "__main__":
    sys.exit(main())
