"""
nbody_direct.cli
Command line driver: one device pass (or a time-stepping run), optionally
checked against the host reference.

Usage::

    nbody-direct [-n=<num parts>] [-g=<num gpus>] [-s=<num steps>] [-c]
                 [--kernel gravity3d|vortex2d] [--precision P] [--kahan]
                 [--backend auto|cupy|emulated] [--dt DT] [-v]
"""
from __future__ import annotations

import argparse
import logging
import sys
import time

from .config import DEFAULT_DT, KERNEL_MAP, MAX_DEVICES, _PRECISION_MAP, resolve_precision
from .device import CUPY_AVAILABLE
from .errors import UsageError
from .orchestrator import MultiDeviceEvaluator
from .parity import compare_outputs
from .particles import make_random_particles
from .reference import evaluate_reference, run_reference_timestepping

logger = logging.getLogger("nbody_direct")

USAGE = "Usage: nbody-direct [-n=<num parts>] [-g=<num gpus>] [-s=<num steps>] [-c]"


class _Parser(argparse.ArgumentParser):
    """Argument errors exit with status 1, after printing the usage line."""

    def error(self, message):
        print(USAGE, file=sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        sys.exit(1)


def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid positive integer: {text!r}") from None
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be >= 1, got {value}")
    return value


def _device_count(text: str) -> int:
    value = _positive_int(text)
    if value > MAX_DEVICES:
        raise argparse.ArgumentTypeError(f"must be in 1..{MAX_DEVICES}, got {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="nbody-direct", usage=USAGE[len("Usage: "):],
                     description="Direct all-pairs gravity/vortex summation on "
                                 "multiple devices with an optional host check.")
    parser.add_argument('-n', dest='npart', type=_positive_int, default=400_000,
                        help='number of particles (default 400000)')
    parser.add_argument('-g', dest='ngpus', type=_device_count, default=None,
                        help=f'force the device count, 1..{MAX_DEVICES}')
    parser.add_argument('-s', dest='nsteps', type=_positive_int, default=None,
                        help='number of time steps (enables time stepping)')
    parser.add_argument('-c', dest='compare', action='store_true',
                        help='run the host reference and report the error')
    parser.add_argument('--kernel', choices=sorted(KERNEL_MAP), default='gravity3d')
    parser.add_argument('--precision', choices=sorted(_PRECISION_MAP), default='float32')
    parser.add_argument('--kahan', action='store_true', help='compensated summation')
    parser.add_argument('--backend', choices=('auto', 'cupy', 'emulated'), default='auto')
    parser.add_argument('--dt', type=float, default=DEFAULT_DT, help='time step size')
    parser.add_argument('-v', '--verbose', action='store_true')
    return parser


def parse_args(argv=None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def validate_args(args: argparse.Namespace) -> None:
    """Pre-flight checks that argparse cannot express."""
    if not args.dt > 0:
        raise UsageError(f"--dt must be positive, got {args.dt}")
    if args.backend == 'cupy' and not CUPY_AVAILABLE:
        raise UsageError("--backend cupy requested but CuPy is not installed")


def _setup_logging(verbose: bool) -> None:
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO if verbose else logging.WARNING)


def _results_line(vel) -> str:
    values = " ".join(f"{v:10.8f}" for v in list(vel[0]) + list(vel[-1]))
    return f"    results ( {values} )"


def _gflops(npart: int, dim: int, nsteps: int, seconds: float) -> float:
    per_pair = 20 if dim == 3 else 19
    return nsteps * 1.e-9 * npart * (7 + per_pair * float(npart)) / max(seconds, 1e-12)


def run(args: argparse.Namespace) -> int:
    """Execute one CLI run; returns the exit status."""
    dim = KERNEL_MAP[args.kernel]
    precision, compensated = resolve_precision(args.precision, args.kahan)
    nsteps = args.nsteps or 1
    label = "3D gravitational" if dim == 3 else "2D vortex"
    if args.nsteps:
        print(f"performing {label} summation on {args.npart} points for {nsteps} steps")
    else:
        print(f"performing {label} summation on {args.npart} points")

    evaluator = MultiDeviceEvaluator(kernel=args.kernel, precision=precision,
                                     compensated=compensated, backend=args.backend,
                                     n_devices=args.ngpus)
    n_devices = evaluator.discover()
    layout = evaluator.partition(args.npart, n_devices)
    print(f"  ngpus ( {evaluator.n_physical} )  and nstreams ( {n_devices} )")
    print(f"  ntargperstrm ( {layout.slice_size} )  and ntargpad ( {layout.n_trg_pad} )")
    print(f"  nsrcperblock ( {layout.n_src_pad // evaluator.config.n_src_blocks} )"
          f"  and nsrcpad ( {layout.n_src_pad} )")

    dtype = evaluator.config.dtype
    host_vel = None
    if args.compare:
        hp = make_random_particles(args.npart, dim=dim, dtype=dtype)
        t0 = time.perf_counter()
        if args.nsteps:
            _, host_vel = run_reference_timestepping(hp, nsteps, args.dt,
                                                     compensated=compensated)
        else:
            host_vel = evaluate_reference(hp, compensated=compensated)
        elapsed = time.perf_counter() - t0
        print(f"  host compute time( {elapsed:g} s ) and flops"
              f"( {_gflops(args.npart, dim, nsteps, elapsed):g} GFlop/s )")
        print(_results_line(host_vel))

    dp = make_random_particles(args.npart, dim=dim, dtype=dtype)
    t0 = time.perf_counter()
    if args.nsteps:
        _, dev_vel = evaluator.run_timestepping(dp, nsteps, args.dt)
    else:
        dev_vel = evaluator.evaluate(dp)
    elapsed = time.perf_counter() - t0
    print(f"  device alloc time( {evaluator.timings.get('setup', 0.0):g} s )")
    print(f"  device comm+comp time( {elapsed:g} s ) and flops"
          f"( {_gflops(args.npart, dim, nsteps, elapsed):g} GFlop/s )")
    print(_results_line(dev_vel))

    if host_vel is not None:
        print(compare_outputs(host_vel, dev_vel))
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    _setup_logging(args.verbose)
    try:
        validate_args(args)
        return run(args)
    except UsageError as err:
        print(USAGE, file=sys.stderr)
        print(f"nbody-direct: error: {err}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
