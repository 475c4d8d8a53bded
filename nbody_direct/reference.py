"""
nbody_direct.reference
Blocked host reference evaluator (Numba, multi-core).

Sources are consumed in fixed chunks of ``src_block`` (outer tier); inside a
chunk every target of a sub-range of at most ``trg_block`` targets builds its
own local sum (inner tier), which is then folded into the target's total.
Target sub-ranges are independent and run in parallel with ``prange``; the
order in which one target's terms are summed depends only on the blocking
constants, never on thread scheduling.

Examples
--------
>>> from nbody_direct import make_random_particles, evaluate_reference
>>> p = make_random_particles(1000)
>>> vel = evaluate_reference(p)            # (1000, 3) float32
>>> vel_k = evaluate_reference(p, compensated=True)
"""
from __future__ import annotations

import logging

import numpy as np
from numba import get_num_threads, njit, prange, set_num_threads
from numpy.typing import NDArray

from .accumulate import kahan_add
from .config import CPU_SRC_BLK, CPU_TRG_BLK, DEFAULT_DT, NORMALIZATION
from .errors import CapacityError
from .kernels import gravity_factor, vortex_factor
from .particles import ParticleSet

logger = logging.getLogger(__name__)

# ============================================================================
# NUMBA BLOCK EVALUATORS
# ============================================================================
# No fastmath here: it would let LLVM drop the Kahan compensation.

@njit(cache=True)
def _block_3d(sx, sy, sz, ss, sr, nsrc, tu, tv, tw, t_lo, t_hi,
              src_block, compensated, norm):
    ntrg = t_hi - t_lo
    tot = np.zeros((3, ntrg), dtype=tu.dtype)
    totrem = np.zeros((3, ntrg), dtype=tu.dtype)
    loc = np.zeros((3, ntrg), dtype=tu.dtype)
    locrem = np.zeros((3, ntrg), dtype=tu.dtype)
    tr2 = np.empty(ntrg, dtype=tu.dtype)
    for k in range(ntrg):
        tr2[k] = sr[t_lo + k] * sr[t_lo + k]

    for lo in range(0, nsrc, src_block):
        hi = min(lo + src_block, nsrc)
        loc[:] = 0
        locrem[:] = 0
        for k in range(ntrg):
            xi = sx[t_lo + k]
            yi = sy[t_lo + k]
            zi = sz[t_lo + k]
            for j in range(lo, hi):
                dx = sx[j] - xi
                dy = sy[j] - yi
                dz = sz[j] - zi
                distsq = dx * dx + dy * dy + dz * dz + sr[j] * sr[j] + tr2[k]
                factor = gravity_factor(ss[j], distsq)
                if compensated:
                    loc[0, k], locrem[0, k] = kahan_add(loc[0, k], locrem[0, k], dx * factor)
                    loc[1, k], locrem[1, k] = kahan_add(loc[1, k], locrem[1, k], dy * factor)
                    loc[2, k], locrem[2, k] = kahan_add(loc[2, k], locrem[2, k], dz * factor)
                else:
                    loc[0, k] += dx * factor
                    loc[1, k] += dy * factor
                    loc[2, k] += dz * factor
        for k in range(ntrg):
            for c in range(3):
                if compensated:
                    tot[c, k], totrem[c, k] = kahan_add(tot[c, k], totrem[c, k],
                                                        loc[c, k] + locrem[c, k])
                else:
                    tot[c, k] += loc[c, k]

    for k in range(ntrg):
        tu[t_lo + k] = (tot[0, k] + totrem[0, k]) / norm
        tv[t_lo + k] = (tot[1, k] + totrem[1, k]) / norm
        tw[t_lo + k] = (tot[2, k] + totrem[2, k]) / norm


@njit(cache=True)
def _block_2d(sx, sy, ss, sr, nsrc, tu, tv, t_lo, t_hi,
              src_block, compensated, norm):
    ntrg = t_hi - t_lo
    tot = np.zeros((2, ntrg), dtype=tu.dtype)
    totrem = np.zeros((2, ntrg), dtype=tu.dtype)
    loc = np.zeros((2, ntrg), dtype=tu.dtype)
    locrem = np.zeros((2, ntrg), dtype=tu.dtype)
    tr2 = np.empty(ntrg, dtype=tu.dtype)
    for k in range(ntrg):
        tr2[k] = sr[t_lo + k] * sr[t_lo + k]

    for lo in range(0, nsrc, src_block):
        hi = min(lo + src_block, nsrc)
        loc[:] = 0
        locrem[:] = 0
        for k in range(ntrg):
            xi = sx[t_lo + k]
            yi = sy[t_lo + k]
            for j in range(lo, hi):
                dx = sx[j] - xi
                dy = sy[j] - yi
                distsq = dx * dx + dy * dy + sr[j] * sr[j] + tr2[k]
                factor = vortex_factor(ss[j], distsq)
                if compensated:
                    loc[0, k], locrem[0, k] = kahan_add(loc[0, k], locrem[0, k], dy * factor)
                    loc[1, k], locrem[1, k] = kahan_add(loc[1, k], locrem[1, k], -dx * factor)
                else:
                    loc[0, k] += dy * factor
                    loc[1, k] -= dx * factor
        for k in range(ntrg):
            for c in range(2):
                if compensated:
                    tot[c, k], totrem[c, k] = kahan_add(tot[c, k], totrem[c, k],
                                                        loc[c, k] + locrem[c, k])
                else:
                    tot[c, k] += loc[c, k]

    for k in range(ntrg):
        tu[t_lo + k] = (tot[0, k] + totrem[0, k]) / norm
        tv[t_lo + k] = (tot[1, k] + totrem[1, k]) / norm


@njit(parallel=True, cache=True)
def _reference_3d(sx, sy, sz, ss, sr, nsrc, tu, tv, tw, ntrg,
                  src_block, trg_block, compensated, norm):
    nblocks = (ntrg + trg_block - 1) // trg_block
    for b in prange(nblocks):
        t_lo = b * trg_block
        t_hi = min(t_lo + trg_block, ntrg)
        _block_3d(sx, sy, sz, ss, sr, nsrc, tu, tv, tw, t_lo, t_hi,
                  src_block, compensated, norm)


@njit(parallel=True, cache=True)
def _reference_2d(sx, sy, ss, sr, nsrc, tu, tv, ntrg,
                  src_block, trg_block, compensated, norm):
    nblocks = (ntrg + trg_block - 1) // trg_block
    for b in prange(nblocks):
        t_lo = b * trg_block
        t_hi = min(t_lo + trg_block, ntrg)
        _block_2d(sx, sy, ss, sr, nsrc, tu, tv, t_lo, t_hi,
                  src_block, compensated, norm)


# ============================================================================
# PUBLIC API
# ============================================================================

def _kernel_for(particles: ParticleSet, kernel: str | None) -> str:
    expected = 'gravity3d' if particles.dim == 3 else 'vortex2d'
    if kernel is None:
        return expected
    if kernel != expected:
        raise ValueError(f"kernel {kernel!r} does not match a {particles.dim}D particle set")
    return kernel


def evaluate_target_block(particles: ParticleSet, t_lo: int, t_hi: int,
                          kernel: str | None = None, compensated: bool = False,
                          src_block: int = CPU_SRC_BLK,
                          trg_block: int = CPU_TRG_BLK) -> None:
    """
    Evaluate targets ``[t_lo, t_hi)`` against every source, in place.

    Raises
    ------
    CapacityError
        If the sub-range is longer than ``trg_block``.
    """
    kernel = _kernel_for(particles, kernel)
    if t_hi - t_lo > trg_block:
        raise CapacityError(
            f"target sub-range of {t_hi - t_lo} exceeds capacity {trg_block}"
        )
    if not 0 <= t_lo <= t_hi <= particles.n_padded:
        raise ValueError(f"invalid target range [{t_lo}, {t_hi})")
    if src_block < 1:
        raise ValueError(f"src_block must be positive, got {src_block}")

    p = particles
    norm = p.dtype.type(NORMALIZATION[kernel])
    if kernel == 'gravity3d':
        _block_3d(p.x, p.y, p.z, p.strength, p.radius, p.n_padded,
                  p.u, p.v, p.w, t_lo, t_hi, src_block, compensated, norm)
    else:
        _block_2d(p.x, p.y, p.strength, p.radius, p.n_padded,
                  p.u, p.v, t_lo, t_hi, src_block, compensated, norm)


def evaluate_reference(particles: ParticleSet, kernel: str | None = None,
                       compensated: bool = False, src_block: int = CPU_SRC_BLK,
                       trg_block: int = CPU_TRG_BLK,
                       num_threads: int | None = None) -> NDArray:
    """
    All-pairs host evaluation of the true targets against all sources.

    Parameters
    ----------
    particles : ParticleSet
        Sources and targets (self-interaction). Padding entries, if any, act
        as sources only. Outputs ``u, v[, w]`` are overwritten.
    kernel : {'gravity3d', 'vortex2d'}, optional
        Defaults to the law matching the set's dimension.
    compensated : bool
        Kahan summation for the chunk-local sums and the chunk totals.
    src_block, trg_block : int
        Blocking tiers; they define the summation order.
    num_threads : int, optional
        Numba thread count for this call.

    Returns
    -------
    ndarray, shape (n_true, dim)
        Normalised velocity (vortex) or acceleration (gravity) per target.
    """
    kernel = _kernel_for(particles, kernel)
    if src_block < 1 or trg_block < 1:
        raise ValueError("src_block and trg_block must be positive")

    p = particles
    p.zero_outputs()
    norm = p.dtype.type(NORMALIZATION[kernel])

    previous = get_num_threads()
    if num_threads is not None:
        set_num_threads(num_threads)
    try:
        if kernel == 'gravity3d':
            _reference_3d(p.x, p.y, p.z, p.strength, p.radius, p.n_padded,
                          p.u, p.v, p.w, p.n_true,
                          src_block, trg_block, compensated, norm)
        else:
            _reference_2d(p.x, p.y, p.strength, p.radius, p.n_padded,
                          p.u, p.v, p.n_true,
                          src_block, trg_block, compensated, norm)
    finally:
        set_num_threads(previous)

    logger.debug("host pass: %d targets x %d sources (%s%s)", p.n_true,
                 p.n_padded, kernel, ', kahan' if compensated else '')
    return p.velocities


def run_reference_timestepping(particles: ParticleSet, n_steps: int,
                               dt: float = DEFAULT_DT, kernel: str | None = None,
                               compensated: bool = False, **kwargs):
    """
    Explicit Euler time stepping on the host.

    Each step re-zeroes and recomputes the velocities, then moves the true
    particles by ``dt * velocity``. Positions are updated in place.

    Returns
    -------
    positions, velocities : ndarray, shape (n_true, dim)
        State after the last step; velocities are those of the last step.
    """
    if n_steps < 1:
        raise ValueError(f"n_steps must be positive, got {n_steps}")
    p = particles
    n = p.n_true
    dt_t = p.dtype.type(dt)
    for _ in range(n_steps):
        evaluate_reference(p, kernel=kernel, compensated=compensated, **kwargs)
        for pos, vel in zip(p.position_arrays, p.velocity_arrays):
            pos[:n] += dt_t * vel[:n]
    return p.positions, p.velocities


__all__ = [
    'evaluate_target_block',
    'evaluate_reference',
    'run_reference_timestepping',
]
