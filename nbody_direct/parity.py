"""
nbody_direct.parity
Host/device output comparison.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .particles import ParticleSet


@dataclass(frozen=True)
class ParityReport:
    """RMS and maximum pointwise error between two output sets."""
    rms: float
    max_error: float
    n: int

    def __str__(self) -> str:
        return f"  total host-device error ( {self.rms:g} ) max error ( {self.max_error:g} )"


def _as_array(outputs) -> np.ndarray:
    if isinstance(outputs, ParticleSet):
        return outputs.velocities
    if isinstance(outputs, (tuple, list)):
        return np.stack([np.asarray(c) for c in outputs], axis=1)
    arr = np.asarray(outputs)
    return arr[:, None] if arr.ndim == 1 else arr


def compare_outputs(reference, candidate) -> ParityReport:
    """
    Compare two equal-length output sets.

    Parameters
    ----------
    reference, candidate : ParticleSet, (n, dim) array or sequence of components
        Typically the host and the device results. Neither is modified.

    Returns
    -------
    ParityReport
        ``rms = sqrt(sum_i err_i / n)`` and ``max_error = max_i sqrt(err_i)``
        where ``err_i`` is the squared difference summed over components.
    """
    a = _as_array(reference).astype(np.float64)
    b = _as_array(candidate).astype(np.float64)
    if a.shape != b.shape:
        raise ValueError(f"output shapes differ: {a.shape} vs {b.shape}")
    if a.shape[0] == 0:
        raise ValueError("nothing to compare")
    err = np.sum((a - b) ** 2, axis=1)
    return ParityReport(rms=float(np.sqrt(err.sum() / a.shape[0])),
                        max_error=float(np.sqrt(err.max())),
                        n=a.shape[0])


__all__ = ['ParityReport', 'compare_outputs']
