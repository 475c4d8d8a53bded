"""
nbody_direct.config
===================
Blocking constants, precision/kernel maps and the evaluator configuration.

The host constants fix the two-tier blocking of the reference evaluator, the
device constants fix the launch geometry of the tiled evaluator.  Both are
part of the summation order and therefore of the numerical result.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal

import numpy as np

# ============================================================================
# BLOCKING AND DEVICE CONSTANTS
# ============================================================================

CPU_SRC_BLK = 256           # host source chunk (outer tier)
CPU_TRG_BLK = 32            # host target sub-range capacity (inner tier)

THREADS_PER_BLOCK = 256     # thread-group width, 3D gravity
VORTEX_THREADS_PER_BLOCK = 512  # thread-group width, 2D vortex (Kahan build)
NSRCBLOCKS_3D = 64          # source chunks per launch row (grid y), 3D
NSRCBLOCKS_2D = 32          # source chunks per launch row (grid y), 2D

MAX_DEVICES = 8
DEFAULT_DT = 0.01
DEFAULT_SEED = 1234

EXIT_FAILURE = 1

# ============================================================================
# KERNEL AND PRECISION MAPS
# ============================================================================

KERNEL_TYPES = Literal['gravity3d', 'vortex2d']
PRECISION_TYPES = Literal['float32', 'float64', 'float32_kahan', 'float64_kahan']

# kernel name -> spatial dimension
KERNEL_MAP = {
    'gravity3d': 3,
    'vortex2d': 2,
}

# kernel name -> geometric normalisation constant
NORMALIZATION = {
    'gravity3d': 4.0 * np.pi,
    'vortex2d': 2.0 * np.pi,
}

# precision string -> (storage dtype, compensated)
_PRECISION_MAP = {
    'float64': (np.float64, False),
    'float32': (np.float32, False),
    'float32_kahan': (np.float32, True),  # Same storage as float32!
    'float64_kahan': (np.float64, True),
}

# per-kernel device defaults: (threads per block, source chunks per row)
_DEVICE_DEFAULTS = {
    'gravity3d': (THREADS_PER_BLOCK, NSRCBLOCKS_3D),
    'vortex2d': (VORTEX_THREADS_PER_BLOCK, NSRCBLOCKS_2D),
}


def resolve_precision(precision: str, compensated: bool = False) -> tuple[str, bool]:
    """
    Normalise a precision string and compensation flag.

    The legacy ``'<dtype>_kahan'`` strings switch compensation on, so
    ``('float32_kahan', False)`` resolves to ``('float32', True)``.
    """
    if precision not in _PRECISION_MAP:
        raise ValueError(
            f"precision must be one of {sorted(_PRECISION_MAP)}, got {precision!r}"
        )
    _, kahan = _PRECISION_MAP[precision]
    base = precision.replace('_kahan', '')
    return base, bool(compensated or kahan)


def kernel_dim(kernel: str) -> int:
    if kernel not in KERNEL_MAP:
        raise ValueError(f"kernel must be one of {list(KERNEL_MAP)}, got {kernel!r}")
    return KERNEL_MAP[kernel]


# ============================================================================
# EVALUATOR CONFIGURATION
# ============================================================================

@dataclass(frozen=True)
class EvaluatorConfig:
    """
    Settings shared by the host and device evaluators.

    Parameters
    ----------
    kernel : {'gravity3d', 'vortex2d'}
        Interaction law.
    precision : {'float32', 'float64', 'float32_kahan', 'float64_kahan'}
        Storage and arithmetic precision. The ``_kahan`` forms imply
        ``compensated=True`` and are normalised away in ``__post_init__``.
    compensated : bool
        Use Kahan summation for the per-target accumulators.
    threads_per_block : int
        Device thread-group width (also the shared tile length).
    n_src_blocks : int
        Number of independent source chunks per launch row (grid y).
    src_block, trg_block : int
        Host blocking tiers.
    max_devices : int
        Clamp for the number of devices/streams.
    """
    kernel: KERNEL_TYPES = 'gravity3d'
    precision: PRECISION_TYPES = 'float32'
    compensated: bool = False
    threads_per_block: int = THREADS_PER_BLOCK
    n_src_blocks: int = NSRCBLOCKS_3D
    src_block: int = CPU_SRC_BLK
    trg_block: int = CPU_TRG_BLK
    max_devices: int = MAX_DEVICES
    dtype: type = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        kernel_dim(self.kernel)
        precision, compensated = resolve_precision(self.precision, self.compensated)
        object.__setattr__(self, 'precision', precision)
        object.__setattr__(self, 'compensated', compensated)
        object.__setattr__(self, 'dtype', _PRECISION_MAP[precision][0])

        for name in ('threads_per_block', 'n_src_blocks', 'src_block',
                     'trg_block', 'max_devices'):
            value = getattr(self, name)
            if not isinstance(value, (int, np.integer)) or value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")
        if self.max_devices > MAX_DEVICES:
            raise ValueError(
                f"max_devices must be <= {MAX_DEVICES}, got {self.max_devices}"
            )

    @classmethod
    def for_kernel(cls, kernel: str = 'gravity3d', **overrides) -> 'EvaluatorConfig':
        """Config with the device geometry the kernel is tuned for."""
        kernel_dim(kernel)
        tpb, nsrc = _DEVICE_DEFAULTS[kernel]
        overrides.setdefault('threads_per_block', tpb)
        overrides.setdefault('n_src_blocks', nsrc)
        return cls(kernel=kernel, **overrides)

    @property
    def dim(self) -> int:
        return KERNEL_MAP[self.kernel]

    @property
    def norm(self) -> float:
        return NORMALIZATION[self.kernel]

    def with_options(self, **changes) -> 'EvaluatorConfig':
        return replace(self, **changes)


__all__ = [
    'CPU_SRC_BLK',
    'CPU_TRG_BLK',
    'THREADS_PER_BLOCK',
    'VORTEX_THREADS_PER_BLOCK',
    'NSRCBLOCKS_3D',
    'NSRCBLOCKS_2D',
    'MAX_DEVICES',
    'DEFAULT_DT',
    'DEFAULT_SEED',
    'EXIT_FAILURE',
    'KERNEL_MAP',
    'NORMALIZATION',
    'EvaluatorConfig',
    'resolve_precision',
    'kernel_dim',
]
