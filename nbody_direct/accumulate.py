"""
nbody_direct.accumulate
Compensated (Kahan) summation.

State is a pair ``(sum, rem)``; ``rem`` carries the low-order bits lost by
the last addition and is subtracted from the next term. The final value is
``sum + rem``.

None of the numba functions here use ``fastmath``: reassociation would fold
``(t - sum) - y`` to zero and silently turn the accumulator into a naive sum.
"""
from __future__ import annotations

import numpy as np
from numba import njit


@njit(inline='always')
def kahan_add(total, rem, x):
    """One compensated addition; returns the new ``(total, rem)``."""
    y = x - rem
    t = total + y
    rem = (t - total) - y
    return t, rem


@njit(cache=True)
def blocked_sum(values, block, compensated):
    """
    Sum ``values`` chunk by chunk, in the array's own precision.

    Each chunk of ``block`` values is reduced to a partial, then the partials
    are combined in order. With ``compensated`` both levels use Kahan
    summation, so the result barely depends on ``block``; without it the
    rounding pattern (and the result) changes with the chunking.
    """
    n = values.shape[0]
    acc = np.zeros(4, dtype=values.dtype)  # total, total_rem, part, part_rem
    for lo in range(0, n, block):
        hi = min(lo + block, n)
        acc[2] = 0
        acc[3] = 0
        for j in range(lo, hi):
            if compensated:
                acc[2], acc[3] = kahan_add(acc[2], acc[3], values[j])
            else:
                acc[2] += values[j]
        if compensated:
            acc[0], acc[1] = kahan_add(acc[0], acc[1], acc[2] + acc[3])
        else:
            acc[0] += acc[2]
    return acc[0] + acc[1]


class CompensatedAccumulator:
    """
    Scalar Kahan accumulator with dtype-preserving arithmetic.

    >>> acc = CompensatedAccumulator(np.float32)
    >>> for _ in range(10):
    ...     acc.add(0.1)
    >>> float(acc.value)  # doctest: +ELLIPSIS
    1.0...
    """

    def __init__(self, dtype=np.float64):
        self.dtype = np.dtype(dtype).type
        self.reset()

    def reset(self) -> None:
        self.sum = self.dtype(0)
        self.rem = self.dtype(0)

    def add(self, x) -> None:
        y = self.dtype(x) - self.rem
        t = self.sum + y
        self.rem = (t - self.sum) - y
        self.sum = t

    def extend(self, values) -> None:
        for x in np.asarray(values, dtype=self.dtype):
            self.add(x)

    @property
    def value(self):
        return self.sum + self.rem


__all__ = ['kahan_add', 'blocked_sum', 'CompensatedAccumulator']
