"""Compensated summation: accuracy and independence from blocking."""
from __future__ import annotations

import math

import numpy as np
import pytest

from nbody_direct import CompensatedAccumulator
from nbody_direct.accumulate import blocked_sum


@pytest.fixture(scope="module")
def values32():
    rng = np.random.default_rng(42)
    # mixed magnitudes make the naive rounding pattern block-size dependent
    return (rng.random(200_000) * 10.0 ** rng.integers(-3, 2, 200_000)).astype(np.float32)


def _exact(values) -> float:
    return math.fsum(values.astype(np.float64))


def test_accumulator_keeps_dtype():
    acc = CompensatedAccumulator(np.float32)
    acc.add(1.0)
    acc.add(np.float64(2.0))
    assert isinstance(acc.value, np.float32)
    assert acc.value == np.float32(3.0)


def test_accumulator_beats_naive_float32():
    values = np.full(20_000, 0.1, dtype=np.float32)
    exact = _exact(values)

    naive = np.float32(0.0)
    for x in values:
        naive = naive + x
    acc = CompensatedAccumulator(np.float32)
    acc.extend(values)

    err_naive = abs(float(naive) - exact)
    err_kahan = abs(float(acc.value) - exact)
    assert err_kahan <= 2 * np.spacing(np.float32(exact))
    assert err_naive > 10 * err_kahan


def test_accumulator_reset():
    acc = CompensatedAccumulator()
    acc.extend([1.0, 2.0, 3.0])
    acc.reset()
    assert acc.value == 0.0


@pytest.mark.parametrize("compensated", [False, True])
def test_blocked_sum_matches_exact_in_double(compensated):
    rng = np.random.default_rng(42)
    values = rng.random(5000)
    assert blocked_sum(values, 64, compensated) == pytest.approx(_exact(values), rel=1e-13)


def test_blocked_sum_handles_ragged_last_block():
    values = np.arange(10, dtype=np.float64)
    assert blocked_sum(values, 3, False) == 45.0
    assert blocked_sum(values, 3, True) == 45.0


def test_compensated_sum_is_order_invariant(values32):
    """Re-blocking changes the Kahan result far less than the naive one."""
    blocks = [1, 7, 64, 256, 4096, values32.shape[0]]
    exact = _exact(values32)

    kahan = np.array([blocked_sum(values32, b, True) for b in blocks], dtype=np.float64)
    naive = np.array([blocked_sum(values32, b, False) for b in blocks], dtype=np.float64)

    kahan_spread = (kahan.max() - kahan.min()) / abs(exact)
    naive_spread = (naive.max() - naive.min()) / abs(exact)

    assert kahan_spread < 1e-6
    assert naive_spread > kahan_spread
    assert np.max(np.abs(kahan - exact)) < np.max(np.abs(naive - exact))
