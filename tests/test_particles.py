"""ParticleSet construction, padding and the random generator."""
from __future__ import annotations

import numpy as np
import pytest

from nbody_direct import ParticleSet, buffer, make_random_particles


@pytest.mark.parametrize("n,align,expected", [
    (1, 32, 32), (32, 32, 32), (33, 32, 64), (1000, 256, 1024), (16384, 16384, 16384),
])
def test_buffer(n, align, expected):
    assert buffer(n, align) == expected


def test_buffer_rejects_bad_alignment():
    with pytest.raises(ValueError):
        buffer(10, 0)


def test_padding_is_neutral_and_regular():
    p = make_random_particles(100)
    q = p.padded(256)
    assert q.n_padded == 256 and q.n_true == 100
    np.testing.assert_array_equal(q.x[:100], p.x)
    np.testing.assert_array_equal(q.strength[100:], 0.0)
    np.testing.assert_array_equal(q.x[100:], 0.0)
    assert np.all(q.radius[100:] > 0)
    assert q.radius[100] == p.radius.max()


def test_padding_an_already_padded_set_uses_true_particles():
    q = make_random_particles(10).padded(64)
    r = q.padded(32)
    assert r.n_padded == 32
    np.testing.assert_array_equal(r.strength[10:], 0.0)


def test_padded_rejects_shrinking():
    with pytest.raises(ValueError):
        make_random_particles(100).padded(50)


def test_generator_is_deterministic_and_in_range():
    a = make_random_particles(500, seed=1234)
    b = make_random_particles(500, seed=1234)
    np.testing.assert_array_equal(a.positions, b.positions)
    assert a.dtype == np.float32
    assert np.all((a.positions >= 0) & (a.positions < 1))
    assert np.all(a.strength >= 0)
    np.testing.assert_allclose(a.radius, (2.0 / 3.0) / np.sqrt(500), rtol=1e-6)


def test_vortex_generator_has_signed_strengths():
    p = make_random_particles(2000, dim=2)
    assert p.dim == 2 and p.z is None and p.w is None
    assert p.strength.min() < 0 < p.strength.max()
    assert np.all(np.abs(p.strength) <= 1 / np.sqrt(2000) + 1e-7)


def test_from_arrays_validation():
    with pytest.raises(ValueError):
        ParticleSet.from_arrays(np.zeros((4, 4)), np.ones(4), 0.1)
    with pytest.raises(ValueError):
        ParticleSet.from_arrays(np.zeros((4, 3)), np.ones(3), 0.1)
    with pytest.raises(ValueError):
        ParticleSet.from_arrays(np.zeros((4, 3)), np.ones(4), -0.1)
    with pytest.raises(ValueError):
        ParticleSet.from_arrays(np.full((4, 3), np.nan), np.ones(4), 0.1)


def test_set_positions_and_views():
    p = make_random_particles(8, dtype=np.float64)
    new = np.arange(24, dtype=np.float64).reshape(8, 3)
    p.set_positions(new)
    np.testing.assert_array_equal(p.positions, new)
    assert p.velocities.shape == (8, 3)
    with pytest.raises(ValueError):
        p.set_positions(new[:, :2])
