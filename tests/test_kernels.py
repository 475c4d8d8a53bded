"""Tests for the pairwise interaction law: symmetry, softening, finiteness."""
from __future__ import annotations

import numpy as np
import pytest

from nbody_direct import ParticleSet, evaluate_reference, pair_velocity


# ---------------------------------------------------------------------------
# Vortex symmetry
# ---------------------------------------------------------------------------
def test_vortex_swap_and_negate_equal_strength():
    """Source a on target b is the negative of source b on target a."""
    a = np.array([0.3, -0.2])
    b = np.array([1.1, 0.4])
    u_ab = pair_velocity(a, 1.5, 0.1, b, 0.2, kernel='vortex2d')
    u_ba = pair_velocity(b, 1.5, 0.2, a, 0.1, kernel='vortex2d')
    np.testing.assert_allclose(u_ab, -u_ba, rtol=1e-14, atol=0)


def test_vortex_swap_opposite_strength():
    a = np.array([0.0, 0.0])
    b = np.array([0.5, -0.7])
    u_ab = pair_velocity(a, 2.0, 0.05, b, 0.05, kernel='vortex2d')
    u_ba = pair_velocity(b, -2.0, 0.05, a, 0.05, kernel='vortex2d')
    np.testing.assert_allclose(u_ab, u_ba, rtol=1e-14, atol=0)


def test_vortex_velocity_is_perpendicular_to_separation():
    s = np.array([0.2, 0.9])
    t = np.array([-0.4, 0.1])
    u = pair_velocity(s, 1.0, 0.1, t, 0.1, kernel='vortex2d')
    assert abs(np.dot(u, s - t)) < 1e-14


def test_vortex_pair_in_evaluator_is_antisymmetric():
    p = ParticleSet.from_arrays([[0.1, 0.2], [0.7, -0.3]], [1.0, 1.0], 0.05,
                                dtype=np.float64)
    vel = evaluate_reference(p)
    np.testing.assert_array_equal(vel[0], -vel[1])
    assert np.all(vel[0] != 0)


def test_gravity_points_towards_source():
    u = pair_velocity([1.0, 2.0, 3.0], 1.0, 0.0, [0.0, 0.0, 0.0], 0.0)
    d = np.array([1.0, 2.0, 3.0])
    r = np.linalg.norm(d)
    np.testing.assert_allclose(u, d / r**3 / (4 * np.pi), rtol=1e-14)


# ---------------------------------------------------------------------------
# Softening
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("kernel,dim", [('gravity3d', 3), ('vortex2d', 2)])
def test_softening_monotonic(kernel, dim):
    source = np.zeros(dim)
    target = np.full(dim, 0.3)
    radii = [0.0, 0.01, 0.05, 0.1, 0.5, 1.0]

    mags_source = [np.linalg.norm(pair_velocity(source, 1.0, r, target, 0.02, kernel=kernel))
                   for r in radii]
    mags_target = [np.linalg.norm(pair_velocity(source, 1.0, 0.02, target, r, kernel=kernel))
                   for r in radii]
    assert np.all(np.diff(mags_source) < 0)
    assert np.all(np.diff(mags_target) < 0)


@pytest.mark.parametrize("kernel,dim", [('gravity3d', 3), ('vortex2d', 2)])
def test_coincident_particles_stay_finite(kernel, dim):
    pos = np.full(dim, 0.25)
    u = pair_velocity(pos, 1.0, 0.1, pos, 0.0, kernel=kernel)
    assert np.all(np.isfinite(u))
    np.testing.assert_array_equal(u, 0.0)

    u_near = pair_velocity(pos + 1e-9, 1.0, 0.1, pos, 0.0, kernel=kernel)
    assert np.all(np.isfinite(u_near))


def test_self_interaction_contributes_nothing():
    p = ParticleSet.from_arrays([[0.5, 0.5, 0.5]], [3.0], 0.1, dtype=np.float64)
    vel = evaluate_reference(p)
    np.testing.assert_array_equal(vel, 0.0)


def test_pair_velocity_broadcasts_over_sources():
    rng = np.random.default_rng(42)
    src = rng.random((10, 3))
    strength = rng.random(10)
    total = pair_velocity(src, strength, 0.1, np.zeros(3), 0.1).sum(axis=0)
    single = sum(pair_velocity(src[j], strength[j], 0.1, np.zeros(3), 0.1)
                 for j in range(10))
    np.testing.assert_allclose(total, single, rtol=1e-13)


def test_pair_velocity_rejects_wrong_dimension():
    with pytest.raises(ValueError):
        pair_velocity([0.0, 0.0], 1.0, 0.1, [1.0, 1.0], 0.1, kernel='gravity3d')
    with pytest.raises(ValueError):
        pair_velocity([0.0, 0.0], 1.0, 0.1, [1.0, 1.0], 0.1, kernel='coulomb')
