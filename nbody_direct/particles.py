"""
nbody_direct.particles
Structure-of-arrays particle buffers, padding and the random generator.

A ``ParticleSet`` holds one array per scalar quantity (x, y, [z], strength,
radius, u, v, [w]). Every array has the padded length; entries past
``n_true`` are padding with zero strength.
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from numpy.typing import ArrayLike, NDArray

from .config import DEFAULT_SEED


def buffer(n: int, align: int) -> int:
    """Smallest multiple of ``align`` that is >= ``n``."""
    if align < 1:
        raise ValueError(f"align must be positive, got {align}")
    return align * ((n + align - 1) // align)


@dataclass
class ParticleSet:
    """
    Particle positions, strengths, softening radii and output velocities.

    ``z`` and ``w`` are ``None`` for 2D (vortex) sets.
    """
    x: NDArray
    y: NDArray
    z: NDArray | None
    strength: NDArray
    radius: NDArray
    u: NDArray
    v: NDArray
    w: NDArray | None
    n_true: int

    def __post_init__(self):
        arrays = [a for a in (self.x, self.y, self.z, self.strength, self.radius,
                              self.u, self.v, self.w) if a is not None]
        n = arrays[0].shape[0]
        dtype = arrays[0].dtype
        for a in arrays:
            if a.ndim != 1 or a.shape[0] != n:
                raise ValueError("all particle arrays must be 1-D with the same length")
            if a.dtype != dtype:
                raise TypeError(f"mixed dtypes in particle set: {a.dtype} vs {dtype}")
        if (self.z is None) != (self.w is None):
            raise ValueError("z and w must both be set (3D) or both be None (2D)")
        if not 0 < self.n_true <= n:
            raise ValueError(f"n_true must be in [1, {n}], got {self.n_true}")

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------
    @classmethod
    def from_arrays(cls, positions: ArrayLike, strength: ArrayLike,
                    radius: ArrayLike | float, dtype=np.float32) -> 'ParticleSet':
        """
        Build a set from an (N, 2) or (N, 3) position array.

        Parameters
        ----------
        positions : array_like, shape (N, 2) or (N, 3)
        strength : array_like, shape (N,)
            Mass (3D) or circulation (2D); may be signed.
        radius : array_like, shape (N,) or float
            Softening radius, non-negative.
        dtype : numpy dtype
            Storage precision.
        """
        pos = np.asarray(positions, dtype=dtype)
        if pos.ndim != 2 or pos.shape[1] not in (2, 3):
            raise ValueError(f"positions must have shape (N, 2) or (N, 3), got {pos.shape}")
        n = pos.shape[0]
        if n < 1:
            raise ValueError("need at least one particle")

        s = np.asarray(strength, dtype=dtype)
        if s.shape != (n,):
            raise ValueError(f"strength must have shape ({n},), got {s.shape}")
        r = np.asarray(radius, dtype=dtype)
        if r.ndim == 0:
            r = np.full(n, r, dtype=dtype)
        if r.shape != (n,):
            raise ValueError(f"radius must have shape ({n},), got {r.shape}")
        if np.any(r < 0):
            raise ValueError("softening radii must be non-negative")
        if not (np.all(np.isfinite(pos)) and np.all(np.isfinite(s)) and np.all(np.isfinite(r))):
            raise ValueError("particle data contains NaN or infinite values")

        three_d = pos.shape[1] == 3
        return cls(
            x=np.ascontiguousarray(pos[:, 0]),
            y=np.ascontiguousarray(pos[:, 1]),
            z=np.ascontiguousarray(pos[:, 2]) if three_d else None,
            strength=s.copy(),
            radius=r.copy(),
            u=np.zeros(n, dtype=dtype),
            v=np.zeros(n, dtype=dtype),
            w=np.zeros(n, dtype=dtype) if three_d else None,
            n_true=n,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def dim(self) -> int:
        return 2 if self.z is None else 3

    @property
    def dtype(self):
        return self.x.dtype

    @property
    def n_padded(self) -> int:
        return self.x.shape[0]

    @property
    def position_arrays(self) -> tuple[NDArray, ...]:
        return (self.x, self.y) if self.z is None else (self.x, self.y, self.z)

    @property
    def velocity_arrays(self) -> tuple[NDArray, ...]:
        return (self.u, self.v) if self.w is None else (self.u, self.v, self.w)

    @property
    def positions(self) -> NDArray:
        """(n_true, dim) copy of the true particles' positions."""
        return np.stack([a[:self.n_true] for a in self.position_arrays], axis=1)

    @property
    def velocities(self) -> NDArray:
        """(n_true, dim) copy of the true particles' outputs."""
        return np.stack([a[:self.n_true] for a in self.velocity_arrays], axis=1)

    # ------------------------------------------------------------------
    # Buffer management
    # ------------------------------------------------------------------
    def zero_outputs(self) -> None:
        for a in self.velocity_arrays:
            a.fill(0)

    def copy(self) -> 'ParticleSet':
        def _c(a):
            return None if a is None else a.copy()
        return ParticleSet(_c(self.x), _c(self.y), _c(self.z), _c(self.strength),
                           _c(self.radius), _c(self.u), _c(self.v), _c(self.w),
                           self.n_true)

    def padded(self, n_padded: int) -> 'ParticleSet':
        """
        Copy of the true particles extended to ``n_padded`` entries.

        Padding particles sit at the origin with zero strength, so they add
        nothing to any sum. Their radius is the largest valid radius, which
        keeps ``distsq`` positive when a padding target coincides with a
        padding source.
        """
        n = self.n_true
        if n_padded < n:
            raise ValueError(f"cannot pad {n} particles into {n_padded} slots")
        pad_radius = self.radius[:n].max()

        def _extend(a, fill):
            if a is None:
                return None
            out = np.full(n_padded, fill, dtype=a.dtype)
            out[:n] = a[:n]
            return out

        return ParticleSet(
            x=_extend(self.x, 0),
            y=_extend(self.y, 0),
            z=_extend(self.z, 0),
            strength=_extend(self.strength, 0),
            radius=_extend(self.radius, pad_radius),
            u=np.zeros(n_padded, dtype=self.dtype),
            v=np.zeros(n_padded, dtype=self.dtype),
            w=None if self.w is None else np.zeros(n_padded, dtype=self.dtype),
            n_true=self.n_true,
        )

    def set_positions(self, positions: ArrayLike) -> None:
        """Overwrite the true particles' coordinates from an (n_true, dim) array."""
        pos = np.asarray(positions, dtype=self.dtype)
        if pos.shape != (self.n_true, self.dim):
            raise ValueError(
                f"positions must have shape ({self.n_true}, {self.dim}), got {pos.shape}"
            )
        for k, a in enumerate(self.position_arrays):
            a[:self.n_true] = pos[:, k]


def make_random_particles(n: int, dim: int = 3, dtype=np.float32,
                          seed: int = DEFAULT_SEED, signed: bool | None = None) -> ParticleSet:
    """
    Random particles in the unit square/cube.

    Strengths are ``U(0,1)/sqrt(n)`` (3D) or ``(2 U(0,1) - 1)/sqrt(n)`` for
    signed vortex circulation; every radius is ``(2/3)/sqrt(n)``.

    Parameters
    ----------
    n : int
        Number of particles.
    dim : {2, 3}
    dtype : numpy dtype
    seed : int
        Seed of the Mersenne-Twister generator.
    signed : bool, optional
        Signed strengths. Defaults to True for 2D and False for 3D.
    """
    if n < 1:
        raise ValueError(f"n must be positive, got {n}")
    if dim not in (2, 3):
        raise ValueError(f"dim must be 2 or 3, got {dim}")
    if signed is None:
        signed = dim == 2

    rng = np.random.Generator(np.random.MT19937(seed))
    pos = rng.random((n, dim))
    strmag = 1.0 / np.sqrt(n)
    draw = rng.random(n)
    strength = strmag * (2.0 * draw - 1.0) if signed else strmag * draw
    radius = (2.0 / 3.0) / np.sqrt(n)
    return ParticleSet.from_arrays(pos, strength, radius, dtype=dtype)


__all__ = ['ParticleSet', 'buffer', 'make_random_particles']
