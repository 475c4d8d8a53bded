"""
nbody_direct.kernels
The regularized pairwise interaction law.

For a source at ``s_p`` (strength ``s``, radius ``r_s``) and a target at
``t_p`` (radius ``r_t``)::

    d      = s_p - t_p
    distsq = |d|^2 + r_s^2 + r_t^2

    3D gravity : factor = s * distsq^(-3/2)     contribution = factor * d / (4 pi)
    2D vortex  : factor = s / distsq            contribution = (d_y, -d_x) * factor / (2 pi)

The scalar laws below are shared by the host reference evaluator and the
emulated device evaluator; the CUDA templates in ``cuda_kernels`` restate
them with ``rsqrt``.
"""
from __future__ import annotations

import numpy as np
from numba import njit
from numpy.typing import ArrayLike, NDArray

from .config import NORMALIZATION, kernel_dim


@njit(inline='always')
def gravity_factor(strength, distsq):
    return strength / (distsq * np.sqrt(distsq))


@njit(inline='always')
def vortex_factor(strength, distsq):
    return strength / distsq


def pair_velocity(source_pos: ArrayLike, strength: float, source_radius: float,
                  target_pos: ArrayLike, target_radius: float,
                  kernel: str = 'gravity3d', dtype=np.float64) -> NDArray:
    """
    Normalised contribution of one source on one target.

    Broadcasts over leading axes, so ``source_pos`` of shape (M, dim) with
    ``strength`` of shape (M,) gives M contributions.

    Parameters
    ----------
    source_pos, target_pos : array_like, shape (..., dim)
    strength : float or array_like
    source_radius, target_radius : float or array_like
    kernel : {'gravity3d', 'vortex2d'}
    dtype : numpy dtype
        Arithmetic precision.

    Returns
    -------
    ndarray, shape (..., dim)
    """
    dim = kernel_dim(kernel)
    sp = np.asarray(source_pos, dtype=dtype)
    tp = np.asarray(target_pos, dtype=dtype)
    if sp.shape[-1] != dim or tp.shape[-1] != dim:
        raise ValueError(f"{kernel} needs {dim}-component positions")
    s = np.asarray(strength, dtype=dtype)
    rs = np.asarray(source_radius, dtype=dtype)
    rt = np.asarray(target_radius, dtype=dtype)

    d = sp - tp
    distsq = np.sum(d * d, axis=-1) + rs * rs + rt * rt
    norm = np.dtype(dtype).type(NORMALIZATION[kernel])
    if dim == 3:
        factor = s / (distsq * np.sqrt(distsq))
        return factor[..., None] * d / norm
    factor = s / distsq
    return np.stack([d[..., 1] * factor, -d[..., 0] * factor], axis=-1) / norm


__all__ = ['gravity_factor', 'vortex_factor', 'pair_velocity']
