#!/usr/bin/env python3
"""
nbody_direct.device
Device backends for the tiled evaluator.

A backend exposes streams, device buffers, asynchronous copies and kernel
launches behind one interface, so the orchestrator is written once:

``CupyBackend``
    Real NVIDIA GPUs through CuPy. Kernels are the raw CUDA templates of
    ``cuda_kernels`` compiled with ``cp.RawKernel`` and cached per
    (kernel, precision, compensation, block width).

``EmulatedBackend``
    CPU emulation of ``n`` devices. Each stream is a FIFO executor with a
    single worker thread, device memory is a private numpy array, and the
    tiled kernel is a Numba function that walks blocks, tiles and source
    chunks in exactly the device order (atomic adds become ordered adds on
    the stream's thread).

Every backend failure surfaces as ``DeviceError``; the orchestrator turns
that into a fatal exit.

Examples
--------
>>> backend = get_backend('emulated', n_devices=2)
>>> backend.device_count()
2
"""
from __future__ import annotations

import functools
import logging
import threading
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np
from numba import njit

from .accumulate import kahan_add
from .config import EvaluatorConfig
from .cuda_kernels import KERNEL_TEMPLATES, UPDATE_TEMPLATES
from .errors import DeviceError
from .kernels import gravity_factor, vortex_factor

try:
    import cupy as cp
    CUPY_AVAILABLE = True
except ImportError:
    CUPY_AVAILABLE = False
    warnings.warn(
        "CuPy not available. GPU backend disabled. "
        "Install with: pip install cupy-cudaxxx",
        ImportWarning
    )

logger = logging.getLogger(__name__)

SOURCE_FIELDS_3D = ('x', 'y', 'z', 'strength', 'radius')
SOURCE_FIELDS_2D = ('x', 'y', 'strength', 'radius')
OUTPUT_FIELDS_3D = ('u', 'v', 'w')
OUTPUT_FIELDS_2D = ('u', 'v')


def source_fields(dim: int) -> tuple[str, ...]:
    return SOURCE_FIELDS_3D if dim == 3 else SOURCE_FIELDS_2D


def output_fields(dim: int) -> tuple[str, ...]:
    return OUTPUT_FIELDS_3D if dim == 3 else OUTPUT_FIELDS_2D


# ============================================================================
# PER-DEVICE RESOURCE HANDLE
# ============================================================================

@dataclass
class DeviceHandle:
    """
    Stream and buffers owned by one slice of the target range.

    ``sources`` holds the full replicated source set, ``outputs`` only this
    slice's accumulators. Target ``i`` of the slice is source
    ``offset + i`` of the replica.
    """
    index: int
    device_id: int
    stream: object
    offset: int
    slice_size: int
    sources: dict = field(default_factory=dict)
    outputs: dict = field(default_factory=dict)

    @property
    def target_range(self) -> tuple[int, int]:
        return self.offset, self.offset + self.slice_size


def _check_geometry(handle: DeviceHandle, config: EvaluatorConfig, n_src: int):
    tpb = config.threads_per_block
    if handle.slice_size % tpb:
        raise ValueError(f"slice of {handle.slice_size} is not a multiple of {tpb}")
    if n_src % (tpb * config.n_src_blocks):
        raise ValueError(
            f"{n_src} sources do not split into {config.n_src_blocks} chunks of whole tiles"
        )
    replica = handle.sources['x'].shape[0]
    if n_src > replica:
        raise ValueError(f"{n_src} sources exceed the replica of {replica}")
    if handle.offset + handle.slice_size > replica:
        raise ValueError("target slice extends past the source replica")


# ============================================================================
# EMULATED BACKEND
# ============================================================================
# Device code paths are compiled without fastmath so compensation survives.

@njit(nogil=True, cache=True)
def _emulated_tiled_3d(grid_x, grid_y, tpb, nsrc, sx, sy, sz, ss, sr,
                       t_offset, tu, tv, tw, compensated, norm):
    jcount = nsrc // grid_y
    ntiles = jcount // tpb
    s_sx = np.empty(tpb, dtype=sx.dtype)
    s_sy = np.empty(tpb, dtype=sx.dtype)
    s_sz = np.empty(tpb, dtype=sx.dtype)
    s_ss = np.empty(tpb, dtype=sx.dtype)
    s_sr = np.empty(tpb, dtype=sx.dtype)
    tx = np.empty(tpb, dtype=sx.dtype)
    ty = np.empty(tpb, dtype=sx.dtype)
    tz = np.empty(tpb, dtype=sx.dtype)
    tr2 = np.empty(tpb, dtype=sx.dtype)
    loc = np.empty((3, tpb), dtype=tu.dtype)
    rem = np.empty((3, tpb), dtype=tu.dtype)

    for bx in range(grid_x):
        for t in range(tpb):
            it = t_offset + bx * tpb + t
            tx[t] = sx[it]
            ty[t] = sy[it]
            tz[t] = sz[it]
            tr2[t] = sr[it] * sr[it]
        for by in range(grid_y):
            jstart = by * jcount
            loc[:] = 0
            rem[:] = 0
            for b in range(ntiles):
                base = jstart + b * tpb
                for t in range(tpb):
                    s_sx[t] = sx[base + t]
                    s_sy[t] = sy[base + t]
                    s_sz[t] = sz[base + t]
                    s_ss[t] = ss[base + t]
                    s_sr[t] = sr[base + t]
                for t in range(tpb):
                    for k in range(tpb):
                        dx = s_sx[k] - tx[t]
                        dy = s_sy[k] - ty[t]
                        dz = s_sz[k] - tz[t]
                        distsq = dx * dx + dy * dy + dz * dz + s_sr[k] * s_sr[k] + tr2[t]
                        factor = gravity_factor(s_ss[k], distsq)
                        if compensated:
                            loc[0, t], rem[0, t] = kahan_add(loc[0, t], rem[0, t], dx * factor)
                            loc[1, t], rem[1, t] = kahan_add(loc[1, t], rem[1, t], dy * factor)
                            loc[2, t], rem[2, t] = kahan_add(loc[2, t], rem[2, t], dz * factor)
                        else:
                            loc[0, t] += dx * factor
                            loc[1, t] += dy * factor
                            loc[2, t] += dz * factor
            # atomicAdd, in row order
            for t in range(tpb):
                i = bx * tpb + t
                tu[i] += (loc[0, t] + rem[0, t]) / norm
                tv[i] += (loc[1, t] + rem[1, t]) / norm
                tw[i] += (loc[2, t] + rem[2, t]) / norm


@njit(nogil=True, cache=True)
def _emulated_tiled_2d(grid_x, grid_y, tpb, nsrc, sx, sy, ss, sr,
                       t_offset, tu, tv, compensated, norm):
    jcount = nsrc // grid_y
    ntiles = jcount // tpb
    s_sx = np.empty(tpb, dtype=sx.dtype)
    s_sy = np.empty(tpb, dtype=sx.dtype)
    s_ss = np.empty(tpb, dtype=sx.dtype)
    s_sr = np.empty(tpb, dtype=sx.dtype)
    tx = np.empty(tpb, dtype=sx.dtype)
    ty = np.empty(tpb, dtype=sx.dtype)
    tr2 = np.empty(tpb, dtype=sx.dtype)
    loc = np.empty((2, tpb), dtype=tu.dtype)
    rem = np.empty((2, tpb), dtype=tu.dtype)

    for bx in range(grid_x):
        for t in range(tpb):
            it = t_offset + bx * tpb + t
            tx[t] = sx[it]
            ty[t] = sy[it]
            tr2[t] = sr[it] * sr[it]
        for by in range(grid_y):
            jstart = by * jcount
            loc[:] = 0
            rem[:] = 0
            for b in range(ntiles):
                base = jstart + b * tpb
                for t in range(tpb):
                    s_sx[t] = sx[base + t]
                    s_sy[t] = sy[base + t]
                    s_ss[t] = ss[base + t]
                    s_sr[t] = sr[base + t]
                for t in range(tpb):
                    for k in range(tpb):
                        dx = s_sx[k] - tx[t]
                        dy = s_sy[k] - ty[t]
                        distsq = dx * dx + dy * dy + s_sr[k] * s_sr[k] + tr2[t]
                        factor = vortex_factor(s_ss[k], distsq)
                        if compensated:
                            loc[0, t], rem[0, t] = kahan_add(loc[0, t], rem[0, t], dy * factor)
                            loc[1, t], rem[1, t] = kahan_add(loc[1, t], rem[1, t], -dx * factor)
                        else:
                            loc[0, t] += dy * factor
                            loc[1, t] -= dx * factor
            for t in range(tpb):
                i = bx * tpb + t
                tu[i] += (loc[0, t] + rem[0, t]) / norm
                tv[i] += (loc[1, t] + rem[1, t]) / norm


@njit(nogil=True, cache=True)
def _emulated_posupdate(n, dt, t_offset, x, u):
    for i in range(n):
        x[t_offset + i] += dt * u[i]


class EmulatedStream:
    """FIFO of device operations executed by one worker thread."""

    def __init__(self, device_id: int):
        self.device_id = device_id
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"emu-device{device_id}"
        )
        self._pending = []

    def enqueue(self, func, *args):
        self._pending.append(self._executor.submit(func, *args))

    def synchronize(self):
        pending, self._pending = self._pending, []
        for future in pending:
            err = future.exception()
            if err is not None:
                raise DeviceError(
                    f"emulated device {self.device_id}: {type(err).__name__}: {err}"
                ) from err

    def destroy(self):
        self._executor.shutdown(wait=True)


class EmulatedBackend:
    """
    Sequential-per-stream CPU emulation of ``n_devices`` accelerators.

    Parameters
    ----------
    n_devices : int
        Number of emulated devices.
    memory_limit : int, optional
        Bytes available per device; allocations beyond it fail like a device
        out-of-memory error.
    """
    name = 'emulated'

    def __init__(self, n_devices: int = 1, memory_limit: int | None = None):
        if n_devices < 1:
            raise ValueError(f"n_devices must be positive, got {n_devices}")
        self.n_devices = n_devices
        self.memory_limit = memory_limit
        self._allocated = [0] * n_devices
        self._alloc_lock = threading.Lock()

    def device_count(self) -> int:
        return self.n_devices

    def create_stream(self, device_id: int) -> EmulatedStream:
        return EmulatedStream(device_id)

    def destroy_stream(self, stream: EmulatedStream) -> None:
        stream.destroy()

    def alloc(self, device_id: int, n: int, dtype) -> np.ndarray:
        nbytes = n * np.dtype(dtype).itemsize
        # provisioning workers of streams sharing a device allocate concurrently
        with self._alloc_lock:
            if (self.memory_limit is not None
                    and self._allocated[device_id] + nbytes > self.memory_limit):
                raise DeviceError(
                    f"out of memory on emulated device {device_id} "
                    f"allocating {nbytes} bytes"
                )
            self._allocated[device_id] += nbytes
        return np.empty(n, dtype=dtype)

    def free(self, device_id: int, array: np.ndarray) -> None:
        with self._alloc_lock:
            self._allocated[device_id] -= array.nbytes

    def memory_in_use(self, device_id: int) -> int:
        """Bytes currently allocated on an emulated device."""
        return self._allocated[device_id]

    def memset_async(self, stream, array) -> None:
        stream.enqueue(array.fill, 0)

    def copy_h2d_async(self, stream, dst, host) -> None:
        stream.enqueue(np.copyto, dst, host)

    def copy_d2h_async(self, stream, host_out, src) -> None:
        stream.enqueue(np.copyto, host_out, src)

    def copy_peer_async(self, stream, dst, dst_device, src, src_device) -> None:
        stream.enqueue(np.copyto, dst, src)

    def launch_tiled(self, handle: DeviceHandle, config: EvaluatorConfig, n_src: int) -> None:
        _check_geometry(handle, config, n_src)
        tpb = config.threads_per_block
        grid = (handle.slice_size // tpb, config.n_src_blocks)
        norm = config.dtype(config.norm)
        s, o = handle.sources, handle.outputs
        if config.dim == 3:
            handle.stream.enqueue(
                _emulated_tiled_3d, grid[0], grid[1], tpb, n_src,
                s['x'], s['y'], s['z'], s['strength'], s['radius'],
                handle.offset, o['u'], o['v'], o['w'], config.compensated, norm)
        else:
            handle.stream.enqueue(
                _emulated_tiled_2d, grid[0], grid[1], tpb, n_src,
                s['x'], s['y'], s['strength'], s['radius'],
                handle.offset, o['u'], o['v'], config.compensated, norm)

    def launch_update(self, handle: DeviceHandle, config: EvaluatorConfig, dt: float) -> None:
        dt_t = config.dtype(dt)
        for pos, vel in zip(('x', 'y', 'z'), output_fields(config.dim)):
            handle.stream.enqueue(_emulated_posupdate, handle.slice_size, dt_t,
                                  handle.offset, handle.sources[pos], handle.outputs[vel])

    def synchronize(self, stream) -> None:
        stream.synchronize()

    def release_memory(self, device_id: int) -> None:
        pass

    def describe(self) -> list[dict]:
        return [{'device_id': i, 'name': 'emulated', 'available': True}
                for i in range(self.n_devices)]


# ============================================================================
# CUPY BACKEND
# ============================================================================

_TYPE_SPECS = {
    'float32': {'T': 'float', 'RSQRT': 'rsqrtf'},
    'float64': {'T': 'double', 'RSQRT': 'rsqrt'},
}

# Kernel cache - stores compiled kernels
_KERNEL_CACHE = {}


def _cupy_errors() -> tuple:
    errors = [cp.cuda.runtime.CUDARuntimeError, cp.cuda.driver.CUDADriverError,
              cp.cuda.memory.OutOfMemoryError, cp.cuda.compiler.CompileException]
    nvrtc_error = getattr(cp.cuda.nvrtc, 'NVRTCError', None)
    if nvrtc_error is not None:
        errors.append(nvrtc_error)
    return tuple(errors)


def _cupy_call(func):
    """Translate CuPy/CUDA failures into ``DeviceError``."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except _cupy_errors() as err:
            raise DeviceError(f"{type(err).__name__}: {err}") from err
    return wrapper


def _get_kernel(kernel: str, precision: str, compensated: bool, tpb: int):
    """
    Compiled tiled evaluator for one configuration.

    Parameters
    ----------
    kernel : {'gravity3d', 'vortex2d'}
    precision : {'float32', 'float64'}
    compensated : bool
    tpb : int
        Threads per block; also the shared tile length.

    Returns
    -------
    kernel : cp.RawKernel
    """
    if precision not in _TYPE_SPECS:
        raise ValueError(f"precision must be 'float32' or 'float64', got {precision}")
    cache_key = (kernel, precision, compensated, tpb)
    if cache_key in _KERNEL_CACHE:
        return _KERNEL_CACHE[cache_key]

    template, kernel_name = KERNEL_TEMPLATES[(kernel, compensated)]
    norm = EvaluatorConfig(kernel=kernel).norm
    source = template.format(TPB=tpb, NORM=repr(norm), **_TYPE_SPECS[precision])
    options = ('--use_fast_math',)  # rsqrt approximations on the device
    compiled = cp.RawKernel(source, kernel_name, options=options)
    _KERNEL_CACHE[cache_key] = compiled
    return compiled


def _get_update_kernel(kernel: str, precision: str):
    cache_key = ('update', kernel, precision)
    if cache_key not in _KERNEL_CACHE:
        template, kernel_name = UPDATE_TEMPLATES[kernel]
        source = template.format(**_TYPE_SPECS[precision])
        _KERNEL_CACHE[cache_key] = cp.RawKernel(source, kernel_name)
    return _KERNEL_CACHE[cache_key]


@dataclass
class GpuStream:
    """A CuPy stream together with the device it was created on."""
    device_id: int
    stream: object


class CupyBackend:
    """
    NVIDIA GPUs through CuPy.

    Streams are mapped to physical devices by the orchestrator; every call
    here activates the right device before touching memory.
    """
    name = 'cupy'

    def __init__(self):
        if not CUPY_AVAILABLE:
            raise ImportError("CuPy is required for the GPU backend. "
                              "Install with: pip install cupy-cudaxxx")

    @_cupy_call
    def device_count(self) -> int:
        return cp.cuda.runtime.getDeviceCount()

    @_cupy_call
    def create_stream(self, device_id: int) -> 'GpuStream':
        with cp.cuda.Device(device_id):
            return GpuStream(device_id, cp.cuda.Stream(non_blocking=True))

    def destroy_stream(self, stream) -> None:
        # CuPy destroys the CUDA stream when the object is collected
        pass

    @_cupy_call
    def alloc(self, device_id: int, n: int, dtype):
        with cp.cuda.Device(device_id):
            return cp.empty(n, dtype=dtype)

    def free(self, device_id: int, array) -> None:
        pass

    @_cupy_call
    def memset_async(self, stream, array) -> None:
        with cp.cuda.Device(stream.device_id), stream.stream:
            array.fill(0)

    @_cupy_call
    def copy_h2d_async(self, stream, dst, host) -> None:
        with cp.cuda.Device(stream.device_id):
            dst.set(host, stream=stream.stream)

    @_cupy_call
    def copy_d2h_async(self, stream, host_out, src) -> None:
        with cp.cuda.Device(stream.device_id):
            src.get(stream=stream.stream, out=host_out, blocking=False)

    @_cupy_call
    def copy_peer_async(self, stream, dst, dst_device, src, src_device) -> None:
        cp.cuda.runtime.memcpyPeerAsync(dst.data.ptr, dst_device, src.data.ptr,
                                        src_device, src.nbytes, stream.stream.ptr)

    @_cupy_call
    def launch_tiled(self, handle: DeviceHandle, config: EvaluatorConfig, n_src: int) -> None:
        _check_geometry(handle, config, n_src)
        tpb = config.threads_per_block
        kern = _get_kernel(config.kernel, config.precision, config.compensated, tpb)
        grid = (handle.slice_size // tpb, config.n_src_blocks)
        s, o = handle.sources, handle.outputs
        if config.dim == 3:
            args = (cp.int32(n_src), s['x'], s['y'], s['z'], s['strength'], s['radius'],
                    cp.int32(handle.offset), o['u'], o['v'], o['w'])
        else:
            args = (cp.int32(n_src), s['x'], s['y'], s['strength'], s['radius'],
                    cp.int32(handle.offset), o['u'], o['v'])
        with cp.cuda.Device(handle.device_id), handle.stream.stream:
            kern(grid, (tpb,), args)

    @_cupy_call
    def launch_update(self, handle: DeviceHandle, config: EvaluatorConfig, dt: float) -> None:
        kern = _get_update_kernel(config.kernel, config.precision)
        threads = config.threads_per_block
        blocks = (handle.slice_size + threads - 1) // threads
        s, o = handle.sources, handle.outputs
        dt_t = config.dtype(dt)
        if config.dim == 3:
            args = (cp.int32(handle.slice_size), dt_t, cp.int32(handle.offset),
                    s['x'], s['y'], s['z'], o['u'], o['v'], o['w'])
        else:
            args = (cp.int32(handle.slice_size), dt_t, cp.int32(handle.offset),
                    s['x'], s['y'], o['u'], o['v'])
        with cp.cuda.Device(handle.device_id), handle.stream.stream:
            kern((blocks,), (threads,), args)

    @_cupy_call
    def synchronize(self, stream) -> None:
        stream.stream.synchronize()

    @_cupy_call
    def release_memory(self, device_id: int) -> None:
        with cp.cuda.Device(device_id):
            cp.get_default_memory_pool().free_all_blocks()

    @_cupy_call
    def describe(self) -> list[dict]:
        info = []
        for i in range(cp.cuda.runtime.getDeviceCount()):
            with cp.cuda.Device(i) as device:
                free, total = cp.cuda.runtime.memGetInfo()
                info.append({
                    'device_id': i,
                    'available': True,
                    'name': cp.cuda.runtime.getDeviceProperties(i)['name'].decode('utf-8'),
                    'compute_capability': device.compute_capability,
                    'memory_total': total,
                    'memory_free': free,
                })
        return info


# ============================================================================
# BACKEND SELECTION
# ============================================================================

def get_backend(name: str = 'auto', n_devices: int | None = None, **kwargs):
    """
    Build a backend by name.

    ``'auto'`` picks CuPy when it imports and sees at least one GPU, and
    falls back to an emulated backend otherwise. ``n_devices`` sizes the
    emulated backend; CuPy always reports the physical device count.
    """
    if name == 'cupy':
        return CupyBackend()
    if name == 'emulated':
        return EmulatedBackend(n_devices or 1, **kwargs)
    if name != 'auto':
        raise ValueError(f"backend must be 'auto', 'cupy' or 'emulated', got {name!r}")

    if CUPY_AVAILABLE:
        backend = CupyBackend()
        try:
            if backend.device_count() > 0:
                return backend
        except DeviceError as err:
            logger.warning("CuPy present but no usable GPU (%s)", err)
    logger.info("using emulated devices")
    return EmulatedBackend(n_devices or 1, **kwargs)


def get_device_info(backend=None) -> list[dict]:
    """
    Describe the devices a backend would use.

    Examples
    --------
    >>> for dev in get_device_info(get_backend('emulated', n_devices=2)):
    ...     print(dev['device_id'], dev['name'])
    0 emulated
    1 emulated
    """
    backend = backend if backend is not None else get_backend('auto')
    return backend.describe()


__all__ = [
    'CUPY_AVAILABLE',
    'DeviceHandle',
    'EmulatedBackend',
    'EmulatedStream',
    'CupyBackend',
    'get_backend',
    'get_device_info',
    'source_fields',
    'output_fields',
]
