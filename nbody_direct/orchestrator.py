"""
nbody_direct.orchestrator
=========================
Multi-device evaluation and time stepping.

Per run: discover devices, partition the padded target range into equal
slices, provision one stream and one replica of the full source set per
slice, stage, compute, optionally integrate and broadcast, retrieve, and
release. Host worker threads (one per device) issue the per-device calls in
parallel; streams order the work on each device; explicit barriers are the
only cross-device ordering points.

Examples
--------
>>> from nbody_direct import MultiDeviceEvaluator, make_random_particles
>>> p = make_random_particles(5000)
>>> ev = MultiDeviceEvaluator(backend='emulated', n_devices=2)
>>> vel = ev.evaluate(p)                                  # (5000, 3)
>>> pos, vel = ev.run_timestepping(p, n_steps=3, dt=0.01)
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass

from numpy.typing import NDArray

from .config import DEFAULT_DT, EvaluatorConfig
from .device import DeviceHandle, get_backend, output_fields, source_fields
from .errors import DeviceError, gpu_check
from .particles import ParticleSet, buffer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Layout:
    """Padded sizes and slice geometry of one run."""
    n_true: int
    n_devices: int
    slice_size: int
    n_trg_pad: int
    n_src_pad: int
    n_alloc: int

    def offset(self, index: int) -> int:
        return index * self.slice_size


def partition(n_true: int, n_devices: int, threads_per_block: int,
              n_src_blocks: int) -> Layout:
    """
    Split ``n_true`` targets into ``n_devices`` equal slices.

    Every slice is a whole number of thread blocks. The summed source count
    ``n_src_pad`` is padded to whole tiles in each of the ``n_src_blocks``
    chunks and does not depend on the device count. Replicas hold
    ``n_alloc = max(n_src_pad, n_trg_pad)`` entries, so each slice lies
    inside the replica it reads its coordinates from.
    """
    if n_true < 1:
        raise ValueError(f"n_true must be positive, got {n_true}")
    if n_devices < 1:
        raise ValueError(f"n_devices must be positive, got {n_devices}")
    n_trg_pad = buffer(n_true, threads_per_block * n_devices)
    n_src_pad = buffer(n_true, threads_per_block * n_src_blocks)
    return Layout(n_true=n_true, n_devices=n_devices,
                  slice_size=n_trg_pad // n_devices,
                  n_trg_pad=n_trg_pad, n_src_pad=n_src_pad,
                  n_alloc=max(n_src_pad, n_trg_pad))


class MultiDeviceEvaluator:
    """
    Tiled all-pairs evaluation spread over several devices.

    Parameters
    ----------
    config : EvaluatorConfig, optional
        Kernel, precision and launch geometry. Built from ``config_kwargs``
        with ``EvaluatorConfig.for_kernel`` when omitted.
    backend : {'auto', 'cupy', 'emulated'} or backend instance
    n_devices : int, optional
        Force a device/stream count; clamped to ``[1, config.max_devices]``.
        With CuPy, streams beyond the physical count share devices
        round-robin.
    **config_kwargs
        Forwarded to ``EvaluatorConfig.for_kernel`` (``kernel``,
        ``precision``, ``compensated``, ...).
    """

    def __init__(self, config: EvaluatorConfig | None = None, backend='auto',
                 n_devices: int | None = None, **config_kwargs):
        if config is None:
            config = EvaluatorConfig.for_kernel(**config_kwargs)
        elif config_kwargs:
            config = config.with_options(**config_kwargs)
        self.config = config
        self.backend = get_backend(backend, n_devices) if isinstance(backend, str) else backend
        self.requested_devices = n_devices
        self.handles: list[DeviceHandle] = []
        self.layout: Layout | None = None
        self.timings: dict[str, float] = {}
        self._n_physical = 0
        self._pool: ThreadPoolExecutor | None = None

    @property
    def n_physical(self) -> int:
        """Physical device count seen by the last ``discover``."""
        return self._n_physical

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _for_each(self, func):
        """Run ``func(handle)`` for every handle on the host worker pool."""
        return list(self._pool.map(func, self.handles))

    def _barrier(self):
        self._for_each(lambda h: self.backend.synchronize(h.stream))

    def _check_particles(self, particles: ParticleSet):
        if particles.dim != self.config.dim:
            raise ValueError(
                f"{self.config.kernel} needs {self.config.dim}D particles, got {particles.dim}D"
            )
        if particles.dtype != self.config.dtype:
            raise TypeError(
                f"particles are {particles.dtype}, evaluator precision is {self.config.precision}"
            )

    # ------------------------------------------------------------------
    # Run stages
    # ------------------------------------------------------------------
    @gpu_check
    def discover(self) -> int:
        """Number of device slices to use for the next run."""
        available = self.backend.device_count()
        if available < 1:
            raise DeviceError("no devices available")
        self._n_physical = available
        n = self.requested_devices or available
        n = max(1, min(n, self.config.max_devices))
        logger.info("found %d device(s), using %d", available, n)
        return n

    def partition(self, n_true: int, n_devices: int) -> Layout:
        self.layout = partition(n_true, n_devices, self.config.threads_per_block,
                                self.config.n_src_blocks)
        return self.layout

    def _free_handle(self, h: DeviceHandle) -> None:
        self.backend.synchronize(h.stream)
        for arr in list(h.sources.values()) + list(h.outputs.values()):
            self.backend.free(h.device_id, arr)
        h.sources.clear()
        h.outputs.clear()
        self.backend.destroy_stream(h.stream)

    def _provision_one(self, index: int) -> DeviceHandle:
        layout = self.layout
        device_id = index % self._n_physical
        handle = DeviceHandle(index=index, device_id=device_id,
                              stream=self.backend.create_stream(device_id),
                              offset=layout.offset(index), slice_size=layout.slice_size)
        try:
            for name in source_fields(self.config.dim):
                handle.sources[name] = self.backend.alloc(device_id, layout.n_alloc,
                                                          self.config.dtype)
            for name in output_fields(self.config.dim):
                handle.outputs[name] = self.backend.alloc(device_id, layout.slice_size,
                                                          self.config.dtype)
        except DeviceError:
            self._free_handle(handle)
            raise
        return handle

    @gpu_check
    def provision(self, layout: Layout) -> list[DeviceHandle]:
        """
        Create one stream and its buffers per slice, in parallel.

        If any slice fails, the slices that succeeded are kept in
        ``handles`` so that ``release`` frees them.
        """
        self.layout = layout
        self._pool = ThreadPoolExecutor(max_workers=layout.n_devices,
                                        thread_name_prefix="nbody-host")
        futures = [self._pool.submit(self._provision_one, i)
                   for i in range(layout.n_devices)]
        wait(futures)
        self.handles = [f.result() for f in futures if f.exception() is None]
        for f in futures:
            if f.exception() is not None:
                raise f.exception()
        return self.handles

    @gpu_check
    def stage(self, host: ParticleSet) -> None:
        """Zero the slice accumulators and replicate the sources."""
        def _stage(h):
            for arr in h.outputs.values():
                self.backend.memset_async(h.stream, arr)
            for name, arr in h.sources.items():
                self.backend.copy_h2d_async(h.stream, arr, getattr(host, name))
        self._for_each(_stage)

    @gpu_check
    def zero_outputs(self) -> None:
        def _zero(h):
            for arr in h.outputs.values():
                self.backend.memset_async(h.stream, arr)
        self._for_each(_zero)

    @gpu_check
    def compute(self) -> None:
        """Launch the tiled evaluator on every stream."""
        n_src = self.layout.n_src_pad
        self._for_each(lambda h: self.backend.launch_tiled(h, self.config, n_src))

    @gpu_check
    def integrate_and_broadcast(self, dt: float) -> None:
        """
        Advance every slice by ``dt`` and make all replicas agree again.

        Peers may still be reading their replicas while a slice is being
        updated, so the broadcast starts only after every stream has drained
        its update, and the next step starts only after every broadcast has
        landed.
        """
        self._for_each(lambda h: self.backend.launch_update(h, self.config, dt))
        self._barrier()

        position_names = source_fields(self.config.dim)[:self.config.dim]

        def _broadcast(h):
            lo, hi = h.target_range
            for peer in self.handles:
                if peer is h:
                    continue
                for name in position_names:
                    self.backend.copy_peer_async(
                        h.stream, peer.sources[name][lo:hi], peer.device_id,
                        h.sources[name][lo:hi], h.device_id)
        self._for_each(_broadcast)
        self._barrier()

    @gpu_check
    def retrieve(self, host: ParticleSet, positions: bool = False) -> None:
        """Copy every slice's outputs (and optionally positions) back, then join."""
        position_names = source_fields(self.config.dim)[:self.config.dim]

        def _retrieve(h):
            lo, hi = h.target_range
            for name, arr in h.outputs.items():
                self.backend.copy_d2h_async(h.stream, getattr(host, name)[lo:hi], arr)
            if positions:
                for name in position_names:
                    self.backend.copy_d2h_async(h.stream, getattr(host, name)[lo:hi],
                                                h.sources[name][lo:hi])
            self.backend.synchronize(h.stream)
        self._for_each(_retrieve)

    @gpu_check
    def release(self) -> None:
        """Free every buffer and stream; safe to call more than once."""
        if self._pool is None:
            return
        try:
            self._for_each(self._free_handle)
            for device_id in sorted({h.device_id for h in self.handles}):
                self.backend.release_memory(device_id)
        finally:
            self._pool.shutdown(wait=True)
            self._pool = None
            self.handles = []

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------
    def _setup(self, particles: ParticleSet) -> ParticleSet:
        """Discover and partition; returns the host set padded to the replica length."""
        self._check_particles(particles)
        n_devices = self.discover()
        layout = self.partition(particles.n_true, n_devices)
        logger.info("%d targets in %d slices of %d, %d padded sources",
                    layout.n_true, layout.n_devices, layout.slice_size, layout.n_src_pad)
        return particles.padded(layout.n_alloc)

    def _provision_timed(self) -> None:
        t0 = time.perf_counter()
        self.provision(self.layout)
        self.timings['setup'] = time.perf_counter() - t0

    def _copy_outputs(self, host: ParticleSet, particles: ParticleSet) -> None:
        n = particles.n_true
        for dst, src in zip(particles.velocity_arrays, host.velocity_arrays):
            dst[:n] = src[:n]

    def evaluate(self, particles: ParticleSet) -> NDArray:
        """
        One evaluation of every true target against every source.

        Writes ``particles.u/v[/w]`` for the true particles and returns the
        ``(n_true, dim)`` velocities.
        """
        host = self._setup(particles)
        try:
            self._provision_timed()
            t0 = time.perf_counter()
            self.stage(host)
            self.compute()
            self.retrieve(host)
            self.timings['compute'] = time.perf_counter() - t0
        finally:
            self.release()
        self._copy_outputs(host, particles)
        return host.velocities

    def run_timestepping(self, particles: ParticleSet, n_steps: int,
                         dt: float = DEFAULT_DT) -> tuple[NDArray, NDArray]:
        """
        Explicit Euler steps with positions kept on the devices.

        Each step zeroes the accumulators, evaluates, moves every slice by
        ``dt * velocity`` and broadcasts the moved slices to every replica.
        ``particles`` positions are updated in place at the end.

        Returns
        -------
        positions, velocities : ndarray, shape (n_true, dim)
            Final positions and the velocities of the last step.
        """
        if n_steps < 1:
            raise ValueError(f"n_steps must be positive, got {n_steps}")
        host = self._setup(particles)
        try:
            self._provision_timed()
            t0 = time.perf_counter()
            self.stage(host)
            for step in range(n_steps):
                if step:
                    self.zero_outputs()
                self.compute()
                self.integrate_and_broadcast(dt)
                logger.info("step %d/%d done", step + 1, n_steps)
            self.retrieve(host, positions=True)
            self.timings['compute'] = time.perf_counter() - t0
        finally:
            self.release()
        particles.set_positions(host.positions)
        self._copy_outputs(host, particles)
        return host.positions, host.velocities


def evaluate_multidevice(particles: ParticleSet, backend='auto',
                         n_devices: int | None = None, **config_kwargs) -> NDArray:
    """Convenience wrapper around ``MultiDeviceEvaluator.evaluate``."""
    kernel = 'gravity3d' if particles.dim == 3 else 'vortex2d'
    config_kwargs.setdefault('kernel', kernel)
    config_kwargs.setdefault('precision', str(particles.dtype))
    evaluator = MultiDeviceEvaluator(backend=backend, n_devices=n_devices, **config_kwargs)
    return evaluator.evaluate(particles)


__all__ = [
    'Layout',
    'partition',
    'MultiDeviceEvaluator',
    'evaluate_multidevice',
]
