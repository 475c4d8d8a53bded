"""Multi-device orchestration on the emulated backend."""
from __future__ import annotations

import typing
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from nbody_direct import (
    DeviceError,
    EvaluatorConfig,
    MultiDeviceEvaluator,
    compare_outputs,
    evaluate_multidevice,
    evaluate_reference,
    make_random_particles,
    partition,
    run_reference_timestepping,
)
from nbody_direct.config import _PRECISION_MAP, KERNEL_MAP
from nbody_direct.device import EmulatedBackend, EmulatedStream
from nbody_direct.particles import buffer

# small launch geometry keeps the emulated kernels quick; the padded source
# count depends only on N and this geometry (1024 for N=1000)
SMALL = dict(threads_per_block=32, n_src_blocks=4)
N = 1000


def _evaluator(n_devices, kernel='gravity3d', **kwargs):
    opts = dict(SMALL, **kwargs)
    return MultiDeviceEvaluator(backend='emulated', n_devices=n_devices,
                                kernel=kernel, **opts)


# ---------------------------------------------------------------------------
# Partitioning
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("n", [1, 255, 256, 257, 1000, 40_000])
@pytest.mark.parametrize("ndev", [1, 2, 3, 8])
@pytest.mark.parametrize("tpb,nsb", [(256, 64), (512, 32), (32, 4)])
def test_partition_layout(n, ndev, tpb, nsb):
    layout = partition(n, ndev, tpb, nsb)
    assert layout.n_trg_pad >= n
    assert layout.n_trg_pad - n < tpb * ndev
    assert layout.n_trg_pad % (tpb * ndev) == 0
    assert layout.slice_size * ndev == layout.n_trg_pad
    assert layout.slice_size % tpb == 0
    assert layout.n_src_pad == buffer(n, tpb * nsb)
    assert layout.n_src_pad == partition(n, 1, tpb, nsb).n_src_pad
    assert layout.n_alloc == max(layout.n_src_pad, layout.n_trg_pad)
    assert layout.offset(ndev - 1) + layout.slice_size == layout.n_trg_pad


def test_partition_source_count_ignores_device_count():
    one = partition(1000, 1, 32, 4)
    three = partition(1000, 3, 32, 4)
    six = partition(1000, 6, 32, 4)
    assert one.n_src_pad == three.n_src_pad == six.n_src_pad == 1024
    assert (three.n_trg_pad, three.n_alloc) == (1056, 1056)
    assert (six.n_trg_pad, six.n_alloc) == (1152, 1152)


def test_partition_rejects_bad_counts():
    with pytest.raises(ValueError):
        partition(0, 1, 32, 4)
    with pytest.raises(ValueError):
        partition(10, 0, 32, 4)


# ---------------------------------------------------------------------------
# Device discovery
# ---------------------------------------------------------------------------
def test_device_count_is_clamped():
    ev = MultiDeviceEvaluator(backend=EmulatedBackend(16))
    assert ev.discover() == 8
    assert ev.n_physical == 16


def test_streams_share_devices_round_robin():
    ev = MultiDeviceEvaluator(backend=EmulatedBackend(2), n_devices=4, **SMALL)
    n = ev.discover()
    assert n == 4
    layout = ev.partition(N, n)
    handles = ev.provision(layout)
    try:
        assert [h.device_id for h in handles] == [0, 1, 0, 1]
        assert [h.offset for h in handles] == [i * layout.slice_size for i in range(4)]
    finally:
        ev.release()


def test_vortex_config_defaults():
    cfg = EvaluatorConfig.for_kernel('vortex2d', precision='float32_kahan')
    assert cfg.threads_per_block == 512 and cfg.n_src_blocks == 32
    assert cfg.compensated and cfg.precision == 'float32'
    assert cfg.dtype == np.float32


def test_config_annotations_list_known_choices():
    hints = typing.get_type_hints(EvaluatorConfig)
    assert set(typing.get_args(hints['kernel'])) == set(KERNEL_MAP)
    assert set(typing.get_args(hints['precision'])) == set(_PRECISION_MAP)


# ---------------------------------------------------------------------------
# Equivalence across device counts
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("kernel,dim", [('gravity3d', 3), ('vortex2d', 2)])
@pytest.mark.parametrize("compensated", [False, True])
def test_result_independent_of_device_count(kernel, dim, compensated):
    results = []
    for ndev in (1, 2, 3, 4, 6):
        p = make_random_particles(N, dim=dim)
        results.append(_evaluator(ndev, kernel, compensated=compensated).evaluate(p))
    for other in results[1:]:
        np.testing.assert_array_equal(other, results[0])


@pytest.mark.parametrize("kernel,dim", [('gravity3d', 3), ('vortex2d', 2)])
def test_target_padding_does_not_change_sources(kernel, dim):
    # 128 targets pad to 192 slots on 3 and 6 devices, but the summed
    # source count stays at 128
    results = []
    for ndev in (1, 3, 6):
        p = make_random_particles(128, dim=dim)
        ev = _evaluator(ndev, kernel)
        results.append(ev.evaluate(p))
        assert ev.layout.n_src_pad == 128
    for other in results[1:]:
        np.testing.assert_array_equal(other, results[0])


@pytest.mark.parametrize("kernel,dim", [('gravity3d', 3), ('vortex2d', 2)])
def test_device_matches_host_reference(kernel, dim):
    p = make_random_particles(N, dim=dim)
    host = evaluate_reference(p.copy())
    dev = _evaluator(2, kernel).evaluate(p)
    scale = np.sqrt(np.mean(np.sum(host ** 2, axis=1)))
    report = compare_outputs(host, dev)
    assert report.rms < 1e-5 * scale
    assert report.n == N


def test_double_precision_device_matches_host_closely():
    p = make_random_particles(N, dtype=np.float64)
    host = evaluate_reference(p.copy())
    dev = _evaluator(2, precision='float64').evaluate(p)
    np.testing.assert_allclose(dev, host, rtol=1e-9, atol=1e-10)


def test_evaluate_writes_particle_outputs():
    p = make_random_particles(300)
    vel = _evaluator(2).evaluate(p)
    assert vel.shape == (300, 3)
    np.testing.assert_array_equal(p.velocities, vel)


def test_evaluate_multidevice_picks_kernel_from_particles():
    p = make_random_particles(200, dim=2, dtype=np.float64)
    vel = evaluate_multidevice(p, backend='emulated', n_devices=2, **SMALL)
    assert vel.shape == (200, 2)


def test_mismatched_particles_rejected():
    ev = _evaluator(1)
    with pytest.raises(ValueError):
        ev.evaluate(make_random_particles(100, dim=2))
    with pytest.raises(TypeError):
        ev.evaluate(make_random_particles(100, dtype=np.float64))


# ---------------------------------------------------------------------------
# Time stepping
# ---------------------------------------------------------------------------
def test_replicas_agree_after_broadcast():
    p = make_random_particles(N)
    ev = _evaluator(4)
    n = ev.discover()
    layout = ev.partition(p.n_true, n)
    host = p.padded(layout.n_alloc)
    ev.provision(layout)
    try:
        ev.stage(host)
        ev.compute()
        ev.integrate_and_broadcast(0.01)
        first = ev.handles[0].sources
        for h in ev.handles[1:]:
            for name in ('x', 'y', 'z'):
                np.testing.assert_array_equal(h.sources[name], first[name])
        # every slice moved
        moved = first['x'][:layout.n_trg_pad] != host.x[:layout.n_trg_pad]
        assert moved[:N].any()
        for h in ev.handles:
            lo, hi = h.target_range
            assert moved[lo:hi].any()
    finally:
        ev.release()


@pytest.mark.parametrize("kernel,dim", [('gravity3d', 3), ('vortex2d', 2)])
def test_multi_step_equals_chained_single_steps(kernel, dim):
    a = make_random_particles(N, dim=dim)
    b = a.copy()
    pos_a, vel_a = _evaluator(2, kernel).run_timestepping(a, 3, dt=0.01)
    for _ in range(3):
        pos_b, vel_b = _evaluator(2, kernel).run_timestepping(b, 1, dt=0.01)
    np.testing.assert_array_equal(pos_b, pos_a)
    np.testing.assert_array_equal(vel_b, vel_a)


def test_timestepping_independent_of_device_count():
    a = make_random_particles(N)
    b = a.copy()
    pos_1, _ = _evaluator(1).run_timestepping(a, 2, dt=0.01)
    pos_4, _ = _evaluator(4).run_timestepping(b, 2, dt=0.01)
    np.testing.assert_array_equal(pos_4, pos_1)
    np.testing.assert_array_equal(a.positions, pos_1)


def test_timestepping_tracks_host():
    a = make_random_particles(N, dtype=np.float64)
    b = a.copy()
    pos_host, _ = run_reference_timestepping(a, 2, dt=0.01)
    pos_dev, _ = _evaluator(2, precision='float64').run_timestepping(b, 2, dt=0.01)
    np.testing.assert_allclose(pos_dev, pos_host, rtol=1e-10, atol=1e-12)


def test_timestepping_rejects_zero_steps():
    with pytest.raises(ValueError):
        _evaluator(1).run_timestepping(make_random_particles(10), 0)


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------
def test_allocation_failure_is_fatal(caplog):
    ev = MultiDeviceEvaluator(backend=EmulatedBackend(1, memory_limit=16), **SMALL)
    with pytest.raises(SystemExit) as exc:
        ev.evaluate(make_random_particles(100))
    assert exc.value.code == 1
    assert "GPU error" in caplog.text
    assert "out of memory" in caplog.text


def test_partial_provisioning_is_released():
    # one slice (5 replicas of 128 plus 3 outputs of 64, float32) fits, two do not
    backend = EmulatedBackend(1, memory_limit=5000)
    ev = MultiDeviceEvaluator(backend=backend, n_devices=2, **SMALL)
    with pytest.raises(SystemExit):
        ev.evaluate(make_random_particles(100))
    assert backend.memory_in_use(0) == 0
    assert ev.handles == []
    assert ev._pool is None


def test_concurrent_alloc_and_free_keep_count():
    backend = EmulatedBackend(1)

    def churn(_):
        for _ in range(200):
            backend.free(0, backend.alloc(0, 16, np.float32))
        return backend.alloc(0, 16, np.float32)

    with ThreadPoolExecutor(max_workers=8) as pool:
        kept = list(pool.map(churn, range(8)))
    assert backend.memory_in_use(0) == 8 * 16 * 4
    for arr in kept:
        backend.free(0, arr)
    assert backend.memory_in_use(0) == 0


def test_stream_failure_surfaces_as_device_error():
    stream = EmulatedStream(0)
    try:
        stream.enqueue(np.copyto, np.zeros(4), np.zeros(5))
        with pytest.raises(DeviceError):
            stream.synchronize()
        # the queue is usable again after the error is reported
        stream.enqueue(np.copyto, np.zeros(4), np.ones(4))
        stream.synchronize()
    finally:
        stream.destroy()


def test_release_is_idempotent():
    ev = _evaluator(2)
    ev.evaluate(make_random_particles(100))
    ev.release()
    assert ev.handles == []
