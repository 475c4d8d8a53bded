"""nbody_direct: direct all-pairs gravity and vortex summation on multiple devices."""

from importlib.metadata import version as _version_lookup, PackageNotFoundError

# --- Versioning ---
try:
    # This works if the package was installed via 'pip install .'
    __version__ = _version_lookup("nbody_direct")
except PackageNotFoundError:
    __version__ = "unknown"

# --- Public API ---

from .config import (
    EvaluatorConfig,
    CPU_SRC_BLK,
    CPU_TRG_BLK,
    MAX_DEVICES,
    DEFAULT_DT,
)
from .errors import DeviceError, CapacityError, UsageError
from .particles import ParticleSet, buffer, make_random_particles
from .accumulate import CompensatedAccumulator
from .kernels import pair_velocity
from .reference import (
    evaluate_reference,
    evaluate_target_block,
    run_reference_timestepping,
)
from .device import get_backend, get_device_info, CUPY_AVAILABLE
from .orchestrator import MultiDeviceEvaluator, evaluate_multidevice, partition
from .parity import ParityReport, compare_outputs

# Define what "from nbody_direct import *" does
__all__ = [
    "__version__",
    "EvaluatorConfig",
    "CPU_SRC_BLK",
    "CPU_TRG_BLK",
    "MAX_DEVICES",
    "DEFAULT_DT",
    "DeviceError",
    "CapacityError",
    "UsageError",
    "ParticleSet",
    "buffer",
    "make_random_particles",
    "CompensatedAccumulator",
    "pair_velocity",
    "evaluate_reference",
    "evaluate_target_block",
    "run_reference_timestepping",
    "get_backend",
    "get_device_info",
    "CUPY_AVAILABLE",
    "MultiDeviceEvaluator",
    "evaluate_multidevice",
    "partition",
    "ParityReport",
    "compare_outputs",
]
