"""
Layer Executors

How a layer's forward and backward passes are carried out is decided once,
at setup, by picking one of two executors that share the same interface:

-   **`CPUExecutor`**: calls the layer's host compute hooks on the local
    columns of its `DistMatrix` buffers.
-   **`GPUExecutor`**: owns the layer's device descriptors and per-device
    buffers and launches one asynchronous kernel per managed device after
    binding that device's compute stream.

===============================================================================
DEVICE BUFFER OWNERSHIP:
===============================================================================

A device-resident layer always allocates its own output buffers
(`activations_d`, `error_signal_d`). Its two *input* buffers may instead be
shared with a device-resident neighbor:

.. code-block:: text

    prev (GPU)            this (GPU)             next (CPU)
    activations_d  ---->  prev_activations_d     (BORROWED_FROM_PREV)
                          prev_error_signal_d    (OWNED_HERE, filled from
                                                  next's host error signal)

The ownership of each input buffer is recorded as a `BufferOwnership` tag
when the layer is set up, and teardown releases only `OWNED_HERE` buffers,
after the descriptors. Every device allocation is therefore released by
exactly one layer.

Host and device copies happen only at CPU/GPU boundaries: inputs are copied
in when they are owned here, outputs are copied back when the consuming
neighbor is not device-resident. Copies and kernels are asynchronous; the
layer chain synchronizes the device streams before a successor reads the
host buffers.

===============================================================================
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, List, Optional, Tuple

from ..core.errors import ConfigurationError, UnsupportedOperationError
from ..core.device import DescriptorPair, DeviceBuffers, DeviceManager, TensorDescriptor, mini_batch_size_per_gpu

if TYPE_CHECKING:
    from .base import Layer

logger = logging.getLogger(__name__)


class BufferOwnership(Enum):
    """Which layer allocated, and must free, a device input buffer."""
    OWNED_HERE = "owned_here"
    BORROWED_FROM_PREV = "borrowed_from_prev"
    BORROWED_FROM_NEXT = "borrowed_from_next"


class Executor(ABC):
    """
    Strategy that runs a layer's computation.
    """

    @abstractmethod
    def setup(self, layer: "Layer") -> None:
        pass

    @abstractmethod
    def forward(self, layer: "Layer") -> None:
        pass

    @abstractmethod
    def backward(self, layer: "Layer") -> None:
        pass

    def teardown(self, layer: "Layer") -> None:
        pass

    def copy(self) -> Optional["Executor"]:
        return None


class CPUExecutor(Executor):
    """Runs the host compute hooks of a layer."""

    def setup(self, layer: "Layer") -> None:
        pass

    def forward(self, layer: "Layer") -> None:
        layer.fp_compute_cpu()

    def backward(self, layer: "Layer") -> None:
        layer.bp_compute_cpu()

    def copy(self) -> "CPUExecutor":
        return CPUExecutor()


class GPUExecutor(Executor):
    """
    Runs a layer's computation on the devices of a `DeviceManager`.
    """

    def __init__(self, manager: DeviceManager):
        self.manager = manager
        self.descriptors = DescriptorPair()
        self.mini_batch_size_per_gpu = 0

        self.activations_d: Optional[DeviceBuffers] = None
        self.error_signal_d: Optional[DeviceBuffers] = None
        self.prev_activations_d: Optional[DeviceBuffers] = None
        self.prev_error_signal_d: Optional[DeviceBuffers] = None

        self.input_ownership: Optional[BufferOwnership] = None
        self.gradient_ownership: Optional[BufferOwnership] = None

    # ------------------------------------------------------------------
    # Setup / teardown
    # ------------------------------------------------------------------

    def _shares_devices_with(self, neighbor: Optional["Layer"]) -> bool:
        return (neighbor is not None
                and neighbor.is_device_resident()
                and neighbor.device_manager is self.manager)

    def setup(self, layer: "Layer") -> None:
        """
        Creates descriptors and allocates the device buffers this layer owns.
        """
        self.mini_batch_size_per_gpu = mini_batch_size_per_gpu(
            layer.mini_batch_size, layer.comm.get_procs_per_model(), self.manager.num_gpus
        )
        per_gpu = self.mini_batch_size_per_gpu

        self.descriptors.create(
            TensorDescriptor.create(layer.neuron_dims or [layer.num_neurons], per_gpu),
            layer.activation_descriptor(),
        )

        self.activations_d = self.manager.allocate_on_gpus(layer.num_neurons, per_gpu)
        self.error_signal_d = self.manager.allocate_on_gpus(layer.num_prev_neurons, per_gpu)

        if self._shares_devices_with(layer.prev_layer):
            self.input_ownership = BufferOwnership.BORROWED_FROM_PREV
        else:
            self.input_ownership = BufferOwnership.OWNED_HERE
            self.prev_activations_d = self.manager.allocate_on_gpus(layer.num_prev_neurons, per_gpu)

        if self._shares_devices_with(layer.next_layer):
            self.gradient_ownership = BufferOwnership.BORROWED_FROM_NEXT
        else:
            self.gradient_ownership = BufferOwnership.OWNED_HERE
            self.prev_error_signal_d = self.manager.allocate_on_gpus(layer.num_neurons, per_gpu)

        logger.debug("%s: %d columns per device, input %s, gradient %s", layer.get_name(), per_gpu,
                     self.input_ownership.value, self.gradient_ownership.value)

    def teardown(self, layer: "Layer") -> None:
        """
        Destroys descriptors, then frees every device buffer owned here.
        """
        self.descriptors.destroy()

        self.manager.deallocate_on_gpus(self.activations_d)
        self.manager.deallocate_on_gpus(self.error_signal_d)
        if self.input_ownership is BufferOwnership.OWNED_HERE:
            self.manager.deallocate_on_gpus(self.prev_activations_d)
        if self.gradient_ownership is BufferOwnership.OWNED_HERE:
            self.manager.deallocate_on_gpus(self.prev_error_signal_d)

        self.activations_d = None
        self.error_signal_d = None
        self.prev_activations_d = None
        self.prev_error_signal_d = None

    # ------------------------------------------------------------------
    # Buffer resolution
    # ------------------------------------------------------------------

    def _check_descriptors(self, layer: "Layer") -> None:
        if not self.descriptors.initialized:
            raise ConfigurationError(f"{layer.get_name()}: device state used before setup or after teardown")

    def device_input(self, layer: "Layer") -> DeviceBuffers:
        if self.input_ownership is BufferOwnership.BORROWED_FROM_PREV:
            return layer.prev_layer.executor.activations_d
        return self.prev_activations_d

    def device_gradient(self, layer: "Layer") -> DeviceBuffers:
        if self.gradient_ownership is BufferOwnership.BORROWED_FROM_NEXT:
            return layer.next_layer.executor.error_signal_d
        return self.prev_error_signal_d

    def device_columns(self, local_width: int) -> List[Tuple[int, int]]:
        """Local column range handled by each device."""
        per_gpu = self.mini_batch_size_per_gpu
        return [(min(i * per_gpu, local_width), min((i + 1) * per_gpu, local_width))
                for i in range(self.manager.num_gpus)]

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------

    def forward(self, layer: "Layer") -> None:
        """
        Launches the forward kernel on every device.

        Does not synchronize; callers must synchronize the device streams
        before the host activations are read.
        """
        self._check_descriptors(layer)
        x_host = layer.prev_activations.local
        y_host = layer.activations.local
        inputs = self.device_input(layer)
        copy_in = self.input_ownership is BufferOwnership.OWNED_HERE
        copy_out = self.gradient_ownership is BufferOwnership.OWNED_HERE

        for i, (lo, hi) in enumerate(self.device_columns(y_host.shape[1])):
            if hi <= lo:
                continue
            n = hi - lo
            with self.manager.bind(i):
                x = inputs[i][:, :n]
                if copy_in:
                    x.copy_(x_host[:, lo:hi], non_blocking=True)
                y = self.activations_d[i][:, :n]
                layer.fp_compute_device(x, y)
                if copy_out:
                    y_host[:, lo:hi].copy_(y, non_blocking=True)

    def backward(self, layer: "Layer") -> None:
        """
        Launches the backward kernel on every device.

        Does not synchronize; see `forward`.
        """
        self._check_descriptors(layer)
        dy_host = layer.prev_error_signal.local
        dx_host = layer.error_signal.local
        inputs = self.device_input(layer)
        gradients = self.device_gradient(layer)
        copy_in = self.gradient_ownership is BufferOwnership.OWNED_HERE
        copy_out = self.input_ownership is BufferOwnership.OWNED_HERE

        for i, (lo, hi) in enumerate(self.device_columns(dx_host.shape[1])):
            if hi <= lo:
                continue
            n = hi - lo
            with self.manager.bind(i):
                x = inputs[i][:, :n]
                dy = gradients[i][:, :n]
                if copy_in:
                    dy.copy_(dy_host[:, lo:hi], non_blocking=True)
                dx = self.error_signal_d[i][:, :n]
                layer.bp_compute_device(x, dy, dx)
                if copy_out:
                    dx_host[:, lo:hi].copy_(dx, non_blocking=True)


def select_executor(layer: "Layer") -> Executor:
    """
    Picks the executor for a layer being set up.

    Raises:
        ConfigurationError: If the layer asks for device execution without
            a device manager and CUDA is unavailable.
    """
    if not layer.using_gpus:
        return CPUExecutor()
    if layer.device_manager is None:
        try:
            layer.device_manager = DeviceManager()
        except UnsupportedOperationError as exc:
            raise ConfigurationError(f"{layer.get_name()}: GPU execution requested: {exc}") from exc
    return GPUExecutor(layer.device_manager)
