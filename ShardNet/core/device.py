"""
Device Compute Management

This module is the thin owning handle around the devices a process offloads
layer computation to. It mirrors what a layer needs from a GPU runtime:

-   **Devices and streams**: one compute stream per managed device. Kernels
    are launched asynchronously on that stream after `bind(i)` has made the
    device and its stream current. Cross-device synchronization is not done
    here; the training loop calls `synchronize()` before a layer's output is
    consumed by its successor.
-   **Device buffers**: `allocate_on_gpus` returns one `height x width`
    tensor per device, wrapped in a `DeviceBuffers` handle. Every allocation
    is recorded in a ledger, so freeing a handle twice raises instead of
    silently corrupting state, and `live_allocations` exposes leaks.
-   **Descriptors**: `TensorDescriptor` and `ActivationDescriptor` describe
    the per-device tensor shape and the activation applied to it. They are
    held in a `DescriptorPair` that is either fully initialized or empty.

===============================================================================
SIMULATED DEVICES:
===============================================================================

A `DeviceManager` may also be built over CPU `torch.device`s. Every code path
(descriptors, per-device buffers, the ownership ledger) runs unchanged, only
without streams, which lets the GPU execution path be exercised on machines
without CUDA.

.. code-block:: python

    manager = DeviceManager([torch.device('cpu')] * 2)
    buffers = manager.allocate_on_gpus(height=16, width=4)
    with manager.bind(1):
        buffers[1].copy_(...)
    manager.deallocate_on_gpus(buffers)

===============================================================================
"""

import contextlib
import itertools
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence

import torch

from .errors import ResourceError, UnsupportedOperationError

logger = logging.getLogger(__name__)


def cuda_available() -> bool:
    """Whether this process can execute on CUDA devices."""
    return torch.cuda.is_available()


def mini_batch_size_per_gpu(mini_batch_size: int, procs_per_model: int, num_gpus: int) -> int:
    """
    Columns of the local minibatch assigned to each device.

    The global minibatch is first divided across the processes of a model,
    then each process's share across its devices, rounding up both times.
    """
    local_mini_batch_size = math.ceil(mini_batch_size / procs_per_model)
    return math.ceil(local_mini_batch_size / num_gpus)


@dataclass
class TensorDescriptor:
    """
    Shape of the per-device activation tensor.

    Attributes:
        dims (List[int]): `[mini_batch_per_gpu] + neuron_dims`, left-padded
            with ones to at least four entries.
        strides (List[int]): Packed (row-major) strides for `dims`.
    """
    dims: List[int]
    strides: List[int]

    @classmethod
    def create(cls, neuron_dims: Sequence[int], mini_batch_per_gpu: int) -> "TensorDescriptor":
        dims = [mini_batch_per_gpu] + list(neuron_dims)
        dims = [1] * max(0, 4 - len(dims)) + dims
        strides = [1] * len(dims)
        for i in range(len(dims) - 2, -1, -1):
            strides[i] = strides[i + 1] * dims[i + 1]
        return cls(dims=dims, strides=strides)

    @property
    def num_elements(self) -> int:
        return math.prod(self.dims)


@dataclass
class ActivationDescriptor:
    """Activation applied by the device kernels of a layer."""
    mode: str
    propagate_nan: bool = True
    coef: float = 0.0


@dataclass
class DescriptorPair:
    """
    Tensor and activation descriptors owned by one layer.

    Both descriptors are None (uninitialized) or both are set.
    """
    tensor_desc: Optional[TensorDescriptor] = None
    activation_desc: Optional[ActivationDescriptor] = None

    @property
    def initialized(self) -> bool:
        return self.tensor_desc is not None

    def create(self, tensor_desc: TensorDescriptor, activation_desc: ActivationDescriptor) -> None:
        if tensor_desc is None or activation_desc is None:
            raise ValueError("tensor and activation descriptors must be created together")
        self.tensor_desc = tensor_desc
        self.activation_desc = activation_desc

    def destroy(self) -> None:
        self.tensor_desc = None
        self.activation_desc = None


@dataclass(eq=False)
class DeviceBuffers:
    """
    Handle for one allocation spanning every managed device.

    Attributes:
        handle (int): Ledger id of the allocation.
        tensors (List[torch.Tensor]): One `height x width` tensor per device.
        freed (bool): Set once the allocation has been released.
    """
    handle: int
    height: int
    width: int
    tensors: List[torch.Tensor] = field(default_factory=list)
    freed: bool = False

    def __getitem__(self, index: int) -> torch.Tensor:
        if self.freed:
            raise ResourceError(f"device buffer {self.handle} used after free")
        return self.tensors[index]

    def __len__(self) -> int:
        return len(self.tensors)


class DeviceManager:
    """
    Owns the devices, compute streams and device buffers of a process.
    """

    def __init__(self, devices: Optional[Sequence[torch.device]] = None, dtype: torch.dtype = torch.float32):
        """
        Initializes the DeviceManager.

        Args:
            devices (Optional[Sequence[torch.device]]): Devices to manage.
                Defaults to every visible CUDA device.
            dtype (torch.dtype): Element type of device buffers.

        Raises:
            UnsupportedOperationError: If no devices are given and CUDA is
                unavailable, or a CUDA device is requested without CUDA.
        """
        if devices is None:
            if not cuda_available():
                raise UnsupportedOperationError("DeviceManager: CUDA not detected")
            devices = [torch.device('cuda', i) for i in range(torch.cuda.device_count())]
        devices = [torch.device(d) for d in devices]
        if not devices:
            raise UnsupportedOperationError("DeviceManager: no devices to manage")
        if any(d.type == 'cuda' for d in devices) and not cuda_available():
            raise UnsupportedOperationError("DeviceManager: CUDA not detected")

        self.devices: List[torch.device] = devices
        self.dtype = dtype
        self.streams: List[Optional[torch.cuda.Stream]] = [
            torch.cuda.Stream(device=d) if d.type == 'cuda' else None for d in devices
        ]
        self._ids = itertools.count()
        self._live: Dict[int, DeviceBuffers] = {}

    @property
    def num_gpus(self) -> int:
        return len(self.devices)

    def get_num_gpus(self) -> int:
        return self.num_gpus

    def get_gpu(self, index: int) -> torch.device:
        return self.devices[index]

    def get_stream(self, index: int) -> Optional[torch.cuda.Stream]:
        return self.streams[index]

    @contextlib.contextmanager
    def bind(self, index: int) -> Iterator[torch.device]:
        """
        Makes device `index` and its compute stream current.

        Yields:
            torch.device: The bound device.
        """
        device = self.devices[index]
        stream = self.streams[index]
        if stream is None:
            yield device
            return
        with torch.cuda.device(device), torch.cuda.stream(stream):
            yield device

    def allocate_on_gpus(self, height: int, width: int) -> DeviceBuffers:
        """
        Allocates a `height x width` buffer on every managed device.

        Raises:
            ResourceError: If a device allocation fails.
        """
        buffers = DeviceBuffers(handle=next(self._ids), height=height, width=width)
        try:
            for i, device in enumerate(self.devices):
                with self.bind(i):
                    buffers.tensors.append(torch.zeros(height, width, dtype=self.dtype, device=device))
        except RuntimeError as e:
            raise ResourceError(
                f"failed to allocate {height}x{width} buffer on {self.num_gpus} devices"
            ) from e
        self._live[buffers.handle] = buffers
        return buffers

    def deallocate_on_gpus(self, buffers: Optional[DeviceBuffers]) -> None:
        """
        Releases a buffer returned by `allocate_on_gpus`.

        Raises:
            ResourceError: If the buffer was already released or was not
                allocated by this manager.
        """
        if buffers is None:
            return
        if buffers.freed:
            raise ResourceError(f"double free of device buffer {buffers.handle}")
        if self._live.pop(buffers.handle, None) is not buffers:
            raise ResourceError(f"device buffer {buffers.handle} not owned by this manager")
        buffers.tensors.clear()
        buffers.freed = True

    @property
    def live_allocations(self) -> int:
        return len(self._live)

    def synchronize(self) -> None:
        """Waits for every compute stream to drain."""
        for stream in self.streams:
            if stream is not None:
                stream.synchronize()

    def __repr__(self) -> str:
        return f"DeviceManager(devices={[str(d) for d in self.devices]}, live={self.live_allocations})"
