"""
Layer Base Class

A `Layer` is the unit of computation in a ShardNet model. It owns its output
buffers, knows its neighbors only by position in the `LayerChain` that holds
it, and hands the actual math to an executor selected once at setup.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

Each layer owns two host-side `DistMatrix` buffers:

-   **activations** (`num_neurons x B`): the layer's output, read by the
    next layer as its `prev_activations`.
-   **error_signal** (`num_prev_neurons x B`): the gradient with respect to
    the layer's input, read by the previous layer as its `prev_error_signal`.

Neighbors are resolved through the chain at use time, so a layer never holds
a reference to another layer and never outlives or frees one.

Lifecycle:

1.  Construction during model assembly.
2.  `setup(prev, next)`: dimensions are derived from `prev`, buffers are
    allocated, and the executor is chosen. A `CPUExecutor` runs the host
    math; a `GPUExecutor` additionally allocates device buffers and
    descriptors (see `ShardNet.layers.executors`). Setting a layer up again
    releases the device state of the previous setup first.
3.  `forward_prop()` / `back_prop()` per minibatch.
4.  `teardown()` at model teardown, releasing device buffers exactly once.

Subclasses provide `setup_dims()` and the compute hooks
(`fp_compute_cpu`, `bp_compute_cpu`, and, for layers that can run on
devices, `fp_compute_device`, `bp_compute_device`).

===============================================================================
"""

import copy
import logging
from typing import TYPE_CHECKING, List, Optional

import torch

from ..core.comm import Communicator
from ..core.device import ActivationDescriptor, DeviceManager
from ..core.errors import ConfigurationError, UnsupportedOperationError
from ..core.matrix import DistMatrix
from ..core.types import DataLayout

if TYPE_CHECKING:
    from .chain import LayerChain
    from .executors import Executor

logger = logging.getLogger(__name__)


class Layer:
    """
    Base class for all layers.
    """

    def __init__(
        self,
        comm: Communicator,
        mini_batch_size: int,
        device_manager: Optional[DeviceManager] = None,
        use_gpus: Optional[bool] = None,
    ):
        """
        Initializes the Layer.

        Args:
            comm (Communicator): Rank bookkeeping of this process.
            mini_batch_size (int): Configured global minibatch size.
            device_manager (Optional[DeviceManager]): Devices to offload to.
            use_gpus (Optional[bool]): Run on devices. Defaults to True when a
                device manager is given. Requesting devices without a manager
                creates one over the visible CUDA devices at setup.
        """
        if mini_batch_size < 1:
            raise ConfigurationError(f"mini_batch_size must be positive, got {mini_batch_size}")
        self.comm = comm
        self.mini_batch_size = mini_batch_size
        self.device_manager = device_manager
        self.using_gpus = device_manager is not None if use_gpus is None else use_gpus

        self.index: Optional[int] = None
        self._chain: Optional["LayerChain"] = None

        self.num_neurons = 0
        self.neuron_dims: List[int] = []
        self.num_prev_neurons = 0
        self.num_partitions: Optional[int] = None

        self.activations: Optional[DistMatrix] = None
        self.error_signal: Optional[DistMatrix] = None
        self.executor: Optional["Executor"] = None

    # ------------------------------------------------------------------
    # Identity and neighbors
    # ------------------------------------------------------------------

    def get_type(self) -> str:
        return "layer"

    def get_name(self) -> str:
        return f"{self.get_type()}{'' if self.index is None else self.index}"

    def get_data_layout(self) -> DataLayout:
        return DataLayout.DATA_PARALLEL

    def describe(self) -> str:
        """One-line description of the layer and its configuration."""
        return (f"{self.get_name()}: type={self.get_type()} neurons={self.neuron_dims or self.num_neurons} "
                f"prev_neurons={self.num_prev_neurons} layout={self.get_data_layout().value} "
                f"gpus={self.using_gpus}")

    def attach(self, chain: "LayerChain", index: int) -> None:
        """Called by `LayerChain.add`."""
        if self._chain is not None:
            raise ConfigurationError(f"{self.get_name()} already belongs to a layer chain")
        self._chain = chain
        self.index = index

    @property
    def chain(self) -> "LayerChain":
        if self._chain is None:
            raise ConfigurationError(f"{self.get_name()} is not part of a layer chain")
        return self._chain

    @property
    def prev_layer(self) -> Optional["Layer"]:
        return self.chain.prev_of(self.index)

    @property
    def next_layer(self) -> Optional["Layer"]:
        return self.chain.next_of(self.index)

    @property
    def prev_activations(self) -> DistMatrix:
        """Input of the forward pass: the previous layer's activations."""
        return self.prev_layer.activations

    @property
    def prev_error_signal(self) -> DistMatrix:
        """Input of the backward pass: the next layer's error signal."""
        return self.next_layer.error_signal

    def is_device_resident(self) -> bool:
        """Whether this layer keeps device-side mirrors of its buffers."""
        return self.using_gpus

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(self, prev: Optional["Layer"], next: Optional["Layer"]) -> None:
        """
        Sizes and allocates buffers from the neighbor dimensions.

        Args:
            prev (Optional[Layer]): The previous layer in the chain.
            next (Optional[Layer]): The next layer in the chain.

        Raises:
            ConfigurationError: If the neighbors do not match the chain,
                their dimensions are incompatible with this layer, or device
                execution is requested without CUDA support.
        """
        if prev is not self.prev_layer or next is not self.next_layer:
            raise ConfigurationError(f"{self.get_name()}: setup neighbors do not match the layer chain")
        if prev is None and self.requires_prev_layer():
            raise ConfigurationError(f"{self.get_name()} needs a previous layer")

        self.setup_dims()
        self.num_prev_neurons = prev.num_neurons if prev is not None else 0
        self.setup_data()

        if self.executor is not None:
            self.executor.teardown(self)
        from .executors import select_executor
        self.executor = select_executor(self)
        self.executor.setup(self)
        logger.debug("Set up %s", self.describe())

    def requires_prev_layer(self) -> bool:
        return True

    def setup_dims(self) -> None:
        """Sets `num_neurons` / `neuron_dims`; entrywise by default."""
        prev = self.prev_layer
        self.neuron_dims = list(prev.neuron_dims)
        self.num_neurons = prev.num_neurons

    def get_num_partitions(self) -> int:
        """Number of ranks the minibatch columns are split over."""
        return self.comm.get_procs_per_model()

    def setup_data(self) -> None:
        self.num_partitions = self.get_num_partitions()
        rank = self.comm.rank_in_model
        self.activations = DistMatrix(self.num_neurons, self.mini_batch_size, self.num_partitions, rank)
        self.error_signal = DistMatrix(self.num_prev_neurons, self.mini_batch_size, self.num_partitions, rank)

    def activation_descriptor(self) -> ActivationDescriptor:
        return ActivationDescriptor(mode='identity')

    # ------------------------------------------------------------------
    # Compute
    # ------------------------------------------------------------------

    def forward_prop(self) -> None:
        width = self.prev_activations.width
        self.activations.resize_width(width)
        self.error_signal.resize_width(width)
        self.fp_compute()

    def back_prop(self) -> None:
        self.bp_compute()

    def _check_setup(self) -> None:
        if self.executor is None:
            raise ConfigurationError(f"{self.get_name()} used before setup")

    def fp_compute(self) -> None:
        self._check_setup()
        self.executor.forward(self)

    def bp_compute(self) -> None:
        self._check_setup()
        self.executor.backward(self)

    def fp_compute_gpu(self) -> None:
        from .executors import GPUExecutor
        if not isinstance(self.executor, GPUExecutor):
            raise UnsupportedOperationError(f"{self.get_name()}: device execution not enabled")
        self.executor.forward(self)

    def bp_compute_gpu(self) -> None:
        from .executors import GPUExecutor
        if not isinstance(self.executor, GPUExecutor):
            raise UnsupportedOperationError(f"{self.get_name()}: device execution not enabled")
        self.executor.backward(self)

    def fp_compute_cpu(self) -> None:
        raise NotImplementedError

    def bp_compute_cpu(self) -> None:
        raise NotImplementedError

    def fp_compute_device(self, x: torch.Tensor, y: torch.Tensor) -> None:
        raise UnsupportedOperationError(f"{self.get_type()} layers cannot run on devices")

    def bp_compute_device(self, x: torch.Tensor, dy: torch.Tensor, dx: torch.Tensor) -> None:
        raise UnsupportedOperationError(f"{self.get_type()} layers cannot run on devices")

    # ------------------------------------------------------------------
    # Copy and teardown
    # ------------------------------------------------------------------

    def copy(self) -> "Layer":
        """
        Copy for model replication.

        Host buffers are deep-copied, the copy is detached from any chain, and
        device state is not shared: a device-resident copy must be set up
        again inside its new chain.
        """
        other = copy.copy(self)
        other._chain = None
        other.index = None
        other.neuron_dims = list(self.neuron_dims)
        other.activations = self.activations.copy() if self.activations is not None else None
        other.error_signal = self.error_signal.copy() if self.error_signal is not None else None
        other.executor = self.executor.copy() if self.executor is not None else None
        return other

    def teardown(self) -> None:
        """Releases executor resources; safe to call more than once."""
        if self.executor is not None:
            self.executor.teardown(self)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.describe()}>"
