"""
Input and Target Layers

The two ends of a layer chain are bound to data readers through one
`PartitionedIOBuffer` each:

-   **`InputLayer`** (first layer) fetches this rank's shard of the samples
    into its activations and, after the step, advances the reader.
-   **`TargetLayer`** (last layer) fetches the matching ground truth (one-hot
    labels, or responses for regression) and starts the backward pass with
    `error_signal = prediction - ground_truth`. It shares the input layer's
    readers, so its update strategy never moves the cursor.

Both select the reader of their current `execution_mode` before every fetch.
"""

import logging
from typing import Mapping, Optional

from .base import Layer
from ..core.comm import Communicator
from ..core.errors import ConfigurationError
from ..core.matrix import DistMatrix
from ..core.types import ExecutionMode
from ..io.data_reader import DataReader
from ..io.io_buffer import FetchDataFunctor, PartitionedIOBuffer, UpdateDataReaderFunctor

logger = logging.getLogger(__name__)


class IOLayer(Layer):
    """
    Common part of input and target layers.
    """

    def __init__(
        self,
        comm: Communicator,
        mini_batch_size: int,
        num_parallel_readers: int,
        data_readers: Mapping[ExecutionMode, DataReader],
        shared_data_reader: bool,
    ):
        super().__init__(comm, mini_batch_size, use_gpus=False)
        self.io_buffer = PartitionedIOBuffer(
            comm, num_parallel_readers, data_readers, shared_data_reader
        )
        self.execution_mode = ExecutionMode.TRAINING

    @property
    def data_readers(self) -> Mapping[ExecutionMode, DataReader]:
        return self.io_buffer.data_readers

    def set_execution_mode(self, mode: ExecutionMode) -> None:
        self.execution_mode = mode

    def get_data_reader(self, mode: Optional[ExecutionMode] = None) -> DataReader:
        return self.io_buffer.get_data_reader(mode or self.execution_mode)

    def update(self) -> bool:
        """
        Applies the I/O buffer's update strategy for the current mode.

        Returns:
            bool: True if the current epoch is complete.
        """
        return self.io_buffer.update_data_set(self.execution_mode)

    def _reference_reader(self) -> DataReader:
        readers = self.io_buffer.data_readers
        return readers.get(ExecutionMode.TRAINING) or next(iter(readers.values()))

    def describe(self) -> str:
        return (f"{super().describe()} io=({self.io_buffer.num_parallel_readers} readers, "
                f"shared={self.io_buffer.shared_data_reader})")

    def copy(self) -> "IOLayer":
        """
        Copies owned state (buffers, I/O buffer and its strategies) while
        the data readers stay shared with the original.
        """
        other = super().copy()
        other.io_buffer = self.io_buffer.copy()
        return other


class InputLayer(IOLayer):
    """
    First layer of a chain: supplies this rank's shard of the samples.
    """

    def __init__(
        self,
        comm: Communicator,
        mini_batch_size: int,
        num_parallel_readers: int,
        data_readers: Mapping[ExecutionMode, DataReader],
        shared_data_reader: bool,
    ):
        super().__init__(comm, mini_batch_size, num_parallel_readers, data_readers, shared_data_reader)
        self.io_buffer.fetch_data_fn = FetchDataFunctor(True)
        self.io_buffer.update_data_reader_fn = UpdateDataReaderFunctor(True)

    def get_type(self) -> str:
        return "input:partitioned"

    def requires_prev_layer(self) -> bool:
        return False

    def setup_dims(self) -> None:
        dims = self._reference_reader().get_data_dims()
        for mode, reader in self.io_buffer.data_readers.items():
            if reader.get_data_dims() != dims:
                raise ConfigurationError(
                    f"{mode.value} reader has sample dims {reader.get_data_dims()}, expected {dims}"
                )
        self.neuron_dims = list(dims)
        self.num_neurons = self._reference_reader().get_linearized_data_size()

    def forward_prop(self) -> None:
        self.fp_compute()
        self.error_signal.resize_width(self.activations.width)

    def fp_compute_cpu(self) -> None:
        self.io_buffer.fetch_to_local_matrix(self.activations, self.execution_mode, self.mini_batch_size)

    def bp_compute_cpu(self) -> None:
        pass


class TargetLayer(IOLayer):
    """
    Last layer of a chain: supplies ground truth and seeds the backward pass.
    """

    def __init__(
        self,
        comm: Communicator,
        mini_batch_size: int,
        input_layer: InputLayer,
        num_parallel_readers: int,
        data_readers: Mapping[ExecutionMode, DataReader],
        shared_data_reader: bool,
        for_regression: bool = False,
    ):
        """
        Initializes the TargetLayer.

        Args:
            comm (Communicator): Rank bookkeeping of this process.
            mini_batch_size (int): Configured global minibatch size.
            input_layer (InputLayer): The paired input layer; used to check
                that both ends agree on the minibatch distribution.
            num_parallel_readers (int): Requested number of reading ranks.
            data_readers (Mapping[ExecutionMode, DataReader]): Reader per
                execution mode, normally the input layer's readers.
            shared_data_reader (bool): Shared (True) or per-rank readers.
            for_regression (bool): Fetch responses instead of one-hot labels.
        """
        super().__init__(comm, mini_batch_size, num_parallel_readers, data_readers, shared_data_reader)
        self.input_layer = input_layer
        self.for_regression = for_regression
        self.io_buffer.fetch_data_fn = FetchDataFunctor(False, for_regression)
        self.io_buffer.update_data_reader_fn = UpdateDataReaderFunctor(False)

    def get_type(self) -> str:
        return "target:partitioned"

    def is_for_regression(self) -> bool:
        return self.for_regression

    @property
    def ground_truth(self) -> DistMatrix:
        return self.activations

    def setup_dims(self) -> None:
        reader = self._reference_reader()
        if self.for_regression:
            self.num_neurons = reader.get_linearized_response_size()
        else:
            self.num_neurons = reader.get_linearized_label_size()
        if self.num_neurons == 0:
            kind = "responses" if self.for_regression else "labels"
            raise ConfigurationError(f"{self.get_name()}: data reader provides no {kind}")
        self.neuron_dims = [self.num_neurons]

        prev = self.prev_layer
        if prev.num_neurons != self.num_neurons:
            raise ConfigurationError(
                f"{self.get_name()} expects {self.num_neurons} predictions but "
                f"{prev.get_name()} produces {prev.num_neurons}"
            )
        if self.input_layer.io_buffer.num_parallel_readers != self.io_buffer.num_parallel_readers:
            raise ConfigurationError(
                f"{self.get_name()} reads with {self.io_buffer.num_parallel_readers} ranks but "
                f"its input layer uses {self.input_layer.io_buffer.num_parallel_readers}"
            )
        if self.io_buffer.data_readers.keys() != self.input_layer.io_buffer.data_readers.keys():
            logger.warning("%s and %s are bound to different execution modes",
                           self.get_name(), self.input_layer.get_name())

    def fp_compute_cpu(self) -> None:
        expected = self.prev_activations.width
        self.io_buffer.fetch_to_local_matrix(self.activations, self.execution_mode, self.mini_batch_size)
        if self.activations.width != expected:
            raise ConfigurationError(
                f"{self.get_name()} fetched a minibatch of {self.activations.width} samples "
                f"for {expected} predictions"
            )

    def bp_compute_cpu(self) -> None:
        self.error_signal.local.copy_(self.prev_activations.local - self.ground_truth.local)
