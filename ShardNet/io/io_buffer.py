"""
Partitioned I/O Buffer

The `PartitionedIOBuffer` feeds one input or target layer. At every step it
works out which part of the global minibatch belongs to the calling rank,
pulls exactly that shard out of the data reader for the current execution
mode, and, after the step, advances the reader.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

-   **Parallelism degree**: `num_parallel_readers` is the requested number
    of reading ranks clamped to the processes of a model. Clamping is an
    adjustment, not an error; only a non-positive request is rejected.
-   **Partitioning**: the global minibatch is split by `partition_minibatch`
    into `num_parallel_readers` disjoint, contiguous shards. Rank `r` of the
    model gets shard `r`; ranks at or beyond the parallelism degree get no
    data.
-   **Fetch / update strategies**: `FetchDataFunctor` decides *what* is read
    (samples for input layers; labels or regression responses for target
    layers) and `UpdateDataReaderFunctor` decides *whether* the cursor moves
    (only for input layers, since input and target share the reader).
-   **Shared vs per-rank readers**: recorded explicitly per buffer.
-   **Compute layout**: layer buffers are split over every rank of the
    model. When fewer ranks read than compute, the reader shards are
    all-gathered over the model group and each rank keeps its compute
    columns. Without a process group (one process, or ranks simulated in
    one process) a shared reader yields those columns directly.

.. code-block:: text

    shared reader, B = 10, 3 readers, cursor at c

    rank 0 -> records [c+0, c+4)
    rank 1 -> records [c+4, c+7)
    rank 2 -> records [c+7, c+10)
    cursor advances by 10 (input buffer only)

    per-rank readers: each rank's private reader yields its next
    |shard| records and advances by that amount

===============================================================================
"""

import copy
import logging
from typing import Dict, Mapping, Optional

import torch
import torch.distributed as dist

from .data_reader import DataReader
from ..core.comm import Communicator
from ..core.errors import ConfigurationError
from ..core.matrix import DistMatrix
from ..core.partition import local_partition, partition_minibatch
from ..core.types import ExecutionMode

logger = logging.getLogger(__name__)


class FetchDataFunctor:
    """
    Reads one shard from a data reader.

    Attributes:
        is_input_layer (bool): Fetch samples (True) or ground truth (False).
        is_for_regression (bool): For ground truth, fetch responses instead
            of one-hot labels.
    """

    def __init__(self, is_input_layer: bool, is_for_regression: bool = False):
        self.is_input_layer = is_input_layer
        self.is_for_regression = is_for_regression

    def __call__(self, reader: DataReader, offset: int, count: int) -> torch.Tensor:
        if self.is_input_layer:
            return reader.fetch_data(offset, count)
        if self.is_for_regression:
            return reader.fetch_responses(offset, count)
        return reader.fetch_labels(offset, count)

    def __repr__(self) -> str:
        return f"FetchDataFunctor(input={self.is_input_layer}, regression={self.is_for_regression})"


class UpdateDataReaderFunctor:
    """
    Advances a data reader after a step.

    Only the input layer moves the cursor; a target layer sharing the same
    reader just reports whether the epoch has completed.
    """

    def __init__(self, is_input_layer: bool):
        self.is_input_layer = is_input_layer

    def __call__(self, reader: DataReader, count: int) -> bool:
        if self.is_input_layer:
            return reader.advance(count)
        return reader.is_data_set_processed()

    def __repr__(self) -> str:
        return f"UpdateDataReaderFunctor(input={self.is_input_layer})"


class PartitionedIOBuffer:
    """
    Partitions each minibatch across the reading ranks of a model.
    """

    def __init__(
        self,
        comm: Communicator,
        num_parallel_readers: int,
        data_readers: Mapping[ExecutionMode, DataReader],
        shared_data_reader: bool,
    ):
        """
        Initializes the PartitionedIOBuffer.

        Args:
            comm (Communicator): Rank bookkeeping of this process.
            num_parallel_readers (int): Requested number of reading ranks.
            data_readers (Mapping[ExecutionMode, DataReader]): Reader per
                execution mode.
            shared_data_reader (bool): Whether all ranks walk one shared
                reader (True) or each rank reads from a private one (False).

        Raises:
            ConfigurationError: If `num_parallel_readers` is not positive,
                `shared_data_reader` is not a bool, or no readers are given.
        """
        if num_parallel_readers < 1:
            raise ConfigurationError(
                f"must be positive, got {num_parallel_readers}", source="num_parallel_readers"
            )
        if not isinstance(shared_data_reader, bool):
            raise ConfigurationError("must be set explicitly to True or False", source="shared_data_reader")
        if not data_readers:
            raise ConfigurationError("an I/O buffer needs at least one data reader")

        self.comm = comm
        self.requested_readers = num_parallel_readers
        self.num_parallel_readers = min(num_parallel_readers, comm.get_procs_per_model())
        if self.num_parallel_readers != num_parallel_readers:
            logger.info("Clamped num_parallel_readers from %d to %d processes per model",
                        num_parallel_readers, self.num_parallel_readers)
        self.shared_data_reader = shared_data_reader
        self.data_readers: Dict[ExecutionMode, DataReader] = dict(data_readers)

        self.fetch_data_fn: Optional[FetchDataFunctor] = None
        self.update_data_reader_fn: Optional[UpdateDataReaderFunctor] = None

        self._global_mini_batch: Dict[ExecutionMode, int] = {}
        self._local_mini_batch: Dict[ExecutionMode, int] = {}

    @property
    def reader_rank(self) -> int:
        return self.comm.rank_in_model

    def is_active_reader(self) -> bool:
        """Whether this rank receives data."""
        return self.reader_rank < self.num_parallel_readers

    def get_data_reader(self, mode: ExecutionMode) -> DataReader:
        """
        Raises:
            ConfigurationError: If no reader is bound to `mode`.
        """
        try:
            return self.data_readers[mode]
        except KeyError:
            raise ConfigurationError(f"no data reader for execution mode {mode.value!r}") from None

    def has_data_reader(self, mode: ExecutionMode) -> bool:
        return mode in self.data_readers

    def current_mini_batch_size(self, mode: ExecutionMode, mini_batch_size: int) -> int:
        """
        Size of the global minibatch of the next step.

        Equal to `mini_batch_size` except for the short final minibatch of
        an epoch. With per-rank readers, the private readers are assumed to
        hold equally sized shards of the data set.
        """
        reader = self.get_data_reader(mode)
        if self.shared_data_reader:
            return min(mini_batch_size, reader.remaining)
        return min(mini_batch_size, reader.remaining * self.num_parallel_readers)

    def fetch_to_local_matrix(self, matrix: DistMatrix, mode: ExecutionMode, mini_batch_size: int) -> int:
        """
        Fills this rank's columns of `matrix` with the next minibatch.

        The matrix's global width is set to the current minibatch size. Its
        columns are either partitioned like the readers, in which case the
        reader shard is written in place, or over every rank of the model,
        in which case the reader shards are redistributed.

        Returns:
            int: Number of samples fetched by this rank (0 for inactive ranks).

        Raises:
            ConfigurationError: If no fetch strategy is configured, the
                fetched shard does not match the matrix height, or per-rank
                readers must be redistributed without a process group.
        """
        if self.fetch_data_fn is None:
            raise ConfigurationError("I/O buffer has no fetch strategy")
        reader = self.get_data_reader(mode)

        global_size = self.current_mini_batch_size(mode, mini_batch_size)
        matrix.resize_width(global_size)
        self._global_mini_batch[mode] = global_size

        start, stop = local_partition(global_size, self.num_parallel_readers, self.reader_rank)
        count = stop - start
        if self.shared_data_reader:
            offset = start
        else:
            offset = 0
            count = min(count, reader.remaining)
        self._local_mini_batch[mode] = count

        if matrix.num_partitions == self.num_parallel_readers:
            matrix.local[:, count:].zero_()
            if count:
                matrix.local[:, :count].copy_(self._fetch(reader, offset, count, matrix.height))
            return count

        lo, hi = matrix.col_range
        group = self.comm.model_group()
        if group is not None:
            shard = self._fetch(reader, offset, count, matrix.height) if count else None
            columns = self._gather_reader_shards(shard, matrix, global_size, group)
            matrix.local.copy_(columns[:, lo:hi])
        elif self.shared_data_reader:
            if hi > lo:
                matrix.local.copy_(self._fetch(reader, lo, hi - lo, matrix.height))
        else:
            raise ConfigurationError(
                "per-rank readers feeding more ranks than they partition need an initialized process group"
            )
        return count

    def _fetch(self, reader: DataReader, offset: int, count: int, height: int) -> torch.Tensor:
        shard = self.fetch_data_fn(reader, offset, count)
        if shard.shape[0] != height:
            raise ConfigurationError(
                f"reader produced {shard.shape[0]} rows for a matrix of height {height}"
            )
        return shard

    def _gather_reader_shards(
        self,
        shard: Optional[torch.Tensor],
        matrix: DistMatrix,
        global_size: int,
        group: dist.ProcessGroup,
    ) -> torch.Tensor:
        """All-gathers the reader shards and returns the whole minibatch."""
        ranges = partition_minibatch(global_size, self.num_parallel_readers)
        widest = max(stop - start for start, stop in ranges)
        padded = torch.zeros(matrix.height, widest, dtype=matrix.dtype)
        if shard is not None:
            padded[:, :shard.shape[1]].copy_(shard)
        gathered = [torch.empty_like(padded) for _ in range(self.comm.get_procs_per_model())]
        dist.all_gather(gathered, padded, group=group)
        return torch.cat([gathered[r][:, :stop - start] for r, (start, stop) in enumerate(ranges)], dim=1)

    def update_data_set(self, mode: ExecutionMode) -> bool:
        """
        Applies the update strategy after a step.

        Returns:
            bool: True if the epoch of the reader for `mode` is complete.
        """
        if self.update_data_reader_fn is None:
            raise ConfigurationError("I/O buffer has no update strategy")
        reader = self.get_data_reader(mode)
        global_size = self._global_mini_batch.get(mode, 0)
        if self.shared_data_reader:
            count = global_size
        elif self.is_active_reader():
            count = self._local_mini_batch.get(mode, 0)
        else:
            start, stop = local_partition(global_size, self.num_parallel_readers, 0)
            count = stop - start
        return self.update_data_reader_fn(reader, count)

    def is_data_set_processed(self, mode: ExecutionMode) -> bool:
        return self.get_data_reader(mode).is_data_set_processed()

    def num_samples_in_batch(self, mode: ExecutionMode) -> int:
        """Samples fetched by this rank in the last step."""
        return self._local_mini_batch.get(mode, 0)

    def copy(self) -> "PartitionedIOBuffer":
        """
        Copies the buffer and its strategies; readers stay shared.
        """
        other = copy.copy(self)
        other.data_readers = dict(self.data_readers)
        other.fetch_data_fn = copy.copy(self.fetch_data_fn)
        other.update_data_reader_fn = copy.copy(self.update_data_reader_fn)
        other._global_mini_batch = dict(self._global_mini_batch)
        other._local_mini_batch = dict(self._local_mini_batch)
        return other

    def __repr__(self) -> str:
        return (f"PartitionedIOBuffer(readers={self.num_parallel_readers}/{self.requested_readers}, "
                f"shared={self.shared_data_reader}, modes={[m.value for m in self.data_readers]})")
