"""
Column-Distributed Matrix

Every activation and error-signal buffer in a layer chain is a `DistMatrix`:
rows are neurons, columns are the samples of the global minibatch. In the
data-parallel layout each rank stores only the contiguous block of columns
given to it by `partition_minibatch`; cross-rank communication is left to
the collective operations of the distributed backend.

The local shard is allocated once for the configured capacity (the full
minibatch size). `resize_width` then narrows the current global width, e.g.
for the short minibatch at the end of an epoch, and `local` returns the view
onto the columns that are currently valid.
"""

from typing import Tuple

import torch

from .partition import local_partition
from .types import DataLayout


class DistMatrix:
    """
    A matrix whose columns are sharded across the ranks of one model.
    """

    def __init__(
        self,
        height: int,
        width: int,
        num_partitions: int = 1,
        partition_index: int = 0,
        dtype: torch.dtype = torch.float32,
        layout: DataLayout = DataLayout.DATA_PARALLEL,
    ):
        """
        Initializes the DistMatrix.

        Args:
            height (int): Number of rows (neurons).
            width (int): Capacity in columns (the configured minibatch size).
            num_partitions (int): Number of ranks the columns are split over.
            partition_index (int): This rank's partition. Indices at or
                beyond `num_partitions` hold no columns.
            dtype (torch.dtype): Element type of the local shard.
            layout (DataLayout): Column distribution; always data-parallel.
        """
        if height < 0 or width < 0:
            raise ValueError(f"invalid matrix shape {height}x{width}")

        self.height = height
        self.capacity = width
        self.num_partitions = num_partitions
        self.partition_index = partition_index
        self.layout = layout

        start, stop = local_partition(width, num_partitions, partition_index)
        self._buffer = torch.zeros(height, stop - start, dtype=dtype)
        self.width = width

    @property
    def dtype(self) -> torch.dtype:
        return self._buffer.dtype

    @property
    def col_range(self) -> Tuple[int, int]:
        """Global column range currently held by this rank."""
        return local_partition(self.width, self.num_partitions, self.partition_index)

    @property
    def local_width(self) -> int:
        start, stop = self.col_range
        return stop - start

    @property
    def local(self) -> torch.Tensor:
        """View of the valid local columns (height x local_width)."""
        return self._buffer[:, :self.local_width]

    def resize_width(self, width: int) -> None:
        """
        Sets the current global width.

        Raises:
            ValueError: If `width` exceeds the allocated capacity.
        """
        if not 0 <= width <= self.capacity:
            raise ValueError(f"width {width} outside capacity {self.capacity}")
        self.width = width

    def zero_(self) -> "DistMatrix":
        self._buffer.zero_()
        return self

    def copy(self) -> "DistMatrix":
        """Deep copy; the new matrix owns its own storage."""
        other = DistMatrix.__new__(DistMatrix)
        other.__dict__.update(self.__dict__)
        other._buffer = self._buffer.clone()
        return other

    def __repr__(self) -> str:
        return (f"DistMatrix({self.height}x{self.width}, local={tuple(self.local.shape)}, "
                f"partition={self.partition_index}/{self.num_partitions})")
