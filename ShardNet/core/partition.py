"""
Minibatch Partitioning

A global minibatch of `B` samples is split across `P` ranks as `P`
contiguous, disjoint column ranges. The first `B % P` ranges receive one
extra sample, so shard sizes differ by at most one and no shard is empty
unless `B < P`.

.. code-block:: text

    B = 10, P = 4  ->  [0, 3) [3, 6) [6, 8) [8, 10)
    B = 2,  P = 4  ->  [0, 1) [1, 2) [2, 2) [2, 2)
"""

from typing import List, Tuple


def partition_minibatch(mini_batch_size: int, num_partitions: int) -> List[Tuple[int, int]]:
    """
    Splits `[0, mini_batch_size)` into `num_partitions` contiguous ranges.

    Args:
        mini_batch_size (int): Number of samples in the global minibatch.
        num_partitions (int): Number of ranks sharing the minibatch.

    Returns:
        List[Tuple[int, int]]: Half-open `(start, stop)` range per partition.

    Raises:
        ValueError: If `num_partitions` is not positive or the minibatch
            size is negative.
    """
    if num_partitions < 1:
        raise ValueError(f"num_partitions must be positive, got {num_partitions}")
    if mini_batch_size < 0:
        raise ValueError(f"mini_batch_size must be non-negative, got {mini_batch_size}")

    base, extra = divmod(mini_batch_size, num_partitions)
    ranges = []
    start = 0
    for index in range(num_partitions):
        stop = start + base + (1 if index < extra else 0)
        ranges.append((start, stop))
        start = stop
    return ranges


def local_partition(mini_batch_size: int, num_partitions: int, index: int) -> Tuple[int, int]:
    """
    Returns the range assigned to one partition index.

    Indices at or beyond `num_partitions` are inactive and receive the empty
    range positioned at the end of the minibatch.
    """
    if index >= num_partitions:
        return (mini_batch_size, mini_batch_size)
    return partition_minibatch(mini_batch_size, num_partitions)[index]
