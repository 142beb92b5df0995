"""
Tests for minibatch partitioning and the column-distributed matrix.
"""

import pytest
import torch

from ShardNet.core.matrix import DistMatrix
from ShardNet.core.partition import local_partition, partition_minibatch
from ShardNet.core.types import DataLayout


@pytest.mark.parametrize("mini_batch_size", [0, 1, 2, 3, 7, 10, 64, 100])
@pytest.mark.parametrize("num_partitions", [1, 2, 3, 4, 8])
def test_partitions_are_disjoint_contiguous_and_cover(mini_batch_size, num_partitions):
    ranges = partition_minibatch(mini_batch_size, num_partitions)

    assert len(ranges) == num_partitions
    assert ranges[0][0] == 0
    assert ranges[-1][1] == mini_batch_size
    for (_, stop), (start, _) in zip(ranges, ranges[1:]):
        assert stop == start
    sizes = [stop - start for start, stop in ranges]
    assert sum(sizes) == mini_batch_size
    assert max(sizes) - min(sizes) <= 1
    if mini_batch_size >= num_partitions:
        assert min(sizes) > 0


def test_first_partitions_take_the_remainder():
    assert partition_minibatch(10, 4) == [(0, 3), (3, 6), (6, 8), (8, 10)]
    assert partition_minibatch(2, 4) == [(0, 1), (1, 2), (2, 2), (2, 2)]


def test_inactive_partition_is_empty():
    assert local_partition(10, 3, 1) == (4, 7)
    assert local_partition(10, 3, 3) == (10, 10)


@pytest.mark.parametrize("args", [(10, 0), (10, -1), (-1, 2)])
def test_invalid_partitioning(args):
    with pytest.raises(ValueError):
        partition_minibatch(*args)


def test_dist_matrix_local_view_follows_width():
    matrix = DistMatrix(3, 10, num_partitions=3, partition_index=0)
    assert matrix.local.shape == (3, 4)
    assert matrix.col_range == (0, 4)

    matrix.resize_width(2)
    assert matrix.local.shape == (3, 1)

    matrix.local.fill_(1.0)
    matrix.resize_width(10)
    assert matrix.local[:, 0].tolist() == [1.0, 1.0, 1.0]
    assert matrix.local[:, 1:].abs().sum() == 0


def test_dist_matrix_capacity_and_copy():
    matrix = DistMatrix(2, 4)
    with pytest.raises(ValueError):
        matrix.resize_width(5)

    matrix.local.fill_(3.0)
    clone = matrix.copy()
    clone.local.zero_()
    assert torch.all(matrix.local == 3.0)
    assert clone.width == matrix.width
    assert clone.layout is DataLayout.DATA_PARALLEL
    assert list(DataLayout) == [DataLayout.DATA_PARALLEL]


def test_dist_matrix_inactive_rank_holds_no_columns():
    matrix = DistMatrix(5, 8, num_partitions=2, partition_index=3)
    assert matrix.local.shape == (5, 0)
