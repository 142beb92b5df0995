"""
Tests for the input and target layers.
"""

import pytest
import torch

from ShardNet.core.errors import ConfigurationError
from ShardNet.core.types import ExecutionMode
from ShardNet.io.data_reader import ArrayDataReader
from ShardNet.layers.activations import ActivationLayer
from ShardNet.layers.chain import LayerChain
from ShardNet.layers.io import InputLayer, TargetLayer

TRAIN = ExecutionMode.TRAINING


def classifier_chain(comm, readers, mini_batch_size=4, num_parallel_readers=1):
    chain = LayerChain()
    inputs = InputLayer(comm, mini_batch_size, num_parallel_readers, readers, shared_data_reader=True)
    chain.add(inputs)
    chain.add(ActivationLayer(comm, mini_batch_size, 'sigmoid'))
    target = TargetLayer(comm, mini_batch_size, inputs, num_parallel_readers, readers, True)
    chain.add(target)
    return chain, inputs, target


@pytest.fixture
def three_feature_reader():
    data = torch.linspace(-1, 1, 24).reshape(8, 3)
    return ArrayDataReader(data, labels=torch.tensor([0, 1, 2, 1, 0, 2, 2, 1]), num_labels=3)


def test_classification_target(comm, three_feature_reader):
    chain, _, target = classifier_chain(comm, {TRAIN: three_feature_reader})
    chain.setup()
    chain.forward()

    truth = target.ground_truth.local
    assert truth.shape == (3, 4)
    assert truth.argmax(dim=0).tolist() == [0, 1, 2, 1]

    chain.backward()
    prediction = target.prev_activations.local
    assert torch.allclose(target.error_signal.local, prediction - truth)


def test_target_width_must_match_prediction(comm, toy_reader):
    # four input features, three labels
    chain, _, _ = classifier_chain(comm, {TRAIN: toy_reader})
    with pytest.raises(ConfigurationError):
        chain.setup()


def test_target_without_labels(comm):
    reader = ArrayDataReader(torch.zeros(4, 2))
    chain, _, _ = classifier_chain(comm, {TRAIN: reader})
    with pytest.raises(ConfigurationError):
        chain.setup()


def test_input_layer_needs_consistent_reader_dims(comm):
    readers = {
        TRAIN: ArrayDataReader(torch.zeros(4, 3), labels=torch.zeros(4), num_labels=3),
        ExecutionMode.TESTING: ArrayDataReader(torch.zeros(4, 5), labels=torch.zeros(4), num_labels=3),
    }
    chain, _, _ = classifier_chain(comm, readers)
    with pytest.raises(ConfigurationError):
        chain.setup()


def test_execution_mode_selects_reader(comm, three_feature_reader):
    test_reader = ArrayDataReader(torch.full((2, 3), 7.0), labels=torch.tensor([2, 2]), num_labels=3)
    readers = {TRAIN: three_feature_reader, ExecutionMode.TESTING: test_reader}
    chain, inputs, target = classifier_chain(comm, readers)
    chain.setup()

    for layer in (inputs, target):
        layer.set_execution_mode(ExecutionMode.TESTING)
    chain.forward()

    assert inputs.activations.width == 2
    assert torch.all(inputs.activations.local == 7.0)
    assert target.ground_truth.local.argmax(dim=0).tolist() == [2, 2]
    assert inputs.update() is True
    assert three_feature_reader.position == 0


def test_partitioned_input_layer(make_comm, three_feature_reader):
    readers = {TRAIN: three_feature_reader}
    comm = make_comm(rank=1, world_size=2)
    chain, inputs, target = classifier_chain(comm, readers, num_parallel_readers=4)
    chain.setup()

    assert inputs.num_partitions == 2
    assert target.num_partitions == 2
    chain.forward()
    assert inputs.activations.local.shape == (3, 2)
    assert torch.allclose(inputs.activations.local, three_feature_reader.data[2:4].t())


def test_copy_shares_readers_and_input_layer(comm, three_feature_reader):
    chain, inputs, target = classifier_chain(comm, {TRAIN: three_feature_reader})
    chain.setup()
    chain.forward()

    clone = target.copy()
    assert clone.input_layer is inputs
    assert clone.get_data_reader() is three_feature_reader
    assert clone.io_buffer is not target.io_buffer
    assert clone.io_buffer.fetch_data_fn is not target.io_buffer.fetch_data_fn

    clone.ground_truth.local.zero_()
    assert target.ground_truth.local.sum() == 4
    assert clone.index is None


def test_describe_reports_type_and_layout(comm, three_feature_reader):
    chain, inputs, target = classifier_chain(comm, {TRAIN: three_feature_reader})
    chain.setup()
    assert 'input:partitioned' in inputs.describe()
    assert 'target:partitioned' in target.describe()
    assert 'data_parallel' in target.describe()
    assert not target.is_for_regression()
