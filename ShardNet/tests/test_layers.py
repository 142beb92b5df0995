"""
Tests for the Device Execution Path and Buffer Ownership.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

Device-resident layers run on a `DeviceManager`. Here the manager drives two
simulated (CPU) devices, so every step of the GPU executor is exercised:
descriptor creation, per-device buffer allocation, borrowing of device
buffers between adjacent device-resident layers, and teardown.

The central property is the ownership round trip: in a chain whose layers
alternate between host and device residency, setting up and tearing down
the chain must release every device allocation exactly once, which the
manager's ledger verifies (a double free raises `ResourceError`, a leak
shows up in `live_allocations`).

===============================================================================
"""

import pytest
import torch

from ShardNet.core import device as device_module
from ShardNet.core.device import (
    ActivationDescriptor,
    DescriptorPair,
    DeviceManager,
    TensorDescriptor,
    mini_batch_size_per_gpu,
)
from ShardNet.core.errors import ConfigurationError, ResourceError, UnsupportedOperationError
from ShardNet.core.types import ExecutionMode
from ShardNet.io.data_reader import ArrayDataReader
from ShardNet.layers.activations import ActivationLayer
from ShardNet.layers.chain import LayerChain
from ShardNet.layers.executors import BufferOwnership, CPUExecutor, GPUExecutor
from ShardNet.layers.io import InputLayer, TargetLayer


def build_chain(comm, data, residency, manager, mini_batch_size=4, num_parallel_readers=1):
    """
    Input -> one activation layer per `(name, on_device)` entry -> target.
    """
    readers = {ExecutionMode.TRAINING: ArrayDataReader(data, responses=data)}
    chain = LayerChain()
    inputs = InputLayer(comm, mini_batch_size, num_parallel_readers, readers, shared_data_reader=True)
    chain.add(inputs)
    layers = []
    for name, on_device in residency:
        layer = ActivationLayer(comm, mini_batch_size, name,
                                device_manager=manager if on_device else None,
                                use_gpus=on_device)
        chain.add(layer)
        layers.append(layer)
    chain.add(TargetLayer(comm, mini_batch_size, inputs, num_parallel_readers, readers, True,
                          for_regression=True))
    return chain, layers


ALTERNATING = [('relu', True), ('leaky_relu', True), ('sigmoid', False), ('tanh', True)]


def test_mini_batch_size_per_gpu():
    assert mini_batch_size_per_gpu(10, 1, 2) == 5
    assert mini_batch_size_per_gpu(10, 3, 2) == 2
    assert mini_batch_size_per_gpu(7, 2, 4) == 1


def test_tensor_descriptor_is_padded_and_packed():
    desc = TensorDescriptor.create([6], 3)
    assert desc.dims == [1, 1, 3, 6]
    assert desc.strides == [18, 18, 6, 1]
    assert desc.num_elements == 18
    assert TensorDescriptor.create([3, 4, 4], 2).dims == [2, 3, 4, 4]


def test_descriptor_pair_is_all_or_nothing():
    pair = DescriptorPair()
    assert not pair.initialized
    with pytest.raises(ValueError):
        pair.create(TensorDescriptor.create([2], 1), None)
    assert pair.tensor_desc is None and pair.activation_desc is None

    pair.create(TensorDescriptor.create([2], 1), ActivationDescriptor('relu'))
    assert pair.initialized
    pair.destroy()
    assert pair.tensor_desc is None and pair.activation_desc is None


def test_device_buffers_double_free(sim_devices):
    buffers = sim_devices.allocate_on_gpus(3, 2)
    assert len(buffers) == 2
    assert buffers[1].shape == (3, 2)
    assert sim_devices.live_allocations == 1

    sim_devices.deallocate_on_gpus(buffers)
    assert sim_devices.live_allocations == 0
    with pytest.raises(ResourceError):
        sim_devices.deallocate_on_gpus(buffers)
    with pytest.raises(ResourceError):
        buffers[0]


def test_foreign_buffer_is_rejected(sim_devices):
    other = DeviceManager([torch.device('cpu')])
    buffers = other.allocate_on_gpus(1, 1)
    with pytest.raises(ResourceError):
        sim_devices.deallocate_on_gpus(buffers)


def test_device_layer_matches_host_layer(comm, sim_devices):
    torch.manual_seed(0)
    data = torch.randn(8, 5)

    gpu_chain, (gpu_layer,) = build_chain(comm, data, [('relu', True)], sim_devices)
    cpu_chain, (cpu_layer,) = build_chain(comm, data, [('relu', False)], None)
    for chain in (gpu_chain, cpu_chain):
        chain.setup()
        chain.forward()
        chain.backward()

    assert isinstance(gpu_layer.executor, GPUExecutor)
    assert isinstance(cpu_layer.executor, CPUExecutor)
    assert gpu_layer.executor.mini_batch_size_per_gpu == 2
    assert torch.equal(gpu_layer.activations.local, cpu_layer.activations.local)
    assert torch.equal(gpu_layer.error_signal.local, cpu_layer.error_signal.local)


def test_alternating_residency_ownership(comm, sim_devices):
    chain, layers = build_chain(comm, torch.randn(8, 5), ALTERNATING, sim_devices)
    chain.setup()
    first, second, host, last = layers

    assert first.executor.input_ownership is BufferOwnership.OWNED_HERE
    assert first.executor.gradient_ownership is BufferOwnership.BORROWED_FROM_NEXT
    assert second.executor.input_ownership is BufferOwnership.BORROWED_FROM_PREV
    assert second.executor.gradient_ownership is BufferOwnership.OWNED_HERE
    assert isinstance(host.executor, CPUExecutor)
    assert last.executor.input_ownership is BufferOwnership.OWNED_HERE
    assert last.executor.gradient_ownership is BufferOwnership.OWNED_HERE

    # outputs of every device layer, plus the inputs each one owns
    assert sim_devices.live_allocations == 3 + 3 + 4

    chain.teardown()
    assert sim_devices.live_allocations == 0
    assert not first.executor.descriptors.initialized

    chain.teardown()
    assert sim_devices.live_allocations == 0


def test_alternating_residency_numerics(comm, sim_devices):
    torch.manual_seed(1)
    data = torch.randn(8, 5)
    mixed, mixed_layers = build_chain(comm, data, ALTERNATING, sim_devices)
    host, host_layers = build_chain(comm, data, [(name, False) for name, _ in ALTERNATING], None)

    for chain in (mixed, host):
        chain.setup()
        chain.forward()
        chain.backward()

    assert torch.allclose(mixed_layers[-1].activations.local, host_layers[-1].activations.local)
    assert torch.allclose(mixed_layers[0].error_signal.local, host_layers[0].error_signal.local)
    assert torch.allclose(mixed_layers[2].error_signal.local, host_layers[2].error_signal.local)
    mixed.teardown()
    assert sim_devices.live_allocations == 0


def test_device_state_unusable_after_teardown(comm, sim_devices):
    chain, (layer,) = build_chain(comm, torch.randn(8, 5), [('relu', True)], sim_devices)
    chain.setup()
    chain.teardown()
    with pytest.raises(ConfigurationError):
        layer.fp_compute_gpu()


def test_gpu_layer_without_cuda(comm, monkeypatch):
    monkeypatch.setattr(device_module, 'cuda_available', lambda: False)
    chain, _ = build_chain(comm, torch.randn(8, 5), [('relu', True)], None)
    with pytest.raises(ConfigurationError) as excinfo:
        chain.setup()
    assert isinstance(excinfo.value.__cause__, UnsupportedOperationError)


def test_device_manager_without_cuda(monkeypatch):
    monkeypatch.setattr(device_module, 'cuda_available', lambda: False)
    with pytest.raises(UnsupportedOperationError):
        DeviceManager()
    with pytest.raises(UnsupportedOperationError):
        DeviceManager([torch.device('cuda', 0)])


def test_short_final_minibatch_on_devices(comm, sim_devices):
    data = torch.arange(30, dtype=torch.float32).reshape(6, 5) - 10
    chain, (layer,) = build_chain(comm, data, [('relu', True)], sim_devices)
    chain.setup()
    inputs = chain[0]

    chain.forward()
    inputs.update()
    chain.forward()
    assert layer.activations.width == 2
    assert torch.equal(layer.activations.local, torch.relu(data[4:].t()))
    chain.teardown()


def test_setting_up_again_releases_device_state(comm, sim_devices):
    chain, layers = build_chain(comm, torch.randn(8, 5), ALTERNATING, sim_devices)
    chain.setup()
    allocated = sim_devices.live_allocations

    chain.setup()
    assert sim_devices.live_allocations == allocated
    chain.forward()
    chain.teardown()
    assert sim_devices.live_allocations == 0


def test_fewer_readers_than_processes(make_comm):
    # world of 4, two reading ranks, B = 8: every rank computes on 2 columns
    data = torch.arange(40, dtype=torch.float32).reshape(8, 5) - 20
    for rank in range(4):
        devices = DeviceManager([torch.device('cpu'), torch.device('cpu')])
        comm = make_comm(rank=rank, world_size=4)
        chain, (layer,) = build_chain(comm, data, [('relu', True)], devices,
                                      mini_batch_size=8, num_parallel_readers=2)
        chain.setup()

        assert chain[0].io_buffer.num_parallel_readers == 2
        assert layer.num_partitions == 4
        assert layer.executor.mini_batch_size_per_gpu == mini_batch_size_per_gpu(8, 4, 2) == 1

        chain.forward()
        columns = data[2 * rank:2 * rank + 2].t()
        assert torch.equal(chain[0].activations.local, columns)
        assert torch.equal(layer.activations.local, torch.relu(columns))
        assert torch.equal(chain[2].ground_truth.local, columns)
        chain.teardown()
        assert devices.live_allocations == 0
