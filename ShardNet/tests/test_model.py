"""
Tests for SequentialModel and its Training Loop.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

A small autoencoder (input -> activation -> regression target that
reconstructs the input) is trained for a few epochs. The tests check the
step and epoch bookkeeping, the order in which callback hooks fire,
evaluation on the validation and test readers, and that a model running
its activations on (simulated) devices releases every device buffer at
teardown.

===============================================================================
"""

import pytest
import torch

from ShardNet.callbacks.base import Callback
from ShardNet.core import device as device_module
from ShardNet.core.config import TrainingConfig
from ShardNet.core.errors import ConfigurationError, UnsupportedOperationError
from ShardNet.core.types import ExecutionMode
from ShardNet.io.data_reader import ArrayDataReader
from ShardNet.layers.activations import ActivationLayer
from ShardNet.layers.io import InputLayer, TargetLayer
from ShardNet.models.model import SequentialModel


class RecordingCallback(Callback):
    def __init__(self):
        super().__init__(name="recording")
        self.events = []

    def _record(self, event):
        self.events.append(event)

    def on_train_begin(self, model):
        self._record('train_begin')

    def on_epoch_begin(self, model):
        self._record('epoch_begin')

    def on_batch_end(self, model):
        self._record('batch_end')

    def on_epoch_end(self, model):
        self._record('epoch_end')

    def on_validation_end(self, model):
        self._record('validation_end')

    def on_test_end(self, model):
        self._record('test_end')

    def on_phase_end(self, model):
        self._record(f'phase_end:{model.phase}')

    def on_train_end(self, model):
        self._record('train_end')


def autoencoder(comm, readers, config, callbacks=(), device_manager=None, activation='relu'):
    model = SequentialModel(comm, config, device_manager=device_manager, callbacks=callbacks)
    B = config.mini_batch_size
    inputs = model.add_layer(InputLayer(comm, B, config.num_parallel_readers, readers, shared_data_reader=True))
    model.add_activation(activation)
    model.add_layer(TargetLayer(comm, B, inputs, config.num_parallel_readers, readers, True, for_regression=True))
    return model


def make_readers(num_samples=10, features=4, modes=(ExecutionMode.TRAINING,)):
    readers = {}
    for i, mode in enumerate(modes):
        data = torch.randn(num_samples, features, generator=torch.Generator().manual_seed(i))
        readers[mode] = ArrayDataReader(data, responses=data)
    return readers


def test_training_bookkeeping_and_hooks(comm):
    recorder = RecordingCallback()
    config = TrainingConfig(mini_batch_size=4, num_epochs=2)
    model = autoencoder(comm, make_readers(), config, callbacks=[recorder])
    model.setup()
    history = model.train()

    assert model.step == 6
    assert model.epoch == 2
    assert model.phase == 1
    assert len(history['train']) == 2

    epoch = ['epoch_begin'] + ['batch_end'] * 3 + ['epoch_end']
    assert recorder.events == ['train_begin'] + epoch * 2 + ['phase_end:0', 'train_end']


def test_relu_autoencoder_objective(comm):
    readers = make_readers()
    data = readers[ExecutionMode.TRAINING].data
    model = autoencoder(comm, readers, TrainingConfig(mini_batch_size=10, num_epochs=1))
    model.setup()
    model.train()

    expected = (torch.relu(data) - data).pow(2).sum().item() / 10
    assert model.history['train'][0] == pytest.approx(expected, rel=1e-5)


def test_validation_after_every_epoch_and_test(comm):
    recorder = RecordingCallback()
    modes = (ExecutionMode.TRAINING, ExecutionMode.VALIDATION, ExecutionMode.TESTING)
    readers = make_readers(modes=modes)
    model = autoencoder(comm, readers, TrainingConfig(mini_batch_size=3, num_epochs=2), callbacks=[recorder])
    model.setup()
    model.train()

    assert recorder.events.count('validation_end') == 2
    assert len(model.history['validate']) == 2
    assert model.execution_mode is ExecutionMode.TRAINING

    objective = model.evaluate(ExecutionMode.TESTING)
    assert recorder.events[-1] == 'test_end'
    assert model.history['test'] == [objective]
    assert model.step == 8


def test_each_train_call_is_a_phase(comm):
    recorder = RecordingCallback()
    model = autoencoder(comm, make_readers(), TrainingConfig(mini_batch_size=5), callbacks=[recorder])
    model.setup()
    model.train()
    model.train()
    assert [e for e in recorder.events if e.startswith('phase_end')] == ['phase_end:0', 'phase_end:1']
    assert model.phase == 2


def test_setup_checks_chain_shape(comm):
    config = TrainingConfig(mini_batch_size=4)
    readers = make_readers()

    model = SequentialModel(comm, config)
    model.add_activation('relu')
    with pytest.raises(ConfigurationError):
        model.setup()

    model = SequentialModel(comm, config)
    inputs = model.add_layer(InputLayer(comm, 4, 1, readers, True))
    model.add_activation('relu')
    with pytest.raises(ConfigurationError):
        model.setup()

    model = SequentialModel(comm, config)
    model.add_layer(InputLayer(comm, 4, 1, readers, True))
    model.add_layer(TargetLayer(comm, 4, inputs, 1, readers, True, for_regression=True))
    with pytest.raises(ConfigurationError):
        model.setup()


def test_model_must_be_set_up(comm):
    model = autoencoder(comm, make_readers(), TrainingConfig(mini_batch_size=4))
    with pytest.raises(ConfigurationError):
        model.train()
    model.setup()
    with pytest.raises(ConfigurationError):
        model.add_layer(ActivationLayer(comm, 4))
    with pytest.raises(ConfigurationError):
        model.evaluate(ExecutionMode.TESTING)
    with pytest.raises(ConfigurationError):
        model.evaluate(ExecutionMode.TRAINING)


def test_device_model_releases_buffers(comm, sim_devices):
    config = TrainingConfig(mini_batch_size=4, num_epochs=1, use_gpus=True)
    readers = make_readers()
    model = autoencoder(comm, readers, config, device_manager=sim_devices)
    model.setup()
    assert model.layers[1].using_gpus
    assert sim_devices.live_allocations == 4

    model.train()
    host = autoencoder(comm, make_readers(), TrainingConfig(mini_batch_size=4, num_epochs=1))
    host.setup()
    host.train()
    assert model.history['train'] == pytest.approx(host.history['train'])

    model.teardown()
    assert sim_devices.live_allocations == 0


def test_gpu_run_without_cuda_is_a_configuration_error(comm, monkeypatch):
    monkeypatch.setattr(device_module, 'cuda_available', lambda: False)
    config = TrainingConfig(mini_batch_size=4, use_gpus=True)
    with pytest.raises(ConfigurationError) as excinfo:
        autoencoder(comm, make_readers(), config)
    assert isinstance(excinfo.value.__cause__, UnsupportedOperationError)
