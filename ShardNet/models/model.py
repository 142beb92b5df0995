"""
Sequential Model and Training Loop

`SequentialModel` assembles a `LayerChain` that starts with an `InputLayer`
and ends with a `TargetLayer`, and drives it through training, validation and
test passes while dispatching callback hooks.

===============================================================================
CONCEPTUAL EXAMPLE:
===============================================================================

.. code-block:: python

    comm = Communicator()
    config = TrainingConfig(mini_batch_size=16, num_epochs=2)
    readers = {ExecutionMode.TRAINING: ArrayDataReader(x, responses=x)}

    model = SequentialModel(comm, config, callbacks=[SaveImagesCallback('out')])
    inputs = model.add_layer(InputLayer(comm, 16, 2, readers, shared_data_reader=True))
    model.add_activation('relu')
    model.add_layer(TargetLayer(comm, 16, inputs, 2, readers, True, for_regression=True))
    model.setup()
    model.train()
    model.teardown()

One training step is a forward sweep, a backward sweep, and an update of
the input and target readers. The layer chain synchronizes every device
stream after each device-resident layer, so a layer never reads host buffers
that are still being written.

===============================================================================
"""

import logging
import math
from typing import Dict, Iterable, List, Optional, Union

import torch
import torch.distributed as dist
from tqdm import tqdm

from ..callbacks.base import Callback
from ..core.comm import Communicator
from ..core.config import TrainingConfig
from ..core.device import DeviceManager
from ..core.errors import ConfigurationError, UnsupportedOperationError
from ..core.types import ExecutionMode
from ..layers.activations import Activation, ActivationLayer
from ..layers.base import Layer
from ..layers.chain import LayerChain
from ..layers.io import InputLayer, IOLayer, TargetLayer
from ..utils.logging import log_rank_0

logger = logging.getLogger(__name__)


class SequentialModel:
    """
    A linear chain of layers trained minibatch by minibatch.

    Attributes:
        execution_mode (ExecutionMode): Mode of the pass in progress.
        epoch (int): Completed training epochs.
        step (int): Completed training steps.
        phase (int): Completed `train()` calls.
        history (Dict[str, List[float]]): Mean objective per epoch and mode.
    """

    def __init__(
        self,
        comm: Communicator,
        config: TrainingConfig,
        device_manager: Optional[DeviceManager] = None,
        callbacks: Iterable[Callback] = (),
    ):
        """
        Initializes the SequentialModel.

        Args:
            comm (Communicator): Rank bookkeeping of this process.
            config (TrainingConfig): Validated run configuration.
            device_manager (Optional[DeviceManager]): Devices shared by the
                layers created through `add_activation`. Created on first use
                when `config.use_gpus` is set.
            callbacks (Iterable[Callback]): Hooks invoked during training.
        """
        self.comm = comm
        self.config = config.validate()
        self.device_manager = device_manager
        self.callbacks: List[Callback] = list(callbacks)
        self.layers = LayerChain()

        self.execution_mode = ExecutionMode.TRAINING
        self.epoch = 0
        self.step = 0
        self.phase = 0
        self.last_objective: Optional[float] = None
        self.history: Dict[str, List[float]] = {mode.value: [] for mode in ExecutionMode}

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    def add_layer(self, layer: Layer) -> Layer:
        """
        Appends a layer to the chain.

        Returns:
            Layer: The layer, for chaining it into the next constructor.
        """
        if self.layers.is_setup:
            raise ConfigurationError("cannot add layers to a model that is already set up")
        self.layers.add(layer)
        return layer

    def add_activation(self, activation: Union[str, Activation], num_neurons: Optional[int] = None) -> ActivationLayer:
        """
        Appends an activation layer that runs where the run configuration says.
        """
        if self.config.use_gpus and self.device_manager is None:
            self.device_manager = self._create_device_manager()
        layer = ActivationLayer(
            self.comm,
            self.config.mini_batch_size,
            activation,
            num_neurons=num_neurons,
            device_manager=self.device_manager,
            use_gpus=self.config.use_gpus,
        )
        return self.add_layer(layer)

    def _create_device_manager(self) -> DeviceManager:
        devices = None
        if self.config.num_gpus is not None:
            devices = [torch.device('cuda', i) for i in range(self.config.num_gpus)]
        try:
            return DeviceManager(devices)
        except UnsupportedOperationError as exc:
            raise ConfigurationError(f"use_gpus is set but no device is usable: {exc}") from exc

    @property
    def input_layer(self) -> InputLayer:
        return self.layers[0]

    @property
    def target_layer(self) -> TargetLayer:
        return self.layers[len(self.layers) - 1]

    def setup(self) -> None:
        """
        Sets up every layer.

        Raises:
            ConfigurationError: If the chain does not start with an input
                layer and end with a target layer paired with it, or a layer
                rejects its neighbors.
        """
        if len(self.layers) < 2:
            raise ConfigurationError("a model needs at least an input and a target layer")
        if not isinstance(self.layers[0], InputLayer):
            raise ConfigurationError(f"first layer must be an input layer, got {self.layers[0].get_type()}")
        if not isinstance(self.target_layer, TargetLayer):
            raise ConfigurationError(f"last layer must be a target layer, got {self.target_layer.get_type()}")
        if self.target_layer.input_layer is not self.input_layer:
            raise ConfigurationError("target layer is paired with an input layer outside this model")

        self.layers.setup()
        log_rank_0(f"Model {self.comm.model_rank} set up:\n{self.layers.describe()}", logger=logger)

    def _check_setup(self) -> None:
        if not self.layers.is_setup:
            raise ConfigurationError("model used before setup")

    def set_execution_mode(self, mode: ExecutionMode) -> None:
        self.execution_mode = mode
        for layer in self.layers:
            if isinstance(layer, IOLayer):
                layer.set_execution_mode(mode)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def forward(self) -> None:
        self.layers.forward()

    def backward(self) -> None:
        self.layers.backward()

    def _objective(self) -> float:
        """
        Mean squared error of the last forward pass over the global minibatch.
        """
        target = self.target_layer
        error = target.prev_activations.local - target.ground_truth.local
        totals = torch.tensor([error.pow(2).sum().item(), float(error.shape[1])], dtype=torch.float64)
        group = self.comm.model_group()
        if group is not None:
            dist.all_reduce(totals, op=dist.ReduceOp.SUM, group=group)
        return totals[0].item() / max(totals[1].item(), 1.0)

    def _update_readers(self) -> bool:
        done = self.input_layer.update()
        self.target_layer.update()
        return done

    def train_mini_batch(self) -> bool:
        """
        Runs one training step.

        Returns:
            bool: True if the step completed the training epoch.
        """
        self._check_setup()
        self.forward()
        self.last_objective = self._objective()
        self.backward()
        self.step += 1
        return self._update_readers()

    def evaluate_mini_batch(self) -> bool:
        self._check_setup()
        self.forward()
        self.last_objective = self._objective()
        return self._update_readers()

    def _steps_per_epoch(self, mode: ExecutionMode) -> int:
        buffer = self.input_layer.io_buffer
        reader = buffer.get_data_reader(mode)
        total = reader.remaining if buffer.shared_data_reader else reader.remaining * buffer.num_parallel_readers
        return math.ceil(total / self.config.mini_batch_size)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def train(self, num_epochs: Optional[int] = None) -> Dict[str, List[float]]:
        """
        Trains for `num_epochs` epochs (the configured count by default),
        validating after every epoch when a validation reader is bound.

        Returns:
            Dict[str, List[float]]: The objective history.
        """
        self._check_setup()
        num_epochs = self.config.num_epochs if num_epochs is None else num_epochs
        has_validation = self.input_layer.io_buffer.has_data_reader(ExecutionMode.VALIDATION)

        self._dispatch('on_train_begin')
        for _ in range(num_epochs):
            self.set_execution_mode(ExecutionMode.TRAINING)
            self._dispatch('on_epoch_begin')

            total, steps = 0.0, 0
            pbar = tqdm(
                total=self._steps_per_epoch(ExecutionMode.TRAINING),
                desc=f"Training Epoch {self.epoch + 1}",
                disable=not self.comm.is_world_master(),
            )
            done = False
            while not done:
                done = self.train_mini_batch()
                total += self.last_objective
                steps += 1
                pbar.update(1)
                pbar.set_postfix({'objective': f"{self.last_objective:.4f}"})
                self._dispatch('on_batch_end')
            pbar.close()

            self.history[ExecutionMode.TRAINING.value].append(total / steps)
            self.epoch += 1
            self._dispatch('on_epoch_end')

            if has_validation:
                self.evaluate(ExecutionMode.VALIDATION)
            self.set_execution_mode(ExecutionMode.TRAINING)

        self._dispatch('on_phase_end')
        self.phase += 1
        self._dispatch('on_train_end')
        return self.history

    def evaluate(self, mode: ExecutionMode = ExecutionMode.TESTING) -> float:
        """
        Runs forward passes over one epoch of the reader bound to `mode`.

        Returns:
            float: Mean objective over the epoch.

        Raises:
            ConfigurationError: If `mode` is training or has no reader.
        """
        self._check_setup()
        if mode is ExecutionMode.TRAINING:
            raise ConfigurationError("evaluate() runs validation or test passes only")
        self.input_layer.io_buffer.get_data_reader(mode)

        previous = self.execution_mode
        self.set_execution_mode(mode)
        total, steps = 0.0, 0
        done = False
        while not done:
            done = self.evaluate_mini_batch()
            total += self.last_objective
            steps += 1
        objective = total / steps
        self.history[mode.value].append(objective)

        if mode is ExecutionMode.VALIDATION:
            self._dispatch('on_validation_end')
        else:
            self._dispatch('on_test_end')
        self.set_execution_mode(previous)
        return objective

    def _dispatch(self, hook: str) -> None:
        for callback in self.callbacks:
            getattr(callback, hook)(self)

    def teardown(self) -> None:
        """Releases the device resources of every layer."""
        self.layers.teardown()
