"""
Layer Chain

`LayerChain` is the arena that owns the layers of one model. Layers are
stored by position and refer to their neighbors only through it, so the
chain is linear and acyclic by construction and no layer ever holds a
pointer it might free twice.

The chain is also where the device synchronization contract is met: after a
device-resident layer has launched its kernels, every device stream is
synchronized before the next layer reads the host buffers.
"""

import logging
from typing import Iterator, List, Optional

from .base import Layer
from ..core.device import DeviceManager

logger = logging.getLogger(__name__)


class LayerChain:
    """
    Ordered, index-addressed collection of layers.
    """

    def __init__(self):
        self._layers: List[Layer] = []
        self._is_setup = False

    def add(self, layer: Layer) -> int:
        """
        Appends a layer and returns its index.

        Raises:
            ConfigurationError: If the layer already belongs to a chain.
        """
        index = len(self._layers)
        layer.attach(self, index)
        self._layers.append(layer)
        return index

    def __len__(self) -> int:
        return len(self._layers)

    def __getitem__(self, index: int) -> Layer:
        return self._layers[index]

    def __iter__(self) -> Iterator[Layer]:
        return iter(self._layers)

    def prev_of(self, index: int) -> Optional[Layer]:
        return self._layers[index - 1] if index > 0 else None

    def next_of(self, index: int) -> Optional[Layer]:
        return self._layers[index + 1] if index + 1 < len(self._layers) else None

    def setup(self) -> None:
        """Sets up every layer, first to last."""
        for layer in self._layers:
            layer.setup(self.prev_of(layer.index), self.next_of(layer.index))
        self._is_setup = True

    @property
    def is_setup(self) -> bool:
        return self._is_setup

    def device_managers(self) -> List[DeviceManager]:
        managers: List[DeviceManager] = []
        for layer in self._layers:
            manager = layer.device_manager
            if layer.using_gpus and manager is not None and all(manager is not m for m in managers):
                managers.append(manager)
        return managers

    def synchronize(self) -> None:
        """Waits for all device streams used by the chain."""
        for manager in self.device_managers():
            manager.synchronize()

    def forward(self) -> None:
        """Forward pass over every layer, first to last."""
        for layer in self._layers:
            layer.forward_prop()
            if layer.using_gpus:
                self.synchronize()

    def backward(self) -> None:
        """Backward pass over every layer, last to first."""
        for layer in reversed(self._layers):
            layer.back_prop()
            if layer.using_gpus:
                self.synchronize()

    def teardown(self) -> None:
        """Releases every layer's device resources."""
        for layer in self._layers:
            layer.teardown()
        self._is_setup = False

    def describe(self) -> str:
        return "\n".join(layer.describe() for layer in self._layers)
