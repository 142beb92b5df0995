"""
Entrywise Activations

An activation is a strategy value, not a layer subclass: the pair of
elementwise functions `{f, f'}` plus the name used by the device activation
descriptor. `ActivationLayer` applies whichever strategy it is given.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

For an input `x` (the previous layer's activations) and the error signal
`dy` arriving from the next layer:

-   forward:  `y  = f(x)`
-   backward: `dx = dy * f'(x)`

`f'` is evaluated on the layer *input*, so it is the exact derivative of `f`
wherever `f` is differentiable. At a non-differentiable point a fixed
convention is used; for the rectifier the gradient at `x == 0` is 0.

===============================================================================
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional

import torch

from .base import Layer
from ..core.comm import Communicator
from ..core.device import ActivationDescriptor, DeviceManager
from ..core.errors import ConfigurationError


@dataclass(frozen=True)
class Activation:
    """
    An elementwise function and its derivative.

    Attributes:
        name (str): Short name, e.g. 'relu'.
        function (Callable): `f`, applied to a tensor.
        gradient (Callable): `f'`, applied to the same input tensor.
        descriptor_mode (str): Mode recorded in the device activation descriptor.
        coef (float): Extra parameter of the activation (leaky slope).
    """
    name: str
    function: Callable[[torch.Tensor], torch.Tensor]
    gradient: Callable[[torch.Tensor], torch.Tensor]
    descriptor_mode: str
    coef: float = 0.0


def _relu(x: torch.Tensor) -> torch.Tensor:
    return torch.where(x > 0, x, torch.zeros_like(x))


def _relu_gradient(x: torch.Tensor) -> torch.Tensor:
    return (x > 0).to(x.dtype)


def leaky_relu(slope: float = 0.01) -> Activation:
    """Leaky rectifier with the given negative slope."""
    return Activation(
        name='leaky_relu',
        function=lambda x: torch.where(x > 0, x, x * slope),
        gradient=lambda x: torch.where(x > 0, torch.ones_like(x), torch.full_like(x, slope)),
        descriptor_mode='leaky_relu',
        coef=slope,
    )


def _sigmoid_gradient(x: torch.Tensor) -> torch.Tensor:
    s = torch.sigmoid(x)
    return s * (1 - s)


def _tanh_gradient(x: torch.Tensor) -> torch.Tensor:
    t = torch.tanh(x)
    return 1 - t * t


RELU = Activation('relu', _relu, _relu_gradient, descriptor_mode='relu')
SIGMOID = Activation('sigmoid', torch.sigmoid, _sigmoid_gradient, descriptor_mode='sigmoid')
TANH = Activation('tanh', torch.tanh, _tanh_gradient, descriptor_mode='tanh')
LEAKY_RELU = leaky_relu()

ACTIVATIONS: Dict[str, Activation] = {a.name: a for a in (RELU, SIGMOID, TANH, LEAKY_RELU)}


def get_activation(name: str) -> Activation:
    """
    Looks up a built-in activation by name.

    Raises:
        ConfigurationError: If the name is unknown.
    """
    try:
        return ACTIVATIONS[name.lower()]
    except KeyError:
        raise ConfigurationError(
            f"unknown activation {name!r}; expected one of {sorted(ACTIVATIONS)}"
        ) from None


class ActivationLayer(Layer):
    """
    Applies an entrywise activation to the previous layer's output.

    The output has the same dimensions as the input. A `num_neurons` given
    at construction is checked against the previous layer at setup.
    """

    def __init__(
        self,
        comm: Communicator,
        mini_batch_size: int,
        activation: Activation = RELU,
        num_neurons: Optional[int] = None,
        device_manager: Optional[DeviceManager] = None,
        use_gpus: Optional[bool] = None,
    ):
        super().__init__(comm, mini_batch_size, device_manager=device_manager, use_gpus=use_gpus)
        if isinstance(activation, str):
            activation = get_activation(activation)
        self.activation = activation
        self._expected_neurons = num_neurons

    def get_type(self) -> str:
        return self.activation.name

    def activation_descriptor(self) -> ActivationDescriptor:
        return ActivationDescriptor(mode=self.activation.descriptor_mode, coef=self.activation.coef)

    def setup_dims(self) -> None:
        prev = self.prev_layer
        if self._expected_neurons is not None and self._expected_neurons != prev.num_neurons:
            raise ConfigurationError(
                f"{self.get_name()} expects {self._expected_neurons} inputs but "
                f"{prev.get_name()} produces {prev.num_neurons}"
            )
        self.neuron_dims = list(prev.neuron_dims)
        self.num_neurons = prev.num_neurons

    def fp_compute_cpu(self) -> None:
        self.activations.local.copy_(self.activation.function(self.prev_activations.local))

    def bp_compute_cpu(self) -> None:
        gradient = self.activation.gradient(self.prev_activations.local)
        self.error_signal.local.copy_(self.prev_error_signal.local * gradient)

    def fp_compute_device(self, x: torch.Tensor, y: torch.Tensor) -> None:
        y.copy_(self.activation.function(x))

    def bp_compute_device(self, x: torch.Tensor, dy: torch.Tensor, dx: torch.Tensor) -> None:
        dx.copy_(dy * self.activation.gradient(x))


def relu_layer(comm: Communicator, mini_batch_size: int,
               device_manager: Optional[DeviceManager] = None) -> ActivationLayer:
    """Convenience constructor for a rectified-linear layer."""
    return ActivationLayer(comm, mini_batch_size, RELU, device_manager=device_manager)
