"""
Callback Base Class

A callback is a named side-effect handler invoked by `SequentialModel` at
fixed points of training. Callbacks read layer outputs by reference and
must not mutate model or layer state.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..models.model import SequentialModel


class Callback:
    """
    Base class with a no-op implementation of every hook.
    """

    def __init__(self, name: str = "callback"):
        self.name = name

    def get_name(self) -> str:
        return self.name

    def on_train_begin(self, model: "SequentialModel") -> None:
        pass

    def on_epoch_begin(self, model: "SequentialModel") -> None:
        pass

    def on_batch_end(self, model: "SequentialModel") -> None:
        pass

    def on_epoch_end(self, model: "SequentialModel") -> None:
        pass

    def on_validation_end(self, model: "SequentialModel") -> None:
        pass

    def on_test_end(self, model: "SequentialModel") -> None:
        pass

    def on_phase_end(self, model: "SequentialModel") -> None:
        pass

    def on_train_end(self, model: "SequentialModel") -> None:
        pass

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"
