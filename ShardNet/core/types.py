"""Shared enums used across layers, readers and the training loop."""

from enum import Enum


class ExecutionMode(Enum):
    """
    Selects which data reader is active.

    Attributes:
        TRAINING (str): Minibatches come from the training reader.
        VALIDATION (str): Minibatches come from the validation reader.
        TESTING (str): Minibatches come from the test reader.
    """
    TRAINING = "train"
    VALIDATION = "validate"
    TESTING = "test"


class DataLayout(Enum):
    """Distribution of a matrix's columns across the ranks of a model."""
    DATA_PARALLEL = "data_parallel"
