"""
Configuration Management for ShardNet

Two kinds of configuration drive a run:

-   The **prototext documents** (model, data reader, optimizer, data set
    metadata) describing what is trained; see `ShardNet.utils.prototext`.
-   A **run configuration** holding the process-level knobs: minibatch size,
    reader parallelism, processes per model, GPU use and logging. It can be
    read from a YAML file or taken from the `model` section of a prototext
    document.

===============================================================================
CONCEPTUAL EXAMPLE:
===============================================================================

.. code-block:: python

    # In run.yaml
    mini_batch_size: 64
    num_epochs: 5
    num_parallel_readers: 4
    use_gpus: false

    # In the main training script
    from ShardNet.core.config import load_config, TrainingConfig

    config = TrainingConfig.from_dict(load_config('run.yaml'))
    config.mini_batch_size  # 64

===============================================================================
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigurationError


@dataclass
class TrainingConfig:
    """
    Process-level settings for a training run.

    Attributes:
        mini_batch_size (int): Samples per global minibatch.
        num_epochs (int): Epochs run by `SequentialModel.train`.
        num_parallel_readers (int): Requested number of ranks that read
            data; clamped to `procs_per_model` by the I/O buffers.
        procs_per_model (int): Processes per model; 0 means the whole world.
        use_gpus (bool): Offload layer computation to the managed devices.
        num_gpus (Optional[int]): Devices per process; all visible when None.
        log_level (str): Name of the logging level.
        log_file (Optional[str]): Per-rank log file, may contain ``{rank}``.
    """
    mini_batch_size: int = 32
    num_epochs: int = 1
    num_parallel_readers: int = 1
    procs_per_model: int = 0
    use_gpus: bool = False
    num_gpus: Optional[int] = None
    log_level: str = 'INFO'
    log_file: Optional[str] = None

    def validate(self) -> "TrainingConfig":
        """
        Checks value ranges.

        Raises:
            ConfigurationError: On the first invalid field.
        """
        if self.mini_batch_size < 1:
            raise ConfigurationError(f"must be positive, got {self.mini_batch_size}", source="mini_batch_size")
        if self.num_epochs < 0:
            raise ConfigurationError(f"must be non-negative, got {self.num_epochs}", source="num_epochs")
        if self.num_parallel_readers < 1:
            raise ConfigurationError(
                f"must be positive, got {self.num_parallel_readers}", source="num_parallel_readers"
            )
        if self.procs_per_model < 0:
            raise ConfigurationError(f"must be non-negative, got {self.procs_per_model}", source="procs_per_model")
        if self.num_gpus is not None and self.num_gpus < 1:
            raise ConfigurationError(f"must be positive, got {self.num_gpus}", source="num_gpus")
        if not isinstance(logging.getLevelName(self.log_level.upper()), int):
            raise ConfigurationError(f"unknown logging level {self.log_level!r}", source="log_level")
        return self

    @property
    def log_level_value(self) -> int:
        return logging.getLevelName(self.log_level.upper())

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "TrainingConfig":
        """
        Builds a validated config from a mapping, e.g. a loaded YAML file.

        Raises:
            ConfigurationError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationError(f"unknown run configuration keys: {', '.join(unknown)}")
        return cls(**values).validate()

    @classmethod
    def from_prototext(cls, pb: Any, **overrides: Any) -> "TrainingConfig":
        """
        Builds a validated config from the `model` section of a `TrainerPB`.

        Fields left unset in the document keep their defaults; keyword
        overrides win over both.
        """
        model = pb.model
        values: Dict[str, Any] = {}
        for name in ('mini_batch_size', 'num_epochs', 'num_parallel_readers', 'procs_per_model'):
            if model.HasField(name):
                values[name] = getattr(model, name)
        if model.HasField('use_cudnn'):
            values['use_gpus'] = model.use_cudnn
        if model.HasField('num_gpus'):
            values['num_gpus'] = model.num_gpus
        values.update(overrides)
        return cls.from_dict(values)


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Loads a configuration from a specified YAML file path.

    Args:
        config_path (str): The path to the YAML configuration file.

    Returns:
        Dict[str, Any]: A dictionary containing the loaded configuration settings.

    Raises:
        FileNotFoundError: If the `config_path` does not exist.
        ConfigurationError: If the file is not valid YAML or not a mapping.
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found at: {config_path}")

    with open(config_path, 'r') as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"error parsing YAML file: {e}", source=config_path) from e

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigurationError("top level must be a mapping", source=config_path)
    return config
