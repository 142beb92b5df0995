"""
Communicator for Multi-Model Data-Parallel Training

The `Communicator` describes where the current process sits in a job that
may train several independent models side by side. The world of `W`
processes is split into `W / procs_per_model` models; each model owns a
contiguous block of global ranks.

===============================================================================
CONCEPTUAL EXAMPLE:
===============================================================================

.. code-block:: text

    world_size = 6, procs_per_model = 3

    global rank   0  1  2 | 3  4  5
    model rank    0  0  0 | 1  1  1
    rank in model 0  1  2 | 0  1  2

Ranks 0 and 3 are the "model masters"; rank 0 is also the "world master",
the single coordinating process that reports configuration errors.

By default every value is read from `torch.distributed`; explicit `rank` and
`world_size` arguments describe a process without initializing a backend,
which is how layers and I/O buffers are exercised in unit tests.

===============================================================================
"""

from typing import Optional

import torch.distributed as dist

from .distributed import get_rank, get_world_size, is_initialized
from .errors import ConfigurationError


class Communicator:
    """
    Rank bookkeeping for the models trained by this job.
    """

    def __init__(
        self,
        procs_per_model: Optional[int] = None,
        rank: Optional[int] = None,
        world_size: Optional[int] = None,
    ):
        """
        Initializes the Communicator.

        Args:
            procs_per_model (Optional[int]): Number of processes per model.
                Defaults to the whole world (a single model).
            rank (Optional[int]): Global rank of this process. Read from
                `torch.distributed` when omitted.
            world_size (Optional[int]): Total number of processes. Read from
                `torch.distributed` when omitted.

        Raises:
            ConfigurationError: If the world cannot be split evenly into
                models, or the rank lies outside the world.
        """
        self.world_size = get_world_size() if world_size is None else world_size
        self.rank_in_world = get_rank() if rank is None else rank
        self.procs_per_model = self.world_size if procs_per_model in (None, 0) else procs_per_model

        if self.world_size < 1:
            raise ConfigurationError(f"world size must be positive, got {self.world_size}")
        if not 0 <= self.rank_in_world < self.world_size:
            raise ConfigurationError(
                f"rank {self.rank_in_world} outside world of size {self.world_size}"
            )
        if self.procs_per_model < 1 or self.world_size % self.procs_per_model != 0:
            raise ConfigurationError(
                f"procs_per_model={self.procs_per_model} does not evenly divide "
                f"world size {self.world_size}",
                source="procs_per_model",
            )

        self._model_group = None

    @property
    def num_models(self) -> int:
        return self.world_size // self.procs_per_model

    @property
    def model_rank(self) -> int:
        """Index of the model this process belongs to."""
        return self.rank_in_world // self.procs_per_model

    @property
    def rank_in_model(self) -> int:
        return self.rank_in_world % self.procs_per_model

    def get_procs_per_model(self) -> int:
        return self.procs_per_model

    def is_world_master(self) -> bool:
        return self.rank_in_world == 0

    def is_model_master(self) -> bool:
        return self.rank_in_model == 0

    def model_group(self) -> Optional[dist.ProcessGroup]:
        """
        Returns the process group spanning this process's model.

        Groups are created lazily, collectively for every model, the first
        time any rank asks. Returns None when no backend is initialized.
        """
        if not is_initialized():
            return None
        if self._model_group is None:
            for model in range(self.num_models):
                ranks = list(range(model * self.procs_per_model, (model + 1) * self.procs_per_model))
                group = dist.new_group(ranks)
                if model == self.model_rank:
                    self._model_group = group
        return self._model_group

    def __repr__(self) -> str:
        return (f"Communicator(rank={self.rank_in_world}, world_size={self.world_size}, "
                f"procs_per_model={self.procs_per_model})")
