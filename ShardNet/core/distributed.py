"""
Distributed Backend Initialization and Management.

Thin helpers over `torch.distributed`:
- Setting up distributed training (init_process_group)
- Rank / world-size queries that fall back to a single process when the
  backend is not initialized
- Cleanup and finalization
"""

import logging
import os
from datetime import timedelta
from typing import Optional

import torch
import torch.distributed as dist

logger = logging.getLogger(__name__)


def setup_distributed(
    backend: Optional[str] = None,
    init_method: Optional[str] = None,
    timeout_seconds: int = 1800
) -> None:
    """
    Initialize the distributed backend.

    Rank and world size are read from the ``RANK`` / ``WORLD_SIZE``
    environment variables set by launchers such as `torchrun`. Calling this
    on an already initialized process is a no-op.

    Args:
        backend (Optional[str]): Communication backend ('nccl' for GPU,
            'gloo' for CPU). Chosen from CUDA availability when omitted.
        init_method (Optional[str]): Initialization method (env://, tcp://,
            file://). Defaults to env://.
        timeout_seconds (int): Timeout for collective operations.
    """
    if not dist.is_available():
        logger.warning("torch.distributed is not available; running single-process")
        return
    if dist.is_initialized():
        return

    if backend is None:
        backend = 'nccl' if torch.cuda.is_available() else 'gloo'

    os.environ.setdefault('MASTER_ADDR', 'localhost')
    os.environ.setdefault('MASTER_PORT', '29500')

    dist.init_process_group(
        backend=backend,
        init_method=init_method or 'env://',
        rank=int(os.environ.get('RANK', 0)),
        world_size=int(os.environ.get('WORLD_SIZE', 1)),
        timeout=timedelta(seconds=timeout_seconds),
    )
    logger.info("Initialized %s process group (world size %d)", backend, dist.get_world_size())


def cleanup_distributed() -> None:
    """Destroy the default process group if one was created."""
    if dist.is_available() and dist.is_initialized():
        dist.destroy_process_group()


def is_initialized() -> bool:
    """Check whether the torch.distributed default group exists."""
    return dist.is_available() and dist.is_initialized()


def get_rank() -> int:
    """Get the rank of the current process."""
    if is_initialized():
        return dist.get_rank()
    return 0


def get_world_size() -> int:
    """Get the total number of processes."""
    if is_initialized():
        return dist.get_world_size()
    return 1


def is_main_process() -> bool:
    """Check if this is the main process (rank 0)."""
    return get_rank() == 0
