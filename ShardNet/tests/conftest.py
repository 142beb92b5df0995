"""
Pytest Configuration and Fixtures.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

Most ShardNet components only need rank bookkeeping, not a live process
group, so tests build `Communicator`s for any (rank, world size) directly and
exercise several ranks of one model inside a single process.

-   **`comm` / `make_comm`**: a single-process communicator, and a factory
    for arbitrary ranks of larger worlds.
-   **`sim_devices`**: a `DeviceManager` over two simulated (CPU) devices,
    which drives the full GPU executor path without CUDA.
-   **`toy_reader`**: a small in-memory data reader with labels and
    regression responses.
-   **`distributed_env`**: initializes and destroys a real
    `torch.distributed` process group for tests marked with
    ``@pytest.mark.world_size(N)``.

===============================================================================
"""

import os
from typing import Callable, Generator, Optional

import pytest
import torch
import torch.distributed as dist

from ShardNet.core.comm import Communicator
from ShardNet.core.device import DeviceManager
from ShardNet.io.data_reader import ArrayDataReader


def is_distributed() -> bool:
    return dist.is_available() and dist.is_initialized()


@pytest.fixture(scope="function")
def distributed_env(request: pytest.FixtureRequest) -> Generator[None, None, None]:
    """
    Initializes and tears down the distributed environment for one test.

    Usage:
        @pytest.mark.world_size(2)
        def test_my_distributed_function(distributed_env):
            ...
    """
    marker = request.node.get_closest_marker("world_size")
    expected_world_size = marker.args[0] if marker else 1

    os.environ.setdefault('MASTER_ADDR', 'localhost')
    os.environ.setdefault('MASTER_PORT', '12355')
    os.environ.setdefault('RANK', '0')
    os.environ.setdefault('WORLD_SIZE', '1')

    current_rank = int(os.environ.get('RANK', '0'))
    current_world_size = int(os.environ.get('WORLD_SIZE', '1'))

    if current_world_size != expected_world_size:
        pytest.skip(f"Test requires world_size={expected_world_size}, but environment is WORLD_SIZE={current_world_size}")

    if not dist.is_initialized():
        dist.init_process_group(backend="gloo", rank=current_rank, world_size=current_world_size)

    yield

    if dist.is_initialized():
        dist.destroy_process_group()


@pytest.fixture
def comm() -> Communicator:
    """Communicator of a single-process job."""
    return Communicator(rank=0, world_size=1)


@pytest.fixture
def make_comm() -> Callable[..., Communicator]:
    """Factory for the communicator of any rank of a larger job."""
    def _make(rank: int = 0, world_size: int = 1, procs_per_model: Optional[int] = None) -> Communicator:
        return Communicator(procs_per_model=procs_per_model, rank=rank, world_size=world_size)
    return _make


@pytest.fixture
def sim_devices() -> DeviceManager:
    """Two simulated devices."""
    return DeviceManager([torch.device('cpu'), torch.device('cpu')])


@pytest.fixture
def toy_reader() -> ArrayDataReader:
    """
    Ten samples of four features. Sample `i` is filled with `i - 5`, its
    label is `i % 3` and its response is `2 * i`.
    """
    data = torch.arange(10, dtype=torch.float32).unsqueeze(1).repeat(1, 4) - 5
    labels = torch.arange(10) % 3
    responses = 2.0 * torch.arange(10, dtype=torch.float32)
    return ArrayDataReader(data, labels=labels, responses=responses, num_labels=3)
