"""
Data Readers

A data reader walks a data set one minibatch at a time. It keeps a cursor
(`position`) into an epoch-long ordering of sample indices; callers fetch a
window of records relative to the cursor and then `advance` it.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

-   **`DataReader`**: abstract base holding the cursor, the (optionally
    shuffled) epoch ordering and the column-major fetch helpers. Fetched
    shards are `features x samples`, matching the layout of a layer's
    `DistMatrix`.
-   **`ArrayDataReader`**: reader over in-memory tensors or arrays, with
    optional class labels (fetched one-hot) or regression responses. It can
    be loaded from `.npy` / `.pt` files.

Readers are not thread safe and are shared by reference between the input
and target layers of a model; only the input side advances the cursor.

===============================================================================
"""

import logging
import math
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import torch

from ..core.errors import ConfigurationError

logger = logging.getLogger(__name__)

ArrayLike = Union[torch.Tensor, np.ndarray]


class DataReader(ABC):
    """
    Abstract base class for all data readers.
    """

    def __init__(self, shuffle: bool = False, seed: int = 0):
        """
        Initializes the DataReader.

        Args:
            shuffle (bool): Reshuffle the sample order at every epoch.
            seed (int): Seed of the shuffling generator.
        """
        self.shuffle = shuffle
        self.position = 0
        self.epochs_completed = 0
        self._data_set_processed = False
        self._generator = torch.Generator().manual_seed(seed)
        self._indices: Optional[torch.Tensor] = None

    # ------------------------------------------------------------------
    # Data set description
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def num_samples(self) -> int:
        pass

    @abstractmethod
    def get_data_dims(self) -> List[int]:
        """Dimensions of one sample, e.g. `[1, 28, 28]`."""
        pass

    def get_linearized_data_size(self) -> int:
        return math.prod(self.get_data_dims())

    def get_num_labels(self) -> int:
        return 0

    def get_linearized_label_size(self) -> int:
        return self.get_num_labels()

    def get_linearized_response_size(self) -> int:
        return 0

    @property
    def remaining(self) -> int:
        """Records left in the current epoch."""
        return self.num_samples - self.position

    # ------------------------------------------------------------------
    # Record access
    # ------------------------------------------------------------------

    @abstractmethod
    def _fetch_samples(self, indices: torch.Tensor) -> torch.Tensor:
        """Returns samples `indices` as a `len(indices) x ...` tensor."""
        pass

    def _fetch_labels(self, indices: torch.Tensor) -> torch.Tensor:
        raise ConfigurationError(f"{type(self).__name__} provides no labels")

    def _fetch_responses(self, indices: torch.Tensor) -> torch.Tensor:
        raise ConfigurationError(f"{type(self).__name__} provides no responses")

    def _epoch_order(self) -> torch.Tensor:
        if self._indices is None:
            self._reorder()
        return self._indices

    def _reorder(self) -> None:
        if self.shuffle:
            self._indices = torch.randperm(self.num_samples, generator=self._generator)
        else:
            self._indices = torch.arange(self.num_samples)

    def _window(self, offset: int, count: int) -> torch.Tensor:
        start = self.position + offset
        if offset < 0 or count < 0 or start + count > self.num_samples:
            raise IndexError(
                f"window [{start}, {start + count}) outside data set of {self.num_samples} samples"
            )
        return self._epoch_order()[start:start + count]

    def fetch_data(self, offset: int, count: int) -> torch.Tensor:
        """
        Fetches `count` samples starting `offset` records after the cursor.

        Returns:
            torch.Tensor: `linearized_data_size x count` float tensor.
        """
        samples = self._fetch_samples(self._window(offset, count))
        return samples.reshape(count, -1).t().to(torch.float32)

    def fetch_labels(self, offset: int, count: int) -> torch.Tensor:
        """
        Fetches labels of the same window as `fetch_data`, one-hot encoded.

        Returns:
            torch.Tensor: `num_labels x count` float tensor.
        """
        labels = self._fetch_labels(self._window(offset, count)).long()
        num_labels = self.get_num_labels()
        if labels.numel() and (labels.min() < 0 or labels.max() >= num_labels):
            raise ConfigurationError(f"label outside [0, {num_labels})")
        one_hot = torch.zeros(num_labels, count)
        one_hot[labels, torch.arange(count)] = 1.0
        return one_hot

    def fetch_responses(self, offset: int, count: int) -> torch.Tensor:
        """
        Fetches regression targets of the same window as `fetch_data`.

        Returns:
            torch.Tensor: `response_size x count` float tensor.
        """
        responses = self._fetch_responses(self._window(offset, count))
        return responses.reshape(count, -1).t().to(torch.float32)

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    def advance(self, count: int) -> bool:
        """
        Moves the cursor forward by `count` records.

        Returns:
            bool: True if this completed the epoch; the cursor is then reset
            and, when shuffling, a new order is drawn.
        """
        self.position = min(self.position + count, self.num_samples)
        self._data_set_processed = self.position >= self.num_samples
        if self._data_set_processed:
            self.epochs_completed += 1
            self.reset()
        return self._data_set_processed

    def is_data_set_processed(self) -> bool:
        """Whether the last `advance` completed an epoch."""
        return self._data_set_processed

    def reset(self) -> None:
        self.position = 0
        if self.shuffle or self._indices is None:
            self._reorder()


class ArrayDataReader(DataReader):
    """
    Data reader over in-memory samples.
    """

    def __init__(
        self,
        data: ArrayLike,
        labels: Optional[ArrayLike] = None,
        responses: Optional[ArrayLike] = None,
        num_labels: Optional[int] = None,
        shuffle: bool = False,
        seed: int = 0,
    ):
        """
        Initializes the ArrayDataReader.

        Args:
            data (ArrayLike): Samples, first dimension indexes samples.
            labels (Optional[ArrayLike]): Integer class label per sample.
            responses (Optional[ArrayLike]): Regression target(s) per sample.
            num_labels (Optional[int]): Number of classes; inferred from the
                largest label when omitted.
            shuffle (bool): Reshuffle the sample order at every epoch.
            seed (int): Seed of the shuffling generator.

        Raises:
            ConfigurationError: If labels or responses do not match the data.
        """
        super().__init__(shuffle=shuffle, seed=seed)
        self.data = torch.as_tensor(data)
        if self.data.dim() < 1 or len(self.data) == 0:
            raise ConfigurationError("data reader needs at least one sample")
        if self.data.dim() == 1:
            self.data = self.data.unsqueeze(1)

        self.labels = None if labels is None else torch.as_tensor(labels).reshape(-1).long()
        self.responses = None if responses is None else torch.as_tensor(responses)

        if self.labels is not None and len(self.labels) != len(self.data):
            raise ConfigurationError(f"{len(self.labels)} labels for {len(self.data)} samples")
        if self.responses is not None and len(self.responses) != len(self.data):
            raise ConfigurationError(f"{len(self.responses)} responses for {len(self.data)} samples")

        if num_labels is None and self.labels is not None:
            num_labels = int(self.labels.max()) + 1
        self.num_labels = num_labels or 0

    @classmethod
    def from_file(cls, data_path: str, label_path: Optional[str] = None, **kwargs) -> "ArrayDataReader":
        """
        Loads samples (and optionally labels) from `.npy` or `.pt` files.

        Raises:
            FileNotFoundError: If a file does not exist.
            ConfigurationError: If a file has an unsupported extension.
        """
        data = _load_array(data_path)
        labels = _load_array(label_path) if label_path else None
        return cls(data, labels=labels, **kwargs)

    @property
    def num_samples(self) -> int:
        return len(self.data)

    def get_data_dims(self) -> List[int]:
        return list(self.data.shape[1:])

    def get_num_labels(self) -> int:
        return self.num_labels

    def get_linearized_response_size(self) -> int:
        if self.responses is None:
            return 0
        return math.prod(self.responses.shape[1:]) if self.responses.dim() > 1 else 1

    def _fetch_samples(self, indices: torch.Tensor) -> torch.Tensor:
        return self.data[indices]

    def _fetch_labels(self, indices: torch.Tensor) -> torch.Tensor:
        if self.labels is None:
            return super()._fetch_labels(indices)
        return self.labels[indices]

    def _fetch_responses(self, indices: torch.Tensor) -> torch.Tensor:
        if self.responses is None:
            return super()._fetch_responses(indices)
        return self.responses[indices]

    def __repr__(self) -> str:
        return (f"ArrayDataReader(samples={self.num_samples}, dims={self.get_data_dims()}, "
                f"labels={self.num_labels}, position={self.position})")


def _load_array(path: str) -> torch.Tensor:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Data file not found at: {path}")
    if path.suffix == '.npy':
        return torch.from_numpy(np.load(path))
    if path.suffix in ('.pt', '.pth'):
        return torch.load(path, map_location='cpu')
    raise ConfigurationError(f"unsupported data file type {path.suffix!r}", source=str(path))
