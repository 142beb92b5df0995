"""
Error Types for ShardNet

All failures raised by ShardNet components derive from `ShardNetError`.
The hierarchy mirrors the three failure classes the training stack knows
about:

-   **Configuration errors**: malformed or inconsistent command-line or file
    input, and dimension mismatches detected while a layer chain is set up.
-   **Unsupported-operation errors**: a GPU-only code path was requested on a
    process without CUDA support.
-   **Resource errors**: device or host allocation failures, and violations of
    device-buffer ownership (e.g., freeing a buffer twice).

Each error subclasses the matching builtin (`ValueError`, `RuntimeError`)
so callers that only know the builtins still catch them.
"""

from typing import Optional


class ShardNetError(Exception):
    """Base class for every error raised by ShardNet."""


class ConfigurationError(ShardNetError, ValueError):
    """
    Malformed or inconsistent configuration.

    Attributes:
        source (Optional[str]): The command-line flag or file the problem
            was found in, when one can be named.
    """

    def __init__(self, message: str, source: Optional[str] = None):
        self.message = message
        self.source = source
        super().__init__(message if source is None else f"{source}: {message}")


class PrototextParseError(ConfigurationError):
    """A prototext file could not be read or parsed."""


class UnsupportedOperationError(ShardNetError, RuntimeError):
    """A GPU-only operation was invoked without CUDA support."""


class ResourceError(ShardNetError, RuntimeError):
    """Allocation failure or device-buffer ownership violation."""
