import operator
from typing import Any, Optional, Sequence, Tuple


class BlockOpError(Exception):
    """Base class of every error raised by torch_blockop."""


class ConfigurationError(BlockOpError, ValueError):
    """Bad grid shape, distribution arity or worker count."""


class OutOfRangeError(BlockOpError, IndexError):
    def __init__(self, index, grid_shape):
        self.index = index
        self.grid_shape = grid_shape
        super().__init__(f"block index {index} is outside grid {grid_shape}")

    def __reduce__(self):
        return (type(self), (self.index, self.grid_shape))


class ShapeMismatchError(BlockOpError, ValueError):
    def __init__(self, name, shape, expected_shape):
        self.name = name
        self.shape = shape
        self.expected_shape = expected_shape
        super().__init__(f"{name} has shape {shape} expected {expected_shape}")

    def __reduce__(self):
        return (type(self), (self.name, self.shape, self.expected_shape))


class InconsistentBlockSizeError(BlockOpError, ValueError):
    """Blocks of one block row (or column) disagree on their size."""


class UnsupportedOperationError(BlockOpError, NotImplementedError):
    """A contained operator cannot perform the requested operation."""


class WorkerLostError(BlockOpError, RuntimeError):
    def __init__(self, worker_id, reason: str = "worker is not alive"):
        self.worker_id = worker_id
        self.reason = reason
        super().__init__(f"{worker_id}: {reason}")

    def __reduce__(self):
        return (type(self), (self.worker_id, self.reason))


class NoWorkersAvailableError(BlockOpError, RuntimeError):
    """Every worker of a scheduling call was lost."""


class TaskError(BlockOpError, RuntimeError):
    """
    A scheduled task failed after exhausting its retry budget.

    The underlying failure is chained as ``__cause__``.
    """

    def __init__(self, task_id, worker_id, attempts: int, message: Optional[str] = None):
        self.task_id = task_id
        self.worker_id = worker_id
        self.attempts = attempts
        if message is None:
            message = f"task {task_id!r} failed on {worker_id} after {attempts} attempt(s)"
        super().__init__(message)

    def __reduce__(self):
        return (type(self), (self.task_id, self.worker_id, self.attempts, str(self)))


class RemoteError(BlockOpError, RuntimeError):
    """Stands in for a worker-side exception that could not be pickled, or a failed transfer."""

    def __init__(self, type_name: str, message: str, traceback: str = ""):
        self.type_name = type_name
        self.message = message
        self.traceback = traceback
        super().__init__(f"{type_name}: {message}")

    def __reduce__(self):
        return (type(self), (self.type_name, self.message, self.traceback))


def check_grid_shape(grid_shape: Sequence[int]) -> Tuple[int, int]:
    """
    Check a block-grid shape

    Parameters
    ----------
    grid_shape: Sequence[int]
        (rows, cols) number of blocks along each dimension

    Returns
    -------
    Tuple[int, int]
        the grid shape as a tuple of python ints
    """
    try:
        rows, cols = grid_shape
        # index() rejects floats such as 2.7 instead of truncating them
        if isinstance(rows, bool) or isinstance(cols, bool):
            raise TypeError
        rows, cols = operator.index(rows), operator.index(cols)
    except (TypeError, ValueError):
        raise ConfigurationError(f"grid shape must be two integers (rows, cols), got {grid_shape!r}") from None
    if rows < 1 or cols < 1:
        raise ConfigurationError(f"grid shape must be positive, got {grid_shape!r}")
    return rows, cols


def check_block_index(i: int, j: int, grid_shape: Tuple[int, int]):
    """
    Check that (i, j) addresses a block of the grid

    Parameters
    ----------
    i: int
        block row
    j: int
        block column
    grid_shape: Tuple[int, int]
        (rows, cols) of the grid
    """
    rows, cols = grid_shape
    if not (0 <= i < rows and 0 <= j < cols):
        raise OutOfRangeError((i, j), grid_shape)


def check_block_shape(name: str, value: Any, expected_shape: Tuple[int, ...]):
    """
    Check the shape of a value about to replace a block

    Parameters
    ----------
    name: str
        name used in the error message
    value: Any
        tensor or linear operator exposing ``shape``
    expected_shape: Tuple[int, ...]
        recorded shape of the block being replaced
    """
    shape = getattr(value, "shape", None)
    if shape is None:
        raise ShapeMismatchError(name, None, tuple(expected_shape))
    if tuple(shape) != tuple(expected_shape):
        raise ShapeMismatchError(name, tuple(shape), tuple(expected_shape))
