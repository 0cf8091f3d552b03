"""Error taxonomy for the sync core.

Conflicts and exhausted retries are results, not errors, so they have no
exception here.
"""


class SyncError(Exception):
    """Base class for all sync core errors."""


class CoordinationStoreError(SyncError):
    """The coordination store could not be reached or rejected a command."""


class InvalidOperationError(SyncError):
    """A pending operation is malformed and can never be queued."""


class OperationExpiredError(InvalidOperationError):
    """The operation's ttl elapsed before it was enqueued."""


class DuplicateOperationError(InvalidOperationError):
    """The device already submitted an operation with this id."""


class UnsupportedStrategyError(SyncError):
    """The resolution strategy cannot be applied to this conflict."""


class QueueItemNotFoundError(SyncError):
    pass


class InvalidQueueStateError(SyncError):
    """The queue item is not in a state that allows the requested transition."""


class ConflictNotFoundError(SyncError):
    pass


class StaleMessageVersionError(SyncError):
    """The message changed after the state being written was read."""
