"""Exception types raised by the gateway building blocks.

Cache and storage components raise these; the orchestrator converts them into
result envelopes at its public boundary.
"""


class GatewayError(Exception):
    """Base class for all context gateway errors."""


class PreconditionError(GatewayError):
    """An operation was requested in a configuration that cannot serve it."""


class RollbackDataNotFoundError(GatewayError):
    """No persisted snapshot exists for the requested update."""

    def __init__(self, update_id: str):
        super().__init__(f"No rollback data found for update {update_id}")
        self.update_id = update_id


class QueueFullError(GatewayError):
    """The worker pool queue is at capacity."""


class ProcessorShutdownError(GatewayError):
    """Work was submitted to a worker pool that is shutting down."""


class AtomicOperationError(GatewayError):
    """A batch of file operations could not be applied."""
