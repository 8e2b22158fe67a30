"""Exceptions raised by the sync engine."""


class SyncError(Exception):
    """Base exception for sync engine errors."""

    pass


class CheckpointError(SyncError):
    """Invalid checkpoint transition (e.g. offset moving backwards)."""

    pass


class CheckpointNotFoundError(CheckpointError):
    """Checkpoint id does not exist."""

    def __init__(self, checkpoint_id: int):
        self.checkpoint_id = checkpoint_id
        super().__init__(f"Sync checkpoint {checkpoint_id} not found")


class DataConflictError(SyncError):
    """An item conflicts with stored data and has to be skipped."""

    pass


class SyncAlreadyRunningError(SyncError):
    """A sync run is already active for this scope."""

    def __init__(self, run_id: int, status: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Sync run {run_id} is already active ({status})")


class BatchFailedError(SyncError):
    """A batch kept failing after all retries."""

    def __init__(self, entity_type: str, offset: int, message: str):
        self.entity_type = entity_type
        self.offset = offset
        super().__init__(f"{entity_type} batch at offset {offset} failed: {message}")


class SyncCancelledError(SyncError):
    """The run was cancelled between batches."""

    pass
