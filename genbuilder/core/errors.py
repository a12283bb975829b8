"""Exception taxonomy for generation jobs and the preview runtime."""


class BuilderError(Exception):
    """Base class for errors raised by the orchestration core."""


class SpawnError(BuilderError):
    """The agent subprocess could not be started."""


class ProcessFailure(BuilderError):
    """The agent subprocess exited with a nonzero code."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class TransientPersistenceError(BuilderError):
    """A store failure expected to clear up once replication catches up."""


class RecordNotFoundError(TransientPersistenceError):
    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class BestEffortFailure(BuilderError):
    """A workspace preparation step failed; never changes a job's outcome."""


class PreviewFailure(BuilderError):
    """The preview dev server could not be started or died."""


class WorkspaceNotFoundError(BuilderError):
    pass


class JobAlreadyRunningError(BuilderError):
    pass
