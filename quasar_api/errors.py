from typing import Optional


class QuasarError(Exception):
    """Base class for every job lifecycle error."""


class DecodeError(QuasarError):
    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


class PathTraversalError(QuasarError):
    def __init__(self, name: str, root: str):
        super().__init__(f"derived filename {name!r} escapes sources root {root}")
        self.name = name
        self.root = root


class AlreadyExistsError(QuasarError):
    def __init__(self, job_id: str, status: Optional[str] = None):
        where = f" (in {status})" if status else ""
        super().__init__(f"job {job_id} already exists{where}")
        self.job_id = job_id
        self.status = status


class JobNotFoundError(QuasarError, KeyError):
    def __init__(self, job_id: str):
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id

    def __str__(self) -> str:
        return self.args[0]


class InvalidTransitionError(QuasarError):
    """The record is not where the caller thinks it is; retry with the current status."""

    def __init__(self, job_id: str, expected: str, actual: Optional[str]):
        super().__init__(f"job {job_id} is {actual}, not {expected}")
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class IllegalStatusEdgeError(QuasarError):
    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"transition {from_status} -> {to_status} is not permitted")
        self.from_status = from_status
        self.to_status = to_status


class CorruptStateError(QuasarError):
    def __init__(self, job_id: str, statuses, reason: Optional[str] = None):
        found = ", ".join(statuses)
        super().__init__(reason or f"job {job_id} found in more than one partition: {found}")
        self.job_id = job_id
        self.statuses = list(statuses)


class ArtifactMissingError(QuasarError):
    def __init__(self, job_id: str, expected_path: Optional[str]):
        super().__init__(f"artifact for job {job_id} not found: {expected_path}")
        self.job_id = job_id
        self.expected_path = expected_path


class WatchCancelledError(QuasarError):
    def __init__(self, job_id: str):
        super().__init__(f"wait on job {job_id} was cancelled")
        self.job_id = job_id
