from typing import Optional


class AsarHookError(Exception):
    def __init__(
        self,
        message: str,
        *,
        path: Optional[str] = None,
        pattern: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.pattern = pattern


class ArchiveCorruptError(AsarHookError):
    pass


class NoEntryScriptError(AsarHookError):
    pass


class HashNotFoundError(AsarHookError):
    pass


class IntegrityMismatchError(AsarHookError):
    def __init__(self, stored_hash: str, current_hash: str, *, path: Optional[str] = None) -> None:
        super().__init__(
            f"Integrity mismatch: stored {stored_hash} vs computed {current_hash}",
            path=path,
        )
        self.stored_hash = stored_hash
        self.current_hash = current_hash


class HashLengthError(AsarHookError):
    pass


class PayloadEmptyError(AsarHookError):
    pass


class PayloadExistsError(AsarHookError):
    pass


class BackupMismatchError(AsarHookError):
    pass


class JobNotFoundError(AsarHookError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found or already retrieved: {job_id}")
        self.job_id = job_id


class JobTimedOutError(AsarHookError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job execution timed out: {job_id}")
        self.job_id = job_id


class JobExecutionError(AsarHookError):
    def __init__(self, message: str, *, stack: Optional[str] = None) -> None:
        super().__init__(message)
        self.stack = stack


class RegistryValidationError(AsarHookError):
    pass


class AgentRequestError(AsarHookError):
    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


__all__ = [
    "AsarHookError",
    "ArchiveCorruptError",
    "NoEntryScriptError",
    "HashNotFoundError",
    "IntegrityMismatchError",
    "HashLengthError",
    "PayloadEmptyError",
    "PayloadExistsError",
    "BackupMismatchError",
    "JobNotFoundError",
    "JobTimedOutError",
    "JobExecutionError",
    "RegistryValidationError",
    "AgentRequestError",
]
