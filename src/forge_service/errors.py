"""
Forge Service Errors

Domain exception hierarchy. Each error carries the HTTP status the API
layer should answer with, so endpoints never match on message strings.
"""
from typing import Optional


class ForgeServiceError(Exception):
    """Base for all domain exceptions."""

    def __init__(self, message: str = "An unexpected error occurred", *, status_code: int = 500):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class BadRequestError(ForgeServiceError):
    """Client sent an unusable request (400)."""

    def __init__(self, message: str = "Bad request"):
        super().__init__(message, status_code=400)


class NotFoundError(ForgeServiceError):
    """Resource not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class JobValidationError(BadRequestError):
    """A job submission broke an input rule. Never retried."""

    code = "InvalidInput"

    def __init__(self, message: str):
        super().__init__(message)


class TooManyFiles(JobValidationError):
    code = "TooManyFiles"


class FileTooLarge(JobValidationError):
    code = "FileTooLarge"


class TotalSizeExceeded(JobValidationError):
    code = "TotalSizeExceeded"


class InvalidPath(JobValidationError):
    code = "InvalidPath"


class UnsupportedChain(JobValidationError):
    """Chain id is not in the allow-listed endpoint table."""

    code = "UnsupportedChain"

    def __init__(self, chain_id: int):
        super().__init__(f"Unsupported chain ID: {chain_id}")
        self.chain_id = chain_id


class MethodNotAllowed(ForgeServiceError):
    """RPC method outside the read-only allowlist (405)."""

    code = "MethodNotAllowed"

    def __init__(self, method: str):
        super().__init__(f"RPC method not allowed: {method}", status_code=405)
        self.method = method


class RpcUpstreamError(ForgeServiceError):
    """Upstream RPC endpoint failed or returned a JSON-RPC error (502)."""

    def __init__(self, message: str, *, upstream_status: Optional[int] = None, rpc_error: Optional[dict] = None):
        super().__init__(message, status_code=502)
        self.upstream_status = upstream_status
        self.rpc_error = rpc_error


class QueueFullError(ForgeServiceError):
    """Job queue is at capacity (503)."""

    def __init__(self, message: str = "Job queue full. Try again later."):
        super().__init__(message, status_code=503)


class SandboxUnavailableError(ForgeServiceError):
    """
    The execution backend itself could not run the job.

    This is an operator problem, not a user-code failure. It is recorded into
    the job's result and never surfaced to the submitter synchronously.
    """

    def __init__(self, message: str = "Sandbox backend unavailable"):
        super().__init__(message, status_code=503)
