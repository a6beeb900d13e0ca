"""
Error taxonomy for the clip worker.

Every error carries a ``status_code`` for the HTTP surface and a
``retryable`` flag the job loop uses to decide whether to back off and
try again or to give up on the job.
"""


class PipelineError(Exception):
    """Base class for all worker errors"""

    status_code = 500
    retryable = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(PipelineError):
    """Bad input: malformed URL, bad time range, invalid subtitle text"""

    status_code = 400


class NotFoundError(PipelineError):
    """A referenced entity does not exist"""

    status_code = 404

    def __init__(self, resource: str, resource_id: str):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} with id {resource_id} not found")


class ConflictError(PipelineError):
    """Operation not allowed in the current state, or the video is busy"""

    status_code = 409


class TransientExternalError(PipelineError):
    """An external collaborator (file host, object store, transcoder, AI) failed"""

    status_code = 502
    retryable = True

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service}: {message}")


class IntegrityError(PipelineError):
    """An invariant was found violated at a boundary"""

    status_code = 500
