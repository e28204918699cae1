"""Exception hierarchy for the ingestion pipeline.

Per-file errors (capture, quota, upload, registration, dispatch) abort
only the submission of the file they name. Poll errors are recoverable
from the user's point of view: the document may still complete later.
Automation errors are logged by the coordinator and never surfaced.
"""


class PipelineError(Exception):
    """Base class for all ingestion pipeline failures."""

    def __init__(
        self,
        message: str,
        *,
        file_name: str | None = None,
        document_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.file_name = file_name
        self.document_id = document_id


class CaptureError(PipelineError):
    """A capture is unreadable, unsupported, or its fallback failed."""


class QuotaExceeded(PipelineError):
    """The license has no capacity left for the requested units."""


class QuotaCheckError(PipelineError):
    """The license store could not be consulted for capacity."""


class UploadError(PipelineError):
    """Writing a payload to durable storage failed."""


class RegistrationError(PipelineError):
    """Persisting the document record failed."""


class JobDispatchError(PipelineError):
    """Enqueueing the extraction job failed."""


class PollTimeout(PipelineError):
    """The interactive wait ran out of attempts before text appeared."""


class PollReadError(PipelineError):
    """Re-reading the document failed while waiting for completion."""


class AutomationTriggerError(PipelineError):
    """A batch-wide follow-on action (extraction, duplicates) failed."""


class InvalidTransition(ValueError):
    """A batch status change that the batch lifecycle does not allow."""
