"""
Error types for the enrichment pipeline.

Stage errors split into two families: transient ones are retried until
the item's attempt budget runs out, non-retryable ones fail the item on
first sight.
"""


class CatchrError(Exception):
    """Base error for Catchr."""


class QueueUnavailableError(CatchrError):
    """The job store could not accept or hand out work."""


class RunnerBusyError(CatchrError):
    """Another process already runs the workers for this database."""


class StageError(CatchrError):
    """Transient stage failure, retried up to the attempt budget."""


class TranscriptionError(StageError):
    """Speech-to-text call failed (network, provider error)."""


class ClassificationError(StageError):
    """Classifier call failed or returned something unparseable."""


class CalendarError(StageError):
    """Calendar provider returned an error."""


class NonRetryableError(CatchrError):
    """Permanent failure; the job is not redelivered."""


class AttemptsExhaustedError(NonRetryableError):
    """The status item has used up its attempt budget."""


class UnsupportedAudioError(NonRetryableError):
    """Audio could not be decoded or has an unsupported format."""


class EmptyContentError(NonRetryableError):
    """Nothing to process (empty text or empty transcript)."""


class ThoughtNotFoundError(NonRetryableError):
    """The thought referenced by a job does not exist."""


class InvalidPayloadError(NonRetryableError):
    """A job payload does not match its stage."""


class CalendarAuthorizationError(NonRetryableError):
    """Calendar credentials expired or were revoked; user must reconnect."""


def is_retryable(error: BaseException) -> bool:
    """Return whether a failed attempt should be retried."""
    return not isinstance(error, NonRetryableError)
