"""
Error taxonomy of the exam engine.

Every error carries the HTTP status it maps to and a machine-readable ``code``;
``main.py`` renders them into the common error envelope. None of them is retried
by the engine itself.
"""
from typing import Any, Dict, Optional


class ExamEngineError(Exception):
    status_code = 400
    code = "exam_error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "type": self.code, "status_code": self.status_code, **self.details}


# ---------- authoring ----------

class ValidationError(ExamEngineError):
    """Template or exam definition breaks a structural rule."""
    status_code = 422
    code = "validation_error"


class SelectionError(ExamEngineError):
    """The question pool cannot satisfy a distribution bucket."""
    status_code = 422
    code = "selection_error"

    def __init__(self, bucket: str, shortfall: int, message: Optional[str] = None):
        super().__init__(
            message or f"Not enough questions for bucket '{bucket}' (short by {shortfall})",
            bucket=bucket, shortfall=shortfall,
        )
        self.bucket = bucket
        self.shortfall = shortfall


# ---------- starting an attempt ----------

class StartError(ExamEngineError):
    status_code = 409
    code = "start_error"


class AttemptLimitExceeded(StartError):
    code = "attempt_limit_exceeded"


class AttemptAlreadyInProgress(StartError):
    code = "attempt_already_in_progress"


class ExamNotAvailable(StartError):
    status_code = 403
    code = "exam_not_available"


class NotEnrolled(StartError):
    status_code = 403
    code = "not_enrolled"


# ---------- answering ----------

class AnswerError(ExamEngineError):
    status_code = 409
    code = "answer_error"


class AttemptNotActive(AnswerError):
    code = "attempt_not_active"


class AttemptExpired(AnswerError):
    code = "attempt_expired"


class AnswerRejected(AnswerError):
    status_code = 422
    code = "answer_rejected"


# ---------- lookups / access ----------

class NotFound(ExamEngineError):
    status_code = 404
    code = "not_found"


class Forbidden(ExamEngineError):
    status_code = 403
    code = "forbidden"
