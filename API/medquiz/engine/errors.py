class QuizEngineError(Exception):
    """Base for errors the session engine raises toward its callers."""

    code = "quiz_error"
    status_code = 400

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or None


class NoContent(QuizEngineError):
    code = "no_content"
    status_code = 404


class InvalidTransition(QuizEngineError):
    code = "invalid_transition"
    status_code = 409


class IncompleteSelection(QuizEngineError):
    code = "incomplete_selection"
    status_code = 422


class UnknownOption(QuizEngineError):
    code = "unknown_option"
    status_code = 422


class NothingToRetry(QuizEngineError):
    code = "nothing_to_retry"
    status_code = 409


class SessionNotFound(QuizEngineError):
    code = "session_not_found"
    status_code = 404


class SealedRecordError(QuizEngineError):
    """A write targeted a record that is already completed."""

    code = "sealed_record"
    status_code = 409


class ActiveRecordConflict(QuizEngineError):
    """Insert collided with the one-active-record-per-learner-and-course index."""

    code = "active_record_conflict"
    status_code = 409
