class TutorError(Exception):
    """Base class for every error raised inside the tutor backend."""


class LessonNotFoundError(TutorError):
    def __init__(self, lesson_id: str):
        super().__init__(f"Lesson not found: {lesson_id}")
        self.lesson_id = lesson_id


class NegotiationError(TutorError):
    """
    The offer/answer exchange failed. Always retryable: the orchestrator stays
    in AwaitingSession and nothing is published.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class RenderError(TutorError):
    """The generation call failed or returned something other than a command list."""


class DispatchError(TutorError):
    """Unknown function name or malformed function-call arguments."""

    def __init__(self, message: str, name: str = "", call_id: str | None = None):
        super().__init__(message)
        self.name = name
        self.call_id = call_id


class ProtocolError(TutorError):
    """An inbound channel event could not be decoded."""

    def __init__(self, message: str, raw: object = None):
        super().__init__(message)
        self.raw = raw
