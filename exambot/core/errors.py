"""
Error taxonomy shared by the state machines, the stores and the router.

Recoverable input errors (``MalformedBlock``, ``DuplicateExamName``) are turned
into replies to the sender.  Precondition failures (``EmptyQuestionSet``,
``EmptyExam``) abort the flow.  ``StoreUnavailable`` propagates to the caller so
that the push channel redelivers the triggering event.
"""


class ExamBotError(Exception):
    """Base class for all errors raised by exambot."""


class MalformedBlock(ExamBotError):
    """A bulk question block could not be parsed."""

    def __init__(self, reason: str, block: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.block = block


class DuplicateExamName(ExamBotError):
    def __init__(self, exam_id: str):
        super().__init__(f"exam '{exam_id}' already exists")
        self.exam_id = exam_id


class EmptyQuestionSet(ExamBotError):
    """Authoring was finished without a single accepted question."""


class ExamNotFound(ExamBotError):
    def __init__(self, exam_id: str):
        super().__init__(f"exam '{exam_id}' does not exist")
        self.exam_id = exam_id


class EmptyExam(ExamBotError):
    def __init__(self, exam_id: str):
        super().__init__(f"exam '{exam_id}' has no questions")
        self.exam_id = exam_id


class RetakeNotAllowed(ExamBotError):
    def __init__(self, exam_id: str):
        super().__init__(f"exam '{exam_id}' cannot be retaken")
        self.exam_id = exam_id


class StoreUnavailable(ExamBotError):
    """The session store or the catalog could not be reached."""


class UnsupportedEvent(ExamBotError):
    """An inbound event is not accepted in the session's current stage."""
