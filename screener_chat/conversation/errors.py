class ChatError(Exception):
    """Base for errors surfaced to API callers."""

    status_code = 400
    detail = "Request could not be processed"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class EmptyMessageError(ChatError):
    status_code = 422
    detail = "Message content is required"


class ConversationNotActiveError(ChatError):
    status_code = 409
    detail = "Conversation is not active"


class InvalidTransitionError(ChatError):
    status_code = 409
    detail = "Invalid conversation status transition"


class ProcessingError(ChatError):
    status_code = 503
    detail = "Failed to process message. Please try again."


class SequenceConflictError(ChatError):
    status_code = 503
    detail = "Could not record message, please try again."
