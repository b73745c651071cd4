"""
Pipeline-level exceptions.

Errors that belong to a single service live next to it
(StorageError in services.storage, GenerationError in services.llm).
The ones here are raised by several components and decide whether a
chat turn may start at all.
"""


class ConfigurationError(Exception):
    """
    AI is disabled, or settings are incomplete (no key, no endpoint, no secret).

    Never retried - the user has to fix their settings.
    """
    pass


class ChatValidationError(Exception):
    """Rejected request: empty/oversized message or a conversation the caller does not own."""
    pass


class TurnInProgressError(Exception):
    """Another turn is still running on the same conversation."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(
            f"A reply is still being generated for conversation {conversation_id}"
        )
