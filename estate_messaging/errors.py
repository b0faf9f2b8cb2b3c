class MessagingError(Exception):
    """Base class for every error raised by the messaging core."""


class NotFound(MessagingError):
    pass


class NotAuthorized(MessagingError):
    pass


class InvalidMessage(MessagingError):
    pass


class UploadError(MessagingError):
    pass


class StoreUnavailable(MessagingError):
    """Transient backend failure. Never retried by the core."""


class DuplicateConversation(MessagingError):
    # Raised only inside ConversationRepository while resolving a create race.

    def __init__(self, pair_key: str, property_id) -> None:
        super().__init__(f"conversation already exists for {pair_key} / {property_id}")
        self.pair_key = pair_key
        self.property_id = property_id
