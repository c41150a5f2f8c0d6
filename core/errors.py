"""
Dispatch error taxonomy.

Every error carries a stable ``code`` that doubles as the ``error_reason``
written onto a failed Message, so callers and the audit trail speak the
same vocabulary.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base exception for all dispatcher operations."""

    code: str = "dispatch_error"

    def __init__(self, message: str = "", code: str = ""):
        if code:
            self.code = code
        super().__init__(message or self.code)


class ValidationError(DispatchError):
    code = "validation_error"


class ConversationNotFound(DispatchError):
    code = "conversation_not_found"

    def __init__(self, conversation_id: str = ""):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ContactAddressMissing(DispatchError):
    code = "contact_address_missing"

    def __init__(self, conversation_id: str = ""):
        self.conversation_id = conversation_id
        super().__init__(f"No destination address for conversation {conversation_id}")


class ContactBlocked(DispatchError):
    code = "contact_blacklisted"

    def __init__(self, contact_id: str = ""):
        self.contact_id = contact_id
        super().__init__(f"Contact {contact_id} is blacklisted")


class RateLimited(DispatchError):
    code = "rate_limited"

    def __init__(self, scope_key: str = ""):
        self.scope_key = scope_key
        super().__init__(f"Rate limit exceeded for {scope_key}")


class ProviderSendFailed(DispatchError):
    """Wraps whatever the provider adapter raised. ``reason`` is the text stored on the Message."""

    code = "provider_send_failed"

    def __init__(self, reason: str, retryable: bool = False, cause: BaseException | None = None):
        self.reason = reason
        self.retryable = retryable
        self.cause = cause
        super().__init__(reason)


class MessageNotFound(DispatchError):
    code = "message_not_found"

    def __init__(self, message_id: str = ""):
        self.message_id = message_id
        super().__init__(f"Message not found: {message_id}")
