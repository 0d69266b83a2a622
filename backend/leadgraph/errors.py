"""
Engine Exceptions
=================

Custom exception types for the identity resolution and attribution engine.

WHY THIS FILE EXISTS
--------------------
The engine has distinct failure classes that callers handle differently:
- A conversion missing its identifying fields is rejected on its own
- A rolled-back merge / link / sync is safe to retry as-is

Identity conflicts, lock contention and unattributed conversions are NOT
errors: they are logged or returned as explicit results and never raised.

RELATED FILES
-------------
- leadgraph/services/conversion_ingestion.py: Raises ConversionValidationError
- leadgraph/services/contact_merger.py: Raises ContactMergeError
- leadgraph/services/session_linker.py: Raises SessionLinkError
- leadgraph/services/touchpoint_sync.py: Raises TouchpointSyncError
- leadgraph/routers/webhooks.py: Maps these to HTTP status codes
"""

from typing import List, Optional


class LeadgraphError(Exception):
    """
    Base exception for all engine errors.

    USAGE:
        try:
            process_contact_webhook(db, payload, locks)
        except LeadgraphError as e:
            return {"error": e.to_dict()}
    """

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "retryable": self.retryable,
        }


class ConversionValidationError(LeadgraphError):
    """
    A conversion event is missing a required identifying field.

    ATTRIBUTES:
        fields: Names of the missing fields

    RECOVERY:
        None - the event is rejected; other in-flight work is unaffected.
    """

    def __init__(self, fields: List[str], message: Optional[str] = None):
        self.fields = list(fields)
        super().__init__(message or f"Missing required fields: {', '.join(self.fields)}")

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["fields"] = self.fields
        return data


class TransactionError(LeadgraphError):
    """
    A multi-statement transaction failed and was fully rolled back.

    RECOVERY:
        Re-run the same operation; merges, links and syncs are idempotent.
    """

    retryable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ContactMergeError(TransactionError):
    """Contact unification (find/merge/migrate/delete) rolled back."""


class SessionLinkError(TransactionError):
    """Session linking under the identity lock rolled back."""


class TouchpointSyncError(TransactionError):
    """Ad touchpoint replacement rolled back; readers still see the old rows."""
