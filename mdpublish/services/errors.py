"""Error taxonomy shared by the document, membership and publish services.

Every error carries the HTTP status it maps to at the API boundary. Messages
are written to be shown to the caller, except for ``PublishFailed`` whose
underlying cause is only logged.
"""

from __future__ import annotations


class PublishingError(Exception):
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    default_message = "Request failed"

    @property
    def message(self) -> str:
        return str(self)


class NotAuthorized(PublishingError):
    status_code = 403
    default_message = "Not authorized"


class NotFound(PublishingError):
    status_code = 404
    default_message = "Not found"


class InvalidParent(PublishingError):
    status_code = 400
    default_message = "Invalid parent document"


class CycleDetected(PublishingError):
    status_code = 409
    default_message = "A document cannot be moved into its own subtree"


class InvalidOperation(PublishingError):
    status_code = 400
    default_message = "Invalid operation"


class NothingToPublish(PublishingError):
    status_code = 400
    default_message = "No published documents found"


class Conflict(PublishingError):
    status_code = 409
    default_message = "Conflict"


class PublishFailed(PublishingError):
    status_code = 500
    default_message = "Failed to publish site"

    def __init__(self, message: str | None = None, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class PublishCancelled(PublishFailed):
    default_message = "Publish was cancelled"
