from __future__ import annotations


class CrmflowError(Exception):
    """Base class for errors raised by the automation and conversion core."""


class StoreError(CrmflowError):
    """The entity store rejected a request or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class EntityNotFoundError(CrmflowError):
    def __init__(self, resource: str, entity_id: str) -> None:
        self.resource = resource
        self.entity_id = entity_id
        super().__init__(f"{resource} {entity_id} not found")


class DocumentCreationError(CrmflowError):
    """Header or line rows of a document could not be written.

    A header may already exist with only ``lines_written`` of its lines when this is
    raised; the partial document is left in place.
    """

    def __init__(self, message: str, *, document_id: str | None = None, lines_written: int = 0) -> None:
        self.document_id = document_id
        self.lines_written = lines_written
        super().__init__(message)


class ConversionError(CrmflowError):
    def __init__(self, source: str, target: str, reason: str) -> None:
        self.source = source
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to create {target} from {source}: {reason}")


class DuplicateQuoteError(CrmflowError):
    def __init__(self, deal_id: str, quote_id: str) -> None:
        self.deal_id = deal_id
        self.quote_id = quote_id
        super().__init__(
            "This deal already has a quote. Open the existing quote or delete it before creating a new one."
        )
