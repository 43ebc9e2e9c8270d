"""Exception taxonomy for chainmark.

Routine re-anchor misses never raise: a bookmark that cannot be located
simply stays where it was. Exceptions are reserved for callers that need to
react, such as a user explicitly opening a bookmark whose file is gone.
"""


class ChainmarkError(Exception):
    """Base class for all chainmark errors."""


class DocumentNotFoundError(ChainmarkError):
    """A document could not be read (deleted, moved or unreadable)."""

    def __init__(self, document_id: str) -> None:
        self.document_id = document_id
        super().__init__(f"Document not found: {document_id!r}")


class StaleDocumentError(ChainmarkError):
    """The document changed while a re-anchor batch was being computed."""

    def __init__(self, document_id: str, expected: object, actual: object) -> None:
        self.document_id = document_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Document {document_id!r} changed during processing "
            f"(version {expected!r} -> {actual!r})"
        )


class InvalidChainError(ChainmarkError):
    """A search chain contains steps that cannot be executed."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("; ".join(errors))


class StateFileError(ChainmarkError):
    """The persisted state file is malformed."""
