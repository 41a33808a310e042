from typing import Optional


class FarAuditError(Exception):
    """Base error for the audit pipeline."""


class ValidationError(FarAuditError):
    """Bad request shape, unsupported MIME type, oversized upload."""


class DuplicateDocumentError(ValidationError):
    DUPLICATE_EXACT = "DUPLICATE_EXACT"
    DUPLICATE_NAME = "DUPLICATE_NAME"

    def __init__(self, code: str, existing_document_id: Optional[str], filename: str):
        self.code = code
        self.existing_document_id = existing_document_id
        self.filename = filename
        if code == self.DUPLICATE_EXACT:
            msg = f"'{filename}' was already uploaded (identical content)"
        else:
            msg = f"A different file named '{filename}' already exists; pass duplicate_policy='replace' to overwrite it"
        super().__init__(msg)


class NotFoundError(FarAuditError):
    pass


class ConfigurationError(FarAuditError):
    """An external collaborator is not configured."""


class CollaboratorError(FarAuditError):
    """An external collaborator call failed (HTTP error, bad payload, timeout)."""
