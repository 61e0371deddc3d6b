"""Exception hierarchy for the vector database"""


class VectorDbError(Exception):
    """Base class for all vector database errors"""

    pass


class SerializationError(VectorDbError):
    """Raised when a batch body or ledger cannot be encoded or decoded"""

    pass


class IntegrityError(VectorDbError):
    """Raised when stored data fails verification on load"""

    def __init__(self, message: str, file_id: str | None = None):
        self.message = message
        self.file_id = file_id
        super().__init__(message)


class ChecksumMismatch(IntegrityError):
    """Raised when a batch body does not match its header checksum"""

    def __init__(self, file_id: str, expected: str, found: str):
        self.expected = expected
        self.found = found
        super().__init__(
            f"Checksum mismatch in {file_id}: expected {expected[:12]}, found {found[:12]}",
            file_id=file_id,
        )


class CompressionError(IntegrityError):
    """Raised when compression or decompression fails"""

    pass


class VersionIncompatible(VectorDbError):
    """Raised when a batch file was written by an incompatible format version"""

    def __init__(self, expected: str, found: str, file_id: str | None = None):
        self.expected = expected
        self.found = found
        self.file_id = file_id
        super().__init__(f"Version compatibility error: expected {expected}, found {found}")


class StorageError(VectorDbError):
    """Raised on file system failures and lock contention"""

    def __init__(self, message: str, cause: Exception | None = None):
        self.message = message
        self.cause = cause
        super().__init__(message)


class NotFound(VectorDbError):
    """Raised when an entry id does not resolve to a live entry"""

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Embedding not found: {entry_id}")


class ValidationError(VectorDbError):
    """Raised when input fails validation before a write"""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class FeatureDisabledError(VectorDbError):
    """Raised when an optional component was not enabled in the configuration"""

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Feature is disabled in the storage configuration: {feature}")
