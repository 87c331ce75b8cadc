class DocbatchError(Exception):
    """Base error for all user-facing docbatch exceptions."""


class ConfigurationError(DocbatchError):
    """Raised when configuration is invalid or incomplete."""


class ValidationError(DocbatchError):
    """Raised when a control API call receives an invalid argument."""


class BatchNotFoundError(ValidationError):
    """Raised when a batch id is not resident in the batch store."""


class InvalidTransitionError(DocbatchError):
    """Raised when a file status change is not allowed by the state machine."""


class WorkerError(DocbatchError):
    """Raised when a background worker fails at transport or process level."""


class FileEncodingError(DocbatchError):
    """Raised when a staged file cannot be read or encoded for transfer."""


class ExtractionError(DocbatchError):
    """Raised when the configured extractor cannot be loaded or invoked."""
