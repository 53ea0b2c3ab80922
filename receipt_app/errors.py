# receipt_app/errors.py


class ReceiptAppError(Exception):
    """Base class for failures reported to the caller with a specific message."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(ReceiptAppError):
    status_code = 400


class InvalidImageError(InvalidRequestError):
    pass


class ImageTooLargeError(InvalidRequestError):
    pass


class QuotaExceededError(ReceiptAppError):
    status_code = 400


class ExtractionFormatError(ReceiptAppError):
    """The model answered, but not with JSON."""

    status_code = 400


class ReceiptShapeError(ExtractionFormatError):
    """The model answered with JSON that is not a receipt document."""


class UpstreamError(ReceiptAppError):
    """The extraction service (or the image host) could not be reached or failed."""

    status_code = 502


class UpstreamTimeoutError(UpstreamError):
    status_code = 504


class ReceiptNotFoundError(ReceiptAppError):
    status_code = 404
