class OrderNotFound(Exception):
    """Raised when an order id is not in the store."""


class PhotoNotFound(Exception):
    """Raised when a photo id is not attached to any order."""


class DuplicateOrder(Exception):
    """Raised when creating an order whose id already exists."""


class InvalidTransition(Exception):
    """Raised when a status change is not allowed from the current status."""


class StaleAttempt(Exception):
    """Raised when a status write comes from an attempt that no longer owns the order."""


class UploadError(Exception):
    """Raised by an upload backend; fatal to the photo being uploaded."""


class MirrorSyncError(Exception):
    """Raised when the secondary record system cannot be read or updated."""
