class ArchiverError(Exception):
    """Base exception for archiver errors"""

    pass


class FileOperationError(ArchiverError):
    """Raised when a filesystem operation on a single file fails"""

    pass


class CacheError(ArchiverError):
    """Raised when the metadata cache cannot be written"""

    pass


class IndexCorruptionError(ArchiverError):
    """Raised when an event references a file or root the index does not know.

    The reconciler cannot continue safely after this, so it is never caught
    inside the session loop.
    """

    pass
