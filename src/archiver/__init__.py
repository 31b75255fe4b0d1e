"""archiver - reconcile an origin file tree with its copies by content hash."""

__version__ = "0.1.0"
