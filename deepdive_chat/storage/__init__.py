from .filesystem import FilesystemStore

__all__ = ["FilesystemStore"]
