from config.settings import StorageBackend, settings
from services.storage.base import PhotoStorage, StorageError, StoredFile


def get_storage() -> PhotoStorage:
    if settings.storage_backend == StorageBackend.S3:
        from services.storage.s3 import S3Storage

        return S3Storage()

    from services.storage.local import LocalStorage

    return LocalStorage()


__all__ = ["PhotoStorage", "StorageError", "StoredFile", "get_storage"]
