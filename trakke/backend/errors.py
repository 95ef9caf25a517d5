"""Exception taxonomy for the offline store."""

from __future__ import annotations

from typing import Any, Optional


class TrakkeError(Exception):
    pass


class StoreError(TrakkeError):
    pass


class StorageUnavailable(StoreError):
    """The local database could not be opened."""


class SchemaMigrationFailed(StoreError):
    def __init__(self, version: int, cause: BaseException):
        super().__init__(f"Schema upgrade to v{version} failed: {cause}")
        self.version = version
        self.cause = cause


class InvalidArea(TrakkeError, ValueError):
    pass


class AreaTooLarge(TrakkeError):
    def __init__(self, tile_count: int, max_tiles: int):
        super().__init__(
            f"Area too large ({tile_count} tiles). Maximum allowed is {max_tiles} tiles; "
            "zoom in or pick a smaller area."
        )
        self.tile_count = tile_count
        self.max_tiles = max_tiles


class TileFetchFailed(TrakkeError):
    def __init__(self, key: str, reason: str):
        super().__init__(f"tile {key}: {reason}")
        self.key = key
        self.reason = reason


class DownloadCancelled(TrakkeError):
    def __init__(self, progress: Optional[Any] = None):
        super().__init__("Download cancelled")
        self.progress = progress


class InvalidEntity(TrakkeError, ValueError):
    pass


class EntityNotFound(TrakkeError, LookupError):
    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"{kind} not found: {entity_id}")
        self.kind = kind
        self.entity_id = entity_id


class ElevationUnavailable(TrakkeError):
    pass
