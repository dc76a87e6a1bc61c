"""Decide whether an object still needs metadata."""

from loguru import logger

from media_tagger.classify import sidecar_key
from media_tagger.errors import ExistenceCheckError, StorageError
from media_tagger.models import MediaObject, RunOptions
from media_tagger.store import ObjectStore


class ExistenceGate:
    """
    Skip objects whose metadata sidecar already exists.

    The sidecar is the only record of prior work, so the gate asks the store
    every time and keeps nothing between calls. With ``force_reprocess`` the
    store is not consulted at all.
    """

    def __init__(self, store: ObjectStore) -> None:
        self._store = store

    async def should_process(self, obj: MediaObject, options: RunOptions) -> bool:
        if options.force_reprocess:
            return True

        metadata_key = sidecar_key(obj.key)
        try:
            existing = await self._store.head(metadata_key)
        except StorageError as exc:
            raise ExistenceCheckError(obj.key, exc) from exc

        if existing is not None:
            logger.debug("metadata_already_exists", sidecar=metadata_key)
            return False
        return True
