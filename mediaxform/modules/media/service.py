"""
Media Service

Upload, read, list and delete media objects with the cache usage policy:
- object reads go through obj:{owner}:{id} (deleted when the object is)
- list pages go through list:{owner}:v{generation}:page{p}:limit{l}
- every create/delete bumps the owner's generation
"""

from typing import List, Optional, Tuple

from mediaxform.core.cache import ICache
from mediaxform.core.config import settings
from mediaxform.core.exceptions import InvalidSpecError, NotFoundError
from mediaxform.core.logging import get_logger
from mediaxform.core.metrics import record_cache_lookup
from mediaxform.core.retry import with_retries
from mediaxform.core.storage import IStorage, build_original_key
from mediaxform.engines.transform.keys import list_key, object_key
from mediaxform.engines.transform.ledger import VersionLedger
from mediaxform.modules.media.models import MediaObject
from mediaxform.modules.media.repository import IMetadataStore
from mediaxform.modules.media.schemas import MediaObjectRead, MediaPage

logger = get_logger(__name__)


class MediaService:

    def __init__(
        self,
        metadata: IMetadataStore,
        storage: IStorage,
        cache: ICache,
        ledger: VersionLedger,
        cache_ttl: Optional[int] = None,
        max_page_limit: Optional[int] = None,
        max_upload_bytes: Optional[int] = None,
    ):
        self.metadata = metadata
        self.storage = storage
        self.cache = cache
        self.ledger = ledger
        self.cache_ttl = cache_ttl or settings.CACHE_TTL_SECONDS
        self.max_page_limit = max_page_limit or settings.LIST_PAGE_MAX_LIMIT
        self.max_upload_bytes = max_upload_bytes or settings.MAX_UPLOAD_SIZE_BYTES

    # =========================================================================
    # Writes
    # =========================================================================

    async def upload(
        self,
        owner_id: str,
        filename: str,
        mime_type: str,
        data: bytes,
    ) -> MediaObjectRead:
        """Store an original and record its metadata."""
        if not data:
            raise InvalidSpecError("File is required")
        if not mime_type or not mime_type.lower().startswith("image/"):
            raise InvalidSpecError("Only image uploads are accepted", details={"mime_type": mime_type})
        if len(data) > self.max_upload_bytes:
            raise InvalidSpecError(
                "File exceeds maximum upload size",
                details={"size_bytes": len(data), "max_bytes": self.max_upload_bytes}
            )

        mime_type = mime_type.lower()
        key = build_original_key(owner_id, mime_type)
        await with_retries(lambda: self.storage.put(key, data, mime_type), "blob_put")

        obj = MediaObject(
            owner_id=owner_id,
            storage_key=key,
            mime_type=mime_type,
            size_bytes=len(data),
            filename=filename or key.rsplit("/", 1)[-1],
        )
        try:
            obj = await with_retries(lambda: self.metadata.create(obj), "metadata_create")
        except Exception:
            # No metadata row points at the blob; remove it rather than orphan it
            await self.storage.delete(key)
            raise

        await self.ledger.bump(owner_id)
        logger.info("media_uploaded", owner_id=owner_id, object_id=obj.id, size=len(data))
        return MediaObjectRead.model_validate(obj)

    async def delete(self, owner_id: str, object_id: str) -> None:
        """Delete metadata, then the blob, then the cached read; bump the generation."""
        obj = await with_retries(
            lambda: self.metadata.delete_owned(owner_id, object_id),
            "metadata_delete"
        )
        if obj is None:
            raise NotFoundError()

        await with_retries(lambda: self.storage.delete(obj.storage_key), "blob_delete")
        await with_retries(lambda: self.cache.delete(object_key(owner_id, object_id)), "cache_delete")
        await self.ledger.bump(owner_id)
        logger.info("media_deleted", owner_id=owner_id, object_id=object_id)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_object(self, owner_id: str, object_id: str) -> MediaObjectRead:
        key = object_key(owner_id, object_id)
        cached = await with_retries(lambda: self.cache.get(key), "cache_get")
        if cached is not None:
            record_cache_lookup("obj", hit=True)
            return MediaObjectRead.model_validate_json(cached)
        record_cache_lookup("obj", hit=False)

        obj = await with_retries(lambda: self.metadata.get_owned(owner_id, object_id), "metadata_get")
        if obj is None:
            raise NotFoundError()

        result = MediaObjectRead.model_validate(obj)
        await with_retries(
            lambda: self.cache.set(key, result.model_dump_json(), self.cache_ttl),
            "cache_set"
        )
        return result

    async def list_objects(self, owner_id: str, page: int = 1, limit: int = 10) -> MediaPage:
        page = max(1, int(page))
        limit = max(1, min(int(limit), self.max_page_limit))
        skip = (page - 1) * limit

        generation = await self.ledger.current(owner_id)
        key = list_key(owner_id, generation, page, limit)
        cached = await with_retries(lambda: self.cache.get(key), "cache_get")
        if cached is not None:
            record_cache_lookup("list", hit=True)
            return MediaPage.model_validate_json(cached)
        record_cache_lookup("list", hit=False)

        rows = await with_retries(
            lambda: self.metadata.list_by_owner(owner_id, skip, limit),
            "metadata_list"
        )
        result = MediaPage(
            page=page,
            limit=limit,
            items=[MediaObjectRead.model_validate(row) for row in rows],
        )
        await with_retries(
            lambda: self.cache.set(key, result.model_dump_json(), self.cache_ttl),
            "cache_set"
        )
        return result

    async def list_derived(self, owner_id: str, object_id: str) -> List[MediaObjectRead]:
        """Children produced from an owned object by completed transforms."""
        await self.get_object(owner_id, object_id)
        rows = await with_retries(
            lambda: self.metadata.list_children(owner_id, object_id),
            "metadata_list_children"
        )
        return [MediaObjectRead.model_validate(row) for row in rows]

    async def get_content(self, owner_id: str, object_id: str) -> Tuple[bytes, str]:
        obj = await self.get_object(owner_id, object_id)
        data = await with_retries(lambda: self.storage.get(obj.storage_key), "blob_get")
        return data, obj.mime_type
