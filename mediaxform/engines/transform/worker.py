"""
Transform Worker

Consumes one queue message at a time:

    Received -> FingerprintComputed -> CacheChecked
        -> CacheHit: done
        -> CacheMiss -> SourceLoaded -> PipelineApplied -> Persisted
           -> CacheWritten -> done

Delivery is at-least-once, so handling is idempotent: the transform-result
cache short-circuits repeats, and a repeat that misses the cache finds the
derived record by (parent_id, fingerprint) and reuses it. Nothing is written
to the metadata store until the full output buffer exists.
"""

from pathlib import PurePosixPath
from typing import Any, Dict, Optional, Tuple, Union

from mediaxform.core.cache import ICache
from mediaxform.core.config import settings
from mediaxform.core.exceptions import (
    TERMINAL_ERRORS,
    ConflictError,
    NotFoundError,
    PipelineFailureError,
    TransientIOError,
)
from mediaxform.core.logging import LogContext, get_logger, with_logging
from mediaxform.core.metrics import record_cache_lookup, record_transform_job
from mediaxform.core.retry import with_retries
from mediaxform.core.storage import IStorage, build_derived_key
from mediaxform.engines.transform.fingerprint import fingerprint
from mediaxform.engines.transform.keys import lease_key, transform_key
from mediaxform.engines.transform.ledger import VersionLedger
from mediaxform.engines.transform.schemas import TransformMessage, TransformSpec
from mediaxform.modules.media.models import MediaObject
from mediaxform.modules.media.repository import IMetadataStore
from mediaxform.modules.media.schemas import MediaObjectRead
from mediaxform.pipeline.engine import PipelineEngine, PipelineResult

logger = get_logger(__name__)


class TransformWorker:
    """Runs the transform state machine for queue messages."""

    def __init__(
        self,
        metadata: IMetadataStore,
        storage: IStorage,
        cache: ICache,
        ledger: VersionLedger,
        engine: PipelineEngine,
        cache_ttl: Optional[int] = None,
        lease_seconds: Optional[int] = None,
    ):
        self.metadata = metadata
        self.storage = storage
        self.cache = cache
        self.ledger = ledger
        self.engine = engine
        self.cache_ttl = cache_ttl or settings.CACHE_TTL_SECONDS
        self.lease_seconds = settings.TRANSFORM_LEASE_SECONDS if lease_seconds is None else lease_seconds

    async def handle(self, message: Union[TransformMessage, Dict[str, Any]]) -> None:
        """Process one message. Errors are logged and the message dropped."""
        with LogContext(message_id=_message_id(message), stage="received") as ctx:
            try:
                message = TransformMessage.parse(message)
                logger.info(
                    "transform_received",
                    owner_id=message.owner_id,
                    source_object_id=message.source_object_id
                )
                outcome = await self._process(message, ctx)
            except TERMINAL_ERRORS as e:
                record_transform_job(f"dropped_{type(e).__name__}")
                logger.warning(
                    "transform_dropped",
                    error=e.message,
                    error_type=type(e).__name__,
                    details=e.details
                )
                return
            except TransientIOError as e:
                record_transform_job("dropped_TransientIOError")
                logger.error(
                    "transform_dropped",
                    error=e.message,
                    error_type=type(e).__name__,
                    details=e.details
                )
                return
            except PipelineFailureError as e:
                record_transform_job("pipeline_failed")
                logger.error(
                    "transform_pipeline_failed",
                    error=e.message,
                    failed_stage=e.stage
                )
                return

            record_transform_job(outcome)
            ctx.set_stage("done")
            logger.info("transform_done", outcome=outcome)

    async def _process(self, message: TransformMessage, ctx: LogContext) -> str:
        spec = TransformSpec.parse(message.transform_spec)
        spec.ensure_supported_format()

        fp = fingerprint(message.source_object_id, spec)
        ctx.set_fingerprint(fp)
        ctx.set_stage("fingerprint_computed")

        result_key = transform_key(message.source_object_id, fp)
        cached = await with_retries(lambda: self.cache.get(result_key), "cache_get")
        ctx.set_stage("cache_checked")
        if cached is not None:
            record_cache_lookup("xform", hit=True)
            logger.info("transform_cache_hit")
            return "cache_hit"
        record_cache_lookup("xform", hit=False)

        if self.lease_seconds > 0:
            lease = lease_key(message.source_object_id, fp)
            acquired = await with_retries(
                lambda: self.cache.add(lease, message.message_id, self.lease_seconds),
                "lease_acquire"
            )
            if not acquired:
                logger.info("transform_lease_held")
                return "lease_held"
            try:
                return await self._transform(message, spec, fp, result_key, ctx)
            finally:
                await with_retries(lambda: self.cache.delete(lease), "lease_release")

        return await self._transform(message, spec, fp, result_key, ctx)

    async def _transform(
        self,
        message: TransformMessage,
        spec: TransformSpec,
        fp: str,
        result_key: str,
        ctx: LogContext,
    ) -> str:
        source = await with_retries(
            lambda: self.metadata.get_owned(message.owner_id, message.source_object_id),
            "metadata_get"
        )
        if source is None:
            raise NotFoundError("Source object no longer exists")

        derived = await with_retries(
            lambda: self.metadata.find_derived(source.id, fp),
            "metadata_find_derived"
        )
        if derived is not None:
            logger.info("transform_derived_reused", derived_id=derived.id)
            outcome = "reused"
        else:
            ctx.set_stage("source_loaded")
            data = await self._load_source(source)

            ctx.set_stage("pipeline_applied")
            result = await self._apply(data, source.mime_type, spec)

            ctx.set_stage("persisted")
            derived, created = await self._persist(source, fp, result)
            outcome = "completed" if created else "reused"

        await with_retries(
            lambda: self.cache.set(
                result_key,
                MediaObjectRead.model_validate(derived).model_dump_json(),
                self.cache_ttl
            ),
            "cache_set"
        )
        ctx.set_stage("cache_written")
        return outcome

    @with_logging("source_loaded")
    async def _load_source(self, source: MediaObject) -> bytes:
        return await with_retries(lambda: self.storage.get(source.storage_key), "blob_get")

    @with_logging("pipeline_applied")
    async def _apply(self, data: bytes, mime_type: str, spec: TransformSpec) -> PipelineResult:
        return await self.engine.apply(data, mime_type, spec)

    @with_logging("persisted")
    async def _persist(
        self,
        source: MediaObject,
        fp: str,
        result: PipelineResult,
    ) -> Tuple[MediaObject, bool]:
        """
        Store the output blob and its record. Returns (record, created).

        A concurrent worker that persisted the same fingerprint first wins;
        its row is returned and the blob, written under the same key with
        the same bytes, stays owned by that row.
        """
        key = build_derived_key(source.owner_id, fp, result.format)
        await with_retries(
            lambda: self.storage.put(key, result.data, result.mime_type),
            "blob_put"
        )

        stem = PurePosixPath(source.filename).stem or source.id
        derived = MediaObject(
            owner_id=source.owner_id,
            storage_key=key,
            mime_type=result.mime_type,
            size_bytes=result.size_bytes,
            filename=f"{stem}-transformed.{result.format}",
            parent_id=source.id,
            fingerprint=fp,
        )
        try:
            derived = await with_retries(lambda: self.metadata.create(derived), "metadata_create")
        except ConflictError:
            existing = await with_retries(
                lambda: self.metadata.find_derived(source.id, fp),
                "metadata_find_derived"
            )
            if existing is None:
                raise
            logger.info("transform_derived_reused", derived_id=existing.id, storage_key=key)
            return existing, False
        await self.ledger.bump(source.owner_id)

        logger.info(
            "transform_persisted",
            derived_id=derived.id,
            storage_key=key,
            size=result.size_bytes,
            width=result.width,
            height=result.height
        )
        return derived, True


def _message_id(message: Any) -> Optional[str]:
    if isinstance(message, TransformMessage):
        return message.message_id
    if isinstance(message, dict):
        value = message.get("message_id")
        return value if isinstance(value, str) else None
    return None
