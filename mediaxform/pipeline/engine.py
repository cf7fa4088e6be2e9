"""
Pipeline Engine

apply(source_bytes, source_mime_type, spec) -> PipelineResult

Runs the fixed stage list over an immutable state. The first failing stage
short-circuits the rest and its error is raised; nothing is encoded or
returned for a partial run. Remote input (the watermark overlay) is fetched
before any pixel work so the CPU-bound part runs without suspending.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Optional, Union, Dict, Any

from mediaxform.core.config import settings
from mediaxform.core.logging import get_logger
from mediaxform.core.metrics import pipeline_latency_seconds, track_stage_latency
from mediaxform.core.retry import with_retries
from mediaxform.core.storage import extension_for_mime
from mediaxform.engines.transform.schemas import TransformSpec, normalize_format
from mediaxform.pipeline.stages import (
    STAGES,
    PipelineState,
    StageContext,
    decode_image,
    encode_image,
)
from mediaxform.pipeline.watermark import WatermarkFetcher

logger = get_logger(__name__)


@dataclass(frozen=True)
class PipelineResult:
    data: bytes
    format: str
    width: int
    height: int

    @property
    def mime_type(self) -> str:
        return f"image/{self.format}"

    @property
    def size_bytes(self) -> int:
        return len(self.data)


class PipelineEngine:
    """Applies a TransformSpec to an encoded source image."""

    def __init__(
        self,
        watermark_fetcher: Optional[WatermarkFetcher] = None,
        watermark_width_ratio: Optional[float] = None,
        stages=STAGES,
    ):
        self.watermark_fetcher = watermark_fetcher or WatermarkFetcher()
        self.watermark_width_ratio = watermark_width_ratio or settings.WATERMARK_WIDTH_RATIO
        self.stages = stages

    async def apply(
        self,
        source_bytes: bytes,
        source_mime_type: str,
        spec: Union[TransformSpec, Dict[str, Any]],
    ) -> PipelineResult:
        spec = TransformSpec.parse(spec)

        watermark_bytes = None
        if spec.watermark is not None:
            url = spec.watermark.url
            watermark_bytes = await with_retries(
                lambda: self.watermark_fetcher.fetch(url),
                "watermark_fetch"
            )

        context = StageContext(
            watermark_bytes=watermark_bytes,
            watermark_width_ratio=self.watermark_width_ratio,
        )
        return await asyncio.to_thread(self.run, source_bytes, source_mime_type, spec, context)

    def run(
        self,
        source_bytes: bytes,
        source_mime_type: str,
        spec: TransformSpec,
        context: StageContext,
    ) -> PipelineResult:
        """Synchronous, CPU-bound part of the pipeline."""
        with track_stage_latency("decode"):
            state: PipelineState = decode_image(
                source_bytes,
                normalize_format(extension_for_mime(source_mime_type)),
            )

        for stage_fn in self.stages:
            start = time.perf_counter()
            result = stage_fn(state, spec, context)
            pipeline_latency_seconds.labels(
                stage=result.stage,
                status="error" if result.failed else "success"
            ).observe(time.perf_counter() - start)

            if result.failed:
                logger.warning(
                    "pipeline_stage_failed",
                    pipeline_stage=result.stage,
                    error=result.error.message,
                    error_type=type(result.error).__name__
                )
                raise result.error
            state = result.state

        with track_stage_latency("encode"):
            data = encode_image(state)

        width, height = state.image.size
        logger.info(
            "pipeline_completed",
            output_format=state.format,
            output_size=len(data),
            width=width,
            height=height
        )
        return PipelineResult(data=data, format=state.format, width=width, height=height)
