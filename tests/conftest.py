import io
from typing import AsyncGenerator, Callable, Dict, Optional

import httpx
import pytest
from httpx import AsyncClient, ASGITransport
from PIL import Image

from mediaxform.container import ServiceContainer, build_container
from mediaxform.core.cache import InMemoryCache
from mediaxform.core.config import settings
from mediaxform.core.database import build_engine, build_session_maker, create_db_and_tables
from mediaxform.core.exceptions import circuit_breakers
from mediaxform.core.storage import LocalStorage
from mediaxform.engines.transform.dispatcher import TransformDispatcher
from mediaxform.engines.transform.ledger import VersionLedger
from mediaxform.engines.transform.queue import InProcessTransformQueue
from mediaxform.engines.transform.worker import TransformWorker
from mediaxform.modules.media.repository import SqlMetadataStore
from mediaxform.modules.media.service import MediaService
from mediaxform.pipeline.engine import PipelineEngine
from mediaxform.pipeline.watermark import WatermarkFetcher


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_image_bytes(
    size=(64, 48),
    color=(200, 30, 30),
    fmt: str = "PNG",
    mode: str = "RGB",
) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_gradient_bytes(size=(96, 64), fmt: str = "PNG") -> bytes:
    width, height = size
    image = Image.new("RGB", size)
    image.putdata([
        ((x * 7) % 256, (y * 11) % 256, (x * y) % 256)
        for y in range(height)
        for x in range(width)
    ])
    buffer = io.BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def open_image(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def watermark_client(
    content: Optional[bytes] = None,
    status_code: int = 200,
    content_type: str = "image/png",
) -> httpx.AsyncClient:
    """httpx client whose every response is the given watermark."""
    body = make_image_bytes(size=(10, 10), color=(255, 0, 0)) if content is None else content

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, content=body, headers={"content-type": content_type})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "IO_RETRY_BASE_DELAY_SECONDS", 0.0)


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    for breaker in circuit_breakers.values():
        breaker.reset()
    yield
    for breaker in circuit_breakers.values():
        breaker.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> InMemoryCache:
    return InMemoryCache(clock=clock)


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(base_path=str(tmp_path / "blobs"))


@pytest.fixture
async def db_engine():
    engine = build_engine("sqlite+aiosqlite://")
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def metadata(db_engine) -> SqlMetadataStore:
    return SqlMetadataStore(build_session_maker(db_engine))


@pytest.fixture
def ledger(cache) -> VersionLedger:
    return VersionLedger(cache)


@pytest.fixture
def media_service(metadata, storage, cache, ledger) -> MediaService:
    return MediaService(metadata=metadata, storage=storage, cache=cache, ledger=ledger)


@pytest.fixture
def queue() -> InProcessTransformQueue:
    return InProcessTransformQueue()


@pytest.fixture
def dispatcher(media_service, queue) -> TransformDispatcher:
    return TransformDispatcher(media=media_service, queue=queue)


@pytest.fixture
def pipeline_engine() -> PipelineEngine:
    return PipelineEngine(watermark_fetcher=WatermarkFetcher(client=watermark_client()))


@pytest.fixture
def worker_factory(metadata, storage, cache, ledger, pipeline_engine) -> Callable[..., TransformWorker]:
    def factory(**overrides) -> TransformWorker:
        options: Dict = dict(
            metadata=metadata,
            storage=storage,
            cache=cache,
            ledger=ledger,
            engine=pipeline_engine,
            lease_seconds=0,
        )
        options.update(overrides)
        return TransformWorker(**options)
    return factory


@pytest.fixture
def worker(worker_factory) -> TransformWorker:
    return worker_factory()


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes()


@pytest.fixture
def image_bytes():
    return make_image_bytes


@pytest.fixture
def gradient_bytes():
    return make_gradient_bytes


@pytest.fixture
def decode():
    return open_image


@pytest.fixture
def watermark_http():
    return watermark_client


@pytest.fixture
async def container(tmp_path, clock) -> AsyncGenerator[ServiceContainer, None]:
    """Fully in-process wiring used by the end-to-end tests."""
    container = build_container(
        cache=InMemoryCache(clock=clock),
        storage=LocalStorage(base_path=str(tmp_path / "blobs")),
        queue=InProcessTransformQueue(),
        database_url="sqlite+aiosqlite://",
        pipeline=PipelineEngine(watermark_fetcher=WatermarkFetcher(client=watermark_client())),
    )
    await container.startup()
    yield container
    await container.db_engine.dispose()


@pytest.fixture
async def client(container) -> AsyncGenerator[AsyncClient, None]:
    from mediaxform.main import app

    app.state.container = container
    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    del app.state.container
