import asyncio
import os
import uuid
from collections.abc import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""

from gallery.db.base import Base
from gallery.models.image import Image, VariantStatus
from gallery.services.asset_status import AssetStatusStore
from gallery.services.media_errors import ObjectNotFound
from gallery.services.retry import RetryPolicy


async def _no_sleep(_delay: float) -> None:
    return None


def fast_policy(name: str = "test", *, max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(name=name, max_attempts=max_attempts, initial_delay=0.0, sleep=_no_sleep)


class MemoryObjectStore:
    """Dict-backed object store; ``fail_keys`` maps a key to the error raised on put."""

    def __init__(self, objects: dict[str, bytes] | None = None) -> None:
        self.objects: dict[str, bytes] = dict(objects or {})
        self.content_types: dict[str, str] = {}
        self.fail_keys: dict[str, Exception] = {}
        self.puts: list[str] = []

    async def get(self, key: str) -> bytes:
        await asyncio.sleep(0)
        try:
            return self.objects[key]
        except KeyError:
            raise ObjectNotFound(key) from None

    async def put(self, key: str, data: bytes, content_type: str) -> None:
        await asyncio.sleep(0)
        if key in self.fail_keys:
            raise self.fail_keys[key]
        self.objects[key] = data
        self.content_types[key] = content_type
        self.puts.append(key)

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)


class RecordingTransformer:
    """Fake transformer that tags its output and tracks how many calls overlap."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.calls: list[tuple[int | None, int]] = []
        self.fail_widths: set[int] = set()

    async def transform(
        self,
        data: bytes,
        *,
        target_width: int | None,
        mime_type: str,
        rotation_degrees: int = 0,
    ) -> bytes:
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            self.calls.append((target_width, rotation_degrees))
            await asyncio.sleep(self.delay)
            if target_width in self.fail_widths:
                raise RuntimeError(f"cannot render width {target_width}")
            tag = f"w={target_width};r={rotation_degrees}|".encode()
            return tag + data
        finally:
            self.active -= 1


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def session_factory(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gallery.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
def status_store(session_factory: async_sessionmaker[AsyncSession]) -> AssetStatusStore:
    return AssetStatusStore(session_factory, fast_policy("asset_status_store"))


async def create_image(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    key: str | None = None,
    mime_type: str = "image/jpeg",
    status: VariantStatus = VariantStatus.pending,
) -> Image:
    image_id = uuid.uuid4()
    image = Image(
        id=image_id,
        key=key or f"uploads/{image_id.hex}.jpg",
        filename="photo.jpg",
        mime_type=mime_type,
        variant_status=status,
    )
    async with session_factory() as session:
        session.add(image)
        await session.commit()
    return image
