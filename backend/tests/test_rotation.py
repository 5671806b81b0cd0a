import asyncio
import uuid

import pytest

from conftest import MemoryObjectStore, RecordingTransformer, create_image
from gallery.models.image import VariantStatus
from gallery.services.asset_status import AssetStatusStore
from gallery.services.media_errors import AlreadyInProgress, AssetNotFound, InvalidArgument, ObjectNotFound
from gallery.services.rotation import RepresentationOutcome, RotationCoordinator, validate_degrees
from gallery.services.rotation_lock import DatabaseRotationLock
from gallery.services.variant_keys import VariantDescriptor


def _coordinator(
    status_store: AssetStatusStore,
    store: MemoryObjectStore,
    transformer: RecordingTransformer,
    *,
    widths: dict[str, int] | None = None,
    require_settled_variants: bool = False,
) -> RotationCoordinator:
    return RotationCoordinator(
        store=store,
        status_store=status_store,
        transformer=transformer,
        variants=VariantDescriptor(widths or {"small": 300, "medium": 800, "large": 1600}),
        lock=DatabaseRotationLock(status_store, ttl_seconds=60),
        require_settled_variants=require_settled_variants,
    )


@pytest.mark.parametrize("degrees", [90, 180, 270])
def test_validate_degrees_accepts_quarter_turns(degrees: int) -> None:
    assert validate_degrees(degrees) == degrees


@pytest.mark.parametrize("degrees", [0, 45, 360, -90, True, "90", None, 90.0])
def test_validate_degrees_rejects_everything_else(degrees: object) -> None:
    with pytest.raises(InvalidArgument):
        validate_degrees(degrees)


@pytest.mark.anyio
async def test_rotates_original_and_every_existing_variant(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.completed)
    store = MemoryObjectStore(
        {
            "photo.jpg": b"orig",
            "photo@300.jpg": b"s",
            "photo@800.jpg": b"m",
            "photo@1600.jpg": b"l",
        }
    )
    coordinator = _coordinator(status_store, store, RecordingTransformer())

    result = await coordinator.rotate(image.id, 90)

    assert list(result.outcomes) == ["original", "small", "medium", "large"]
    assert all(outcome == RepresentationOutcome.success for outcome in result.outcomes.values())
    assert result.errors == {}
    assert store.objects["photo.jpg"] == b"w=None;r=90|orig"
    assert store.objects["photo@300.jpg"] == b"w=300;r=90|s"
    assert store.objects["photo@800.jpg"] == b"w=800;r=90|m"
    assert store.objects["photo@1600.jpg"] == b"w=1600;r=90|l"
    assert sorted(store.objects) == ["photo.jpg", "photo@1600.jpg", "photo@300.jpg", "photo@800.jpg"]

    refreshed = await status_store.get_asset(image.id)
    assert result.updated_at is not None
    assert refreshed.size_bytes == len(b"w=None;r=90|orig")
    assert refreshed.variant_status == VariantStatus.completed


@pytest.mark.anyio
async def test_pending_asset_skips_variants_that_do_not_exist(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.pending)
    store = MemoryObjectStore({"photo.jpg": b"orig"})
    coordinator = _coordinator(status_store, store, RecordingTransformer(), widths={"large": 1600})

    result = await coordinator.rotate(image.id, 90)

    assert result.outcomes == {"original": RepresentationOutcome.success, "large": RepresentationOutcome.skipped}
    assert result.succeeded == ["original"]
    assert "photo@1600.jpg" not in store.objects


@pytest.mark.anyio
async def test_one_variant_failure_does_not_abort_the_others(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.completed)
    store = MemoryObjectStore(
        {"photo.jpg": b"orig", "photo@300.jpg": b"s", "photo@800.jpg": b"m", "photo@1600.jpg": b"l"}
    )
    store.fail_keys["photo@1600.jpg"] = RuntimeError("disk full")
    transformer = RecordingTransformer()
    transformer.fail_widths = {800}
    coordinator = _coordinator(status_store, store, transformer)

    result = await coordinator.rotate(image.id, 180)

    assert result.outcomes == {
        "original": RepresentationOutcome.success,
        "small": RepresentationOutcome.success,
        "medium": RepresentationOutcome.failed,
        "large": RepresentationOutcome.failed,
    }
    assert set(result.errors) == {"medium", "large"}
    assert "disk full" in result.errors["large"]
    assert store.objects["photo@300.jpg"] == b"w=300;r=180|s"
    assert store.objects["photo@800.jpg"] == b"m"
    assert store.objects["photo@1600.jpg"] == b"l"


@pytest.mark.anyio
async def test_missing_original_fails_and_leaves_variants_alone(
    session_factory, status_store: AssetStatusStore
) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.completed)
    store = MemoryObjectStore({"photo@300.jpg": b"s"})
    coordinator = _coordinator(status_store, store, RecordingTransformer())

    with pytest.raises(ObjectNotFound):
        await coordinator.rotate(image.id, 270)

    assert store.objects == {"photo@300.jpg": b"s"}
    store.objects["photo.jpg"] = b"orig"
    result = await coordinator.rotate(image.id, 270)
    assert result.outcomes["original"] == RepresentationOutcome.success


@pytest.mark.anyio
async def test_invalid_angle_is_rejected_before_any_io(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="photo.jpg")
    store = MemoryObjectStore({"photo.jpg": b"orig"})
    transformer = RecordingTransformer()
    coordinator = _coordinator(status_store, store, transformer)

    for degrees in (45, 0, 360):
        with pytest.raises(InvalidArgument):
            await coordinator.rotate(image.id, degrees)

    assert transformer.calls == []
    assert store.puts == []
    assert await status_store.acquire_lease(image.id, "next-holder", ttl_seconds=5)


@pytest.mark.anyio
async def test_unknown_asset_releases_the_lock(status_store: AssetStatusStore) -> None:
    coordinator = _coordinator(status_store, MemoryObjectStore(), RecordingTransformer())
    missing = uuid.uuid4()

    with pytest.raises(AssetNotFound):
        await coordinator.rotate(missing, 90)

    assert await status_store.acquire_lease(missing, "next-holder", ttl_seconds=5)


@pytest.mark.anyio
async def test_concurrent_rotations_of_one_asset_are_single_flight(
    session_factory, status_store: AssetStatusStore
) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.completed)
    store = MemoryObjectStore({"photo.jpg": b"orig", "photo@300.jpg": b"s"})
    coordinator = _coordinator(status_store, store, RecordingTransformer(delay=0.2), widths={"small": 300})

    results = await asyncio.gather(
        coordinator.rotate(image.id, 90),
        coordinator.rotate(image.id, 90),
        return_exceptions=True,
    )

    rejected = [r for r in results if isinstance(r, AlreadyInProgress)]
    completed = [r for r in results if not isinstance(r, BaseException)]
    assert len(rejected) == 1
    assert len(completed) == 1
    assert store.objects["photo.jpg"] == b"w=None;r=90|orig"

    again = await coordinator.rotate(image.id, 90)
    assert again.outcomes["original"] == RepresentationOutcome.success


@pytest.mark.anyio
async def test_rotations_of_different_assets_run_side_by_side(
    session_factory, status_store: AssetStatusStore
) -> None:
    first = await create_image(session_factory, key="a.jpg", status=VariantStatus.completed)
    second = await create_image(session_factory, key="b.jpg", status=VariantStatus.completed)
    store = MemoryObjectStore({"a.jpg": b"a", "b.jpg": b"b"})
    transformer = RecordingTransformer(delay=0.2)
    coordinator = _coordinator(status_store, store, transformer, widths={"small": 300})

    results = await asyncio.gather(coordinator.rotate(first.id, 90), coordinator.rotate(second.id, 270))

    assert [r.outcomes["original"] for r in results] == [RepresentationOutcome.success] * 2
    assert transformer.peak >= 2


@pytest.mark.anyio
async def test_settled_variants_required_rejects_unfinished_assets(
    session_factory, status_store: AssetStatusStore
) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.processing)
    store = MemoryObjectStore({"photo.jpg": b"orig"})
    coordinator = _coordinator(status_store, store, RecordingTransformer(), require_settled_variants=True)

    with pytest.raises(AlreadyInProgress):
        await coordinator.rotate(image.id, 90)

    assert store.objects == {"photo.jpg": b"orig"}


@pytest.mark.anyio
async def test_original_without_extension_is_rotated_once(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="uploads/photo", status=VariantStatus.completed)
    store = MemoryObjectStore({"uploads/photo": b"orig"})
    coordinator = _coordinator(status_store, store, RecordingTransformer(), widths={"small": 300, "large": 1600})

    result = await coordinator.rotate(image.id, 90)

    assert result.outcomes == {
        "original": RepresentationOutcome.success,
        "small": RepresentationOutcome.failed,
        "large": RepresentationOutcome.failed,
    }
    assert "would overwrite the original" in result.errors["small"]
    assert store.objects == {"uploads/photo": b"w=None;r=90|orig"}
    assert store.puts == ["uploads/photo"]


@pytest.mark.anyio
async def test_rotate_only_the_original(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.completed)
    store = MemoryObjectStore({"photo.jpg": b"orig", "photo@300.jpg": b"s"})
    coordinator = _coordinator(status_store, store, RecordingTransformer(), widths={"small": 300})

    result = await coordinator.rotate_representation(image.id, 270, "original")

    assert result.outcomes == {"original": RepresentationOutcome.success}
    assert store.objects == {"photo.jpg": b"w=None;r=270|orig", "photo@300.jpg": b"s"}
    refreshed = await status_store.get_asset(image.id)
    assert refreshed.size_bytes == len(b"w=None;r=270|orig")
    assert result.updated_at is not None


@pytest.mark.anyio
async def test_rotate_only_one_variant(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.completed)
    store = MemoryObjectStore({"photo.jpg": b"orig", "photo@300.jpg": b"s", "photo@1600.jpg": b"l"})
    coordinator = _coordinator(status_store, store, RecordingTransformer(), widths={"small": 300, "large": 1600})

    result = await coordinator.rotate_representation(image.id, 90, "large")

    assert result.outcomes == {"large": RepresentationOutcome.success}
    assert store.objects == {"photo.jpg": b"orig", "photo@300.jpg": b"s", "photo@1600.jpg": b"w=1600;r=90|l"}
    assert (await status_store.get_asset(image.id)).size_bytes is None


@pytest.mark.anyio
async def test_rotate_missing_variant_is_skipped(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.pending)
    store = MemoryObjectStore({"photo.jpg": b"orig"})
    coordinator = _coordinator(status_store, store, RecordingTransformer(), widths={"small": 300})

    result = await coordinator.rotate_representation(image.id, 180, "small")

    assert result.outcomes == {"small": RepresentationOutcome.skipped}
    assert store.puts == []


@pytest.mark.anyio
async def test_rotate_unknown_representation_is_rejected(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.completed)
    store = MemoryObjectStore({"photo.jpg": b"orig"})
    transformer = RecordingTransformer()
    coordinator = _coordinator(status_store, store, transformer, widths={"small": 300})

    with pytest.raises(InvalidArgument):
        await coordinator.rotate_representation(image.id, 90, "thumbnail")
    with pytest.raises(InvalidArgument):
        await coordinator.rotate_representation(image.id, 45, "original")

    assert transformer.calls == []
    assert await status_store.acquire_lease(image.id, "next-holder", ttl_seconds=5)


@pytest.mark.anyio
async def test_representation_rotation_shares_the_asset_lock(session_factory, status_store: AssetStatusStore) -> None:
    image = await create_image(session_factory, key="photo.jpg", status=VariantStatus.completed)
    store = MemoryObjectStore({"photo.jpg": b"orig"})
    coordinator = _coordinator(status_store, store, RecordingTransformer(), widths={"small": 300})
    assert await status_store.acquire_lease(image.id, "other-worker", ttl_seconds=60)

    with pytest.raises(AlreadyInProgress):
        await coordinator.rotate_representation(image.id, 90, "original")

    assert store.objects == {"photo.jpg": b"orig"}
