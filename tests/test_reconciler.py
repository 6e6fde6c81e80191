import uuid

import pytest

from upload_pipeline.core.exceptions import InvalidRequest, InvalidTransition, NotFound
from upload_pipeline.db.models import EntityKind, FileKind, UploadStatus
from upload_pipeline.service.artifact_registry import FileArtifactRegistry
from upload_pipeline.service.finalization import FinalizationService
from upload_pipeline.service.lifecycle import LifecycleStateMachine
from upload_pipeline.service.reconciler import OrphanReconciler
from upload_pipeline.service.storage_paths import EntityChain, project_root
from upload_pipeline.service.upload_sessions import UploadSessionManager


@pytest.fixture
def registry():
    return FileArtifactRegistry()


@pytest.fixture
def sessions(clock):
    return UploadSessionManager(clock=clock)


@pytest.fixture
def reconciler(store, registry, sessions, clock):
    return OrphanReconciler(store, registry, sessions, LifecycleStateMachine(store), clock=clock)


async def complete_record(db, store, registry, record):
    """Register, complete and finalize the two required record files."""
    await LifecycleStateMachine(store).begin_upload(db, record)
    paths = [f"r/{record.id}/processed_recording_1.glb", f"r/{record.id}/thumbnail_1.png"]
    for file_kind, path in zip((FileKind.processed_recording, FileKind.thumbnail), paths):
        artifact = await registry.register_artifact(db, EntityKind.record, record.id, file_kind, path)
        await registry.mark_completed(db, artifact.id, 100)
    await FinalizationService(store, registry).finalize(db, EntityKind.record, record.id)
    return paths


async def test_reset_returns_registered_paths_and_clears_entity(db, store, registry, sessions, reconciler, project, record):
    paths = await complete_record(db, store, registry, record)
    await sessions.create_session(
        db, EntityKind.record, record.id, "leftover.glb", 10, 10, paths[0], FileKind.processed_recording
    )

    result = await reconciler.reset_entity(db, EntityKind.record, record.id)

    assert result["deleted_artifact_count"] == 2
    assert sorted(result["storage_paths_to_delete"]) == sorted(paths)
    assert result["deleted_session_count"] == 1
    root = project_root(EntityChain(project.name, str(project.id)))
    assert result["storage_folder_paths"] == [
        f"{root}/records/{folder}/{record.option_id}/{record.scenario_id}/"
        for folder in ("records_glb", "records_csv", "thumbnails")
    ]

    assert record.upload_status is UploadStatus.draft
    assert (record.record_url, record.raw_url, record.thumbnail_url) == (None, None, None)
    assert record.completed_at is None
    assert await registry.list_by_entity(db, EntityKind.record, record.id) == []


async def test_reset_only_from_completed(db, reconciler, option):
    with pytest.raises(InvalidTransition):
        await reconciler.reset_entity(db, EntityKind.option, option.id)
    with pytest.raises(NotFound):
        await reconciler.reset_entity(db, EntityKind.option, uuid.uuid4())


async def test_orphans_after_external_delete(db, store, registry, sessions, reconciler, option, record):
    paths = await complete_record(db, store, registry, record)
    await registry.register_artifact(db, EntityKind.option, option.id, FileKind.model, "o/model_1.glb")
    await sessions.create_session(
        db, EntityKind.record, record.id, "retry.glb", 10, 10, "r/retry.glb", FileKind.processed_recording
    )

    record_id = str(record.id)

    # A consistent dataset has no orphans
    assert await reconciler.find_orphans(db) == {"project": [], "option": [], "record": []}

    assert await store.delete(db, EntityKind.record, record.id) is True

    orphans = await reconciler.find_orphans(db)
    assert orphans["option"] == [] and orphans["project"] == []
    assert sorted(item["path"] for item in orphans["record"]) == sorted(paths)
    assert {item["entity_id"] for item in orphans["record"]} == {record_id}

    cleaned = await reconciler.cleanup_orphans(db)
    assert cleaned["deleted_count"] == 2
    assert sorted(cleaned["storage_paths_to_delete"]) == sorted(paths)
    assert cleaned["deleted_session_count"] == 1

    assert await reconciler.find_orphans(db) == {"project": [], "option": [], "record": []}
    # The surviving option keeps its artifact
    assert len(await registry.list_by_entity(db, EntityKind.option, option.id)) == 1


async def test_find_abandoned_uploads(db, store, registry, reconciler, clock, project, option, record):
    await LifecycleStateMachine(store).begin_upload(db, option)
    model = await registry.register_artifact(db, EntityKind.option, option.id, FileKind.model, "o/model_1.glb")
    await registry.mark_completed(db, model.id, 1)
    await registry.register_artifact(db, EntityKind.option, option.id, FileKind.model, "o/model_2.glb")
    await complete_record(db, store, registry, record)

    # Nothing is old enough yet
    assert await reconciler.find_abandoned_uploads(db, threshold_hours=1) == []

    clock.advance(hours=3)
    abandoned = await reconciler.find_abandoned_uploads(db, threshold_hours=1)
    by_kind = {item["entity_kind"]: item for item in abandoned}
    # The completed record is not abandoned
    assert set(by_kind) == {"project", "option"}
    assert by_kind["option"]["upload_status"] == "uploading"
    assert (by_kind["option"]["completed_files"], by_kind["option"]["total_files"]) == (1, 2)
    assert by_kind["option"]["hours_old"] >= 2.9
    assert by_kind["project"]["upload_status"] == "draft"

    with pytest.raises(InvalidRequest):
        await reconciler.find_abandoned_uploads(db, threshold_hours=-1)


async def test_cleanup_incomplete_uploads(db, registry, reconciler, record):
    done = await registry.register_artifact(db, EntityKind.record, record.id, FileKind.processed_recording, "r/p.glb")
    await registry.mark_completed(db, done.id, 1)
    failed = await registry.register_artifact(db, EntityKind.record, record.id, FileKind.thumbnail, "r/t.png")
    await registry.mark_failed(db, failed.id, "timeout")

    result = await reconciler.cleanup_incomplete_uploads(db, EntityKind.record, record.id)
    assert result["deleted_count"] == 1
    assert result["storage_paths_to_delete"] == ["r/t.png"]
    assert [artifact.storage_path for artifact in await registry.list_by_entity(db, EntityKind.record, record.id)] == ["r/p.glb"]


async def test_find_unregistered_keys(db, registry, reconciler, option):
    await registry.register_artifact(db, EntityKind.option, option.id, FileKind.model, "p/options/o1/model_1.glb")

    listed = ["p/options/o1/model_1.glb", "p/options/o1/model_0.glb", "elsewhere/model_9.glb"]
    assert await reconciler.find_unregistered_keys(db, "p/options/o1/", listed) == ["p/options/o1/model_0.glb"]
