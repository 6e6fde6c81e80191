import pytest

from upload_pipeline.db.entity_store import EntityStore
from upload_pipeline.db.models import EntityKind
from upload_pipeline.scripts.cleanup_storage import cleanup_storage
from upload_pipeline.service.coordinator import UploadCoordinator


class RecordingBlobStore:
    def __init__(self, keys=()):
        self.keys = set(keys)
        self.deleted = []

    def list_keys(self, prefix):
        return sorted(key for key in self.keys if key.startswith(prefix))

    def head(self, key):
        if key not in self.keys:
            return None
        return {"key": key, "size": 10, "content_type": "", "etag": "", "last_modified": None}

    def delete_keys(self, keys):
        keys = list(keys)
        self.deleted.extend(keys)
        self.keys.difference_update(keys)
        return {"deleted": keys, "errors": []}


@pytest.fixture
async def orphaned(session_factory, seeded):
    coordinator = UploadCoordinator(session_factory=session_factory)
    await coordinator.register_artifact("record", seeded["record"], "processed_recording", path="r/p.glb")
    await coordinator.register_artifact("record", seeded["record"], "thumbnail", path="r/t.png")
    async with session_factory() as session:
        await EntityStore().delete(session, EntityKind.record, seeded["record"])
        await session.commit()
    return coordinator


async def test_dry_run_deletes_nothing(orphaned):
    blobs = RecordingBlobStore({"r/p.glb", "r/t.png"})
    summary = await cleanup_storage(orphaned, blobs, dry_run=True)

    assert summary["orphaned_files"] == 2
    assert summary["missing_blobs"] == 0
    assert blobs.deleted == []
    assert len((await orphaned.find_orphans()).data["record"]) == 2


async def test_cleanup_removes_blobs_and_rows(orphaned):
    blobs = RecordingBlobStore({"r/p.glb", "r/t.png", "r/stray.bin", "o/keep.glb"})
    summary = await cleanup_storage(orphaned, blobs, prefix="r/")

    assert summary["storage_deleted"] == 2
    assert summary["registry_deleted"] == 2
    # Nothing references the stray object under the prefix
    assert summary["unregistered_found"] == 1
    assert summary["unregistered_by_category"] == {"unknown": 1}
    assert summary["unregistered_deleted"] == 1
    assert blobs.keys == {"o/keep.glb"}
    assert summary["expired_sessions"] == 0
    assert (await orphaned.find_orphans()).data == {"project": [], "option": [], "record": []}


async def test_rows_without_blobs_are_still_removed(orphaned):
    blobs = RecordingBlobStore({"r/p.glb"})
    summary = await cleanup_storage(orphaned, blobs)

    assert summary["missing_blobs"] == 1
    assert blobs.deleted == ["r/p.glb"]
    assert summary["registry_deleted"] == 2


async def test_unregistered_keys_grouped_by_category(orphaned):
    root = "harbor_view_11111111-1111-1111-1111-111111111111"
    stray = {
        f"{root}/options/opt/model_1.glb",
        f"{root}/others/context_5.glb",
        f"{root}/records/thumbnails/opt/sc/thumbnail_3.png",
    }
    blobs = RecordingBlobStore(stray)
    summary = await cleanup_storage(orphaned, blobs, dry_run=True, prefix=f"{root}/")

    assert summary["unregistered_found"] == 3
    assert summary["unregistered_by_category"] == {"options": 1, "others": 1, "records": 1}
    assert blobs.deleted == []
