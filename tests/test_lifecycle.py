import pytest

from upload_pipeline.core.exceptions import InvalidTransition
from upload_pipeline.db.models import EntityKind, UploadStatus
from upload_pipeline.service.entity_kinds import spec_for
from upload_pipeline.service.lifecycle import LifecycleStateMachine, check_transition

RECORD = spec_for(EntityKind.record)
OPTION = spec_for(EntityKind.option)


@pytest.mark.parametrize(
    ("current", "requested"),
    [
        (UploadStatus.draft, UploadStatus.uploading),
        (UploadStatus.draft, UploadStatus.failed),
        (UploadStatus.uploading, UploadStatus.failed),
        (UploadStatus.failed, UploadStatus.uploading),
        (UploadStatus.failed, UploadStatus.draft),
    ],
)
def test_allowed_edges_without_urls(current, requested):
    assert check_transition(RECORD, current, requested) == {}


@pytest.mark.parametrize(
    ("current", "requested"),
    [
        (UploadStatus.draft, UploadStatus.completed),
        (UploadStatus.failed, UploadStatus.completed),
        (UploadStatus.uploading, UploadStatus.draft),
        (UploadStatus.completed, UploadStatus.uploading),
        (UploadStatus.completed, UploadStatus.failed),
        (UploadStatus.completed, UploadStatus.completed),
    ],
)
def test_edges_outside_the_graph_are_rejected(current, requested):
    with pytest.raises(InvalidTransition):
        check_transition(RECORD, current, requested, {"record_url": "a/b.glb"})


def test_completed_entities_point_to_reset():
    with pytest.raises(InvalidTransition) as excinfo:
        check_transition(OPTION, UploadStatus.completed, UploadStatus.uploading)
    assert "reset" in excinfo.value.message


def test_completing_requires_required_urls():
    with pytest.raises(InvalidTransition) as excinfo:
        check_transition(RECORD, UploadStatus.uploading, UploadStatus.completed, {"raw_url": "raw.json"})
    assert excinfo.value.details["fields"] == ["record_url"]

    with pytest.raises(InvalidTransition):
        check_transition(RECORD, UploadStatus.uploading, UploadStatus.completed, {"record_url": ""})


def test_completing_writes_every_url_field():
    values = check_transition(RECORD, UploadStatus.uploading, UploadStatus.completed, {"record_url": "r.glb"})
    assert values == {"record_url": "r.glb", "raw_url": None, "thumbnail_url": None}


def test_reset_to_draft_must_clear_every_url():
    with pytest.raises(InvalidTransition):
        check_transition(RECORD, UploadStatus.completed, UploadStatus.draft)
    with pytest.raises(InvalidTransition):
        check_transition(
            RECORD, UploadStatus.completed, UploadStatus.draft, {"record_url": None, "raw_url": None}
        )

    cleared = {"record_url": None, "raw_url": None, "thumbnail_url": None}
    assert check_transition(RECORD, UploadStatus.completed, UploadStatus.draft, cleared) == cleared


def test_urls_are_rejected_on_non_completing_edges():
    with pytest.raises(InvalidTransition):
        check_transition(OPTION, UploadStatus.draft, UploadStatus.uploading, {"model_url": "m.glb"})


def test_unknown_url_fields_are_rejected():
    with pytest.raises(InvalidTransition):
        check_transition(OPTION, UploadStatus.uploading, UploadStatus.completed, {"record_url": "r.glb"})


async def test_failed_retry_counts_and_clears_error(db, store, option):
    machine = LifecycleStateMachine(store)

    option = await machine.begin_upload(db, option)
    assert option.upload_status is UploadStatus.uploading
    assert option.upload_retry_count == 0

    option = await machine.transition(db, option, UploadStatus.failed, error="network dropped")
    assert option.upload_status is UploadStatus.failed
    assert option.upload_error == "network dropped"

    option = await machine.begin_upload(db, option)
    assert option.upload_status is UploadStatus.uploading
    assert option.upload_error is None
    assert option.upload_retry_count == 1

    # Already uploading: no write, no error
    assert (await machine.begin_upload(db, option)).upload_retry_count == 1


async def test_completion_writes_status_and_urls_together(db, store, option):
    machine = LifecycleStateMachine(store)
    await machine.begin_upload(db, option)

    with pytest.raises(InvalidTransition):
        await machine.transition(db, option, UploadStatus.completed)
    assert option.upload_status is UploadStatus.uploading
    assert option.model_url is None

    option = await machine.transition(db, option, UploadStatus.completed, {"model_url": "x/model_1.glb"})
    assert option.upload_status is UploadStatus.completed
    assert option.model_url == "x/model_1.glb"
    assert option.completed_at is not None


async def test_transition_fails_when_status_changed_concurrently(db, store, option):
    machine = LifecycleStateMachine(store)
    # Another writer moves the row on without this session's object noticing
    updated = await store.compare_and_set_status(
        db, EntityKind.option, option.id, UploadStatus.draft, upload_status=UploadStatus.failed
    )
    assert updated == 1
    assert option.upload_status is UploadStatus.draft

    with pytest.raises(InvalidTransition) as excinfo:
        await machine.transition(db, option, UploadStatus.uploading)
    assert "concurrently" in excinfo.value.message
