import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.stub import ANY, Stubber

from upload_pipeline.service.s3_utils import DELETE_BATCH_SIZE, S3BlobStore


@pytest.fixture
def s3():
    client = boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )
    with Stubber(client) as stubber:
        yield client, stubber
        stubber.assert_no_pending_responses()


def test_list_keys_follows_pagination(s3):
    client, stubber = s3
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "p/options/o/model_1.glb"}], "IsTruncated": True, "NextContinuationToken": "page-2"},
        {"Bucket": "projects", "Prefix": "p/options/o/"},
    )
    stubber.add_response(
        "list_objects_v2",
        {"Contents": [{"Key": "p/options/o/model_2.glb"}], "IsTruncated": False},
        {"Bucket": "projects", "Prefix": "p/options/o/", "ContinuationToken": "page-2"},
    )

    store = S3BlobStore(client=client, bucket="projects")
    assert store.list_keys("p/options/o/") == ["p/options/o/model_1.glb", "p/options/o/model_2.glb"]


def test_list_keys_empty_prefix(s3):
    client, stubber = s3
    stubber.add_response("list_objects_v2", {"IsTruncated": False}, {"Bucket": "projects", "Prefix": "nothing/"})
    assert S3BlobStore(client=client, bucket="projects").list_keys("nothing/") == []


def test_delete_keys_batches_and_collects_errors(s3):
    client, stubber = s3
    keys = [f"p/file_{index}.glb" for index in range(DELETE_BATCH_SIZE + 1)]
    stubber.add_response(
        "delete_objects",
        {"Deleted": [{"Key": key} for key in keys[:DELETE_BATCH_SIZE]]},
        {"Bucket": "projects", "Delete": ANY},
    )
    stubber.add_response(
        "delete_objects",
        {"Errors": [{"Key": keys[-1], "Code": "AccessDenied", "Message": "Access Denied"}]},
        {"Bucket": "projects", "Delete": {"Objects": [{"Key": keys[-1]}], "Quiet": False}},
    )

    result = S3BlobStore(client=client, bucket="projects").delete_keys(keys + keys[:3])
    assert len(result["deleted"]) == DELETE_BATCH_SIZE
    assert result["errors"] == [{"key": keys[-1], "code": "AccessDenied", "message": "Access Denied"}]


def test_delete_nothing_makes_no_calls(s3):
    client, _ = s3
    assert S3BlobStore(client=client, bucket="projects").delete_keys([]) == {"deleted": [], "errors": []}


def test_head_returns_metadata_or_none(s3):
    client, stubber = s3
    stubber.add_response(
        "head_object",
        {"ContentLength": 42, "ContentType": "model/gltf-binary", "ETag": '"abc"'},
        {"Bucket": "projects", "Key": "p/model_1.glb"},
    )
    stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
    stubber.add_client_error("head_object", service_error_code="AccessDenied", http_status_code=403)

    store = S3BlobStore(client=client, bucket="projects")
    meta = store.head("p/model_1.glb")
    assert (meta["size"], meta["content_type"]) == (42, "model/gltf-binary")
    assert store.head("p/missing.glb") is None
    with pytest.raises(ClientError):
        store.head("p/forbidden.glb")
