"""
Remove orphaned files from the bucket and their registry rows.

    python -m upload_pipeline.scripts.cleanup_storage [--dry-run] [--prefix PREFIX]

With ``--prefix`` the objects under that prefix are also diffed against the
registry, and keys nothing references are deleted. Orphaned rows whose blob is
already gone are reported as missing and only their rows are removed.
"""
import argparse
import asyncio
import logging

from upload_pipeline.core.logging_config import setup_logging
from upload_pipeline.service.coordinator import OperationResult, UploadCoordinator
from upload_pipeline.service.s3_utils import S3BlobStore
from upload_pipeline.service.storage_paths import parse_storage_path

logger = logging.getLogger("upload_pipeline.scripts.cleanup_storage")


class CleanupFailed(Exception):
    pass


def _data(result: OperationResult):
    if not result.success:
        raise CleanupFailed(f"{result.error.code}: {result.error.message}")
    return result.data


async def cleanup_storage(coordinator: UploadCoordinator, blob_store: S3BlobStore, dry_run=False, prefix=None, sweep=True) -> dict:
    summary = {
        "orphaned_files": 0,
        "missing_blobs": 0,
        "storage_deleted": 0,
        "registry_deleted": 0,
        "unregistered_deleted": 0,
    }

    orphans = _data(await coordinator.find_orphans())
    paths = [item["path"] for items in orphans.values() for item in items]
    summary["orphaned_files"] = len(paths)

    existing = []
    for path in paths:
        meta = blob_store.head(path)
        if meta is None:
            logger.info("Orphaned file (no blob): %s", path)
            summary["missing_blobs"] += 1
        else:
            logger.info("Orphaned file: %s (%d bytes)", path, meta["size"])
            existing.append(path)

    if not dry_run and paths:
        if existing:
            summary["storage_deleted"] = len(blob_store.delete_keys(existing)["deleted"])
        cleaned = _data(await coordinator.cleanup_orphans())
        summary["registry_deleted"] = cleaned["deleted_count"]
        # Rows registered between the two reads still need their blobs removed
        late = sorted(set(cleaned["storage_paths_to_delete"]) - set(paths))
        if late:
            summary["storage_deleted"] += len(blob_store.delete_keys(late)["deleted"])

    if prefix:
        keys = blob_store.list_keys(prefix)
        unregistered = _data(await coordinator.find_unregistered_keys(prefix, keys))
        by_category = {}
        for key in unregistered:
            parsed = parse_storage_path(key)
            category = parsed.get("category", "unknown") if parsed else "unknown"
            by_category[category] = by_category.get(category, 0) + 1
            logger.info("Unregistered object [%s]: %s", category, key)
        summary["unregistered_found"] = len(unregistered)
        summary["unregistered_by_category"] = by_category
        if not dry_run and unregistered:
            summary["unregistered_deleted"] = len(blob_store.delete_keys(unregistered)["deleted"])

    if sweep and not dry_run:
        summary.update(_data(await coordinator.sweep_expired_sessions()))

    return summary


def cleanup_storage_main(argv=None):
    parser = argparse.ArgumentParser(description="Clean up orphaned storage files and registry rows.")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be deleted without deleting")
    parser.add_argument("--prefix", help="Also delete objects under this prefix that no artifact references")
    parser.add_argument("--skip-sweep", action="store_true", help="Do not expire and purge stale upload sessions")
    args = parser.parse_args(argv)

    setup_logging()
    logger.info("Starting storage cleanup%s", " (dry run)" if args.dry_run else "")
    summary = asyncio.run(
        cleanup_storage(
            UploadCoordinator(),
            S3BlobStore(),
            dry_run=args.dry_run,
            prefix=args.prefix,
            sweep=not args.skip_sweep,
        )
    )
    for name, value in summary.items():
        print(f"  {name}: {value}")
    logger.info("Finished storage cleanup")
    return summary


if __name__ == "__main__":
    cleanup_storage_main()
