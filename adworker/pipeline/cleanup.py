"""
Storage maintenance: orphaned-file cleanup and usage stats.

A file is orphaned when no job row references its public URL. Client
uploads that never became a job are orphans too, so run the cleanup when no
upload is in progress.
"""

import logging

logger = logging.getLogger(__name__)

AVERAGE_FILE_BYTES = 2_000_000  # ~1MB images, ~10MB videos


def _human_size(bytesize: int) -> str:
    megabytes = round(bytesize / (1024 * 1024))
    if megabytes > 1024:
        return f"{round(megabytes / 1024)}GB"
    return f"{megabytes}MB"


async def cleanup_orphaned_files(job_store, content_store, prefix: str = "") -> dict:
    """
    Delete bucket objects not referenced by any job.

    Returns {'total_files', 'orphaned_files', 'cleaned_files', 'errors'}.
    """
    referenced = set(await job_store.list_file_references())
    keys = await content_store.list_keys(prefix)

    orphaned = [key for key in keys if content_store.public_url(key) not in referenced]
    cleaned: list[str] = []
    errors: list[str] = []

    if orphaned:
        result = await content_store.delete_objects(orphaned)
        cleaned = [content_store.public_url(key) for key in result["deleted"]]
        errors = list(result["errors"])

    logger.info(
        f"Storage cleanup: {len(keys)} file(s), {len(orphaned)} orphaned, "
        f"{len(cleaned)} deleted, {len(errors)} error(s)"
    )
    return {
        "total_files": len(keys),
        "orphaned_files": [content_store.public_url(key) for key in orphaned],
        "cleaned_files": cleaned,
        "errors": errors,
    }


async def get_storage_stats(job_store) -> dict:
    """Job count, referenced file count and a rough size estimate."""
    total_jobs = await job_store.count()
    total_files = len(await job_store.list_file_references())

    return {
        "total_jobs": total_jobs,
        "total_files": total_files,
        "estimated_size": _human_size(total_files * AVERAGE_FILE_BYTES),
        "average_files_per_job": round(total_files / total_jobs, 1) if total_jobs else 0,
    }
