"""Worker pools for upload and download work.

Usage:
    from docsync.client.sync.workers import WorkerPool

    pool = WorkerPool("upload", max_workers=4)
    pool.start()
    pool.submit(handler.handle, path, connector)
    pool.stop()
"""

from docsync.client.sync.workers.pool import PoolState, WorkerPool, WorkerTask

__all__ = [
    "PoolState",
    "WorkerPool",
    "WorkerTask",
]
