"""Background workers for async processing."""
from .index_mirror_worker import IndexMirrorWorker, start_index_mirror_worker
from .reconciliation_worker import start_reconciliation_worker

__all__ = ["IndexMirrorWorker", "start_index_mirror_worker", "start_reconciliation_worker"]
