# controller/manager.py
from __future__ import annotations

import logging
import queue
import signal
import threading
import time
from typing import Any, Dict, Optional, Set, Tuple

from terraoperator.model import API_VERSION, KIND
from terraoperator.settings import RESYNC_SECONDS

from .cluster import ClusterClient
from .reconciler import ModuleReconciler

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


def owner_key(job: Dict[str, Any]) -> Optional[Key]:
    """The (namespace, name) of the Terraform resource owning a Job, if any."""
    metadata = job.get("metadata") or {}
    namespace = metadata.get("namespace", "default")
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("kind") == KIND and ref.get("apiVersion") == API_VERSION:
            return namespace, ref["name"]
    name = (metadata.get("labels") or {}).get("terraoperatorObjectName")
    if name:
        return namespace, name
    return None


class ControllerManager:
    """
    Watches Terraform resources and their Jobs and feeds a reconcile queue.

    Level-triggered: every (re)started watch first re-lists all declarations,
    so a failed reconcile is delivered again on the next resync. Keys already
    waiting in the queue are not queued twice.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        reconciler: ModuleReconciler,
        resync_seconds: int = RESYNC_SECONDS,
        error_backoff: float = 5.0,
    ):
        self.cluster = cluster
        self.reconciler = reconciler
        self.resync_seconds = resync_seconds
        self.error_backoff = error_backoff
        self.running = True
        self._queue: "queue.Queue[Key]" = queue.Queue()
        self._pending: Set[Key] = set()
        self._pending_lock = threading.Lock()

    def _signal_handler(self, signum, frame):
        logger.info("Received signal %s, shutting down gracefully...", signum)
        self.stop()

    def stop(self) -> None:
        self.running = False

    def enqueue(self, namespace: str, name: str) -> None:
        key = (namespace, name)
        with self._pending_lock:
            if key in self._pending:
                return
            self._pending.add(key)
        self._queue.put(key)

    def handle_declaration_event(self, event_type: str, obj: Dict[str, Any]) -> None:
        if event_type not in ("ADDED", "MODIFIED", "DELETED"):
            return
        metadata = obj.get("metadata") or {}
        if "name" not in metadata:
            return
        self.enqueue(metadata.get("namespace", "default"), metadata["name"])

    def handle_job_event(self, event_type: str, job: Dict[str, Any]) -> None:
        # A deleted Job is re-created by reconciling its owner
        if event_type not in ("ADDED", "MODIFIED", "DELETED"):
            return
        key = owner_key(job)
        if key is not None:
            self.enqueue(*key)

    def process_next(self, timeout: float = 1.0) -> bool:
        """
        Reconcile one queued key. Returns False if the queue stayed empty.

        Errors are logged, not raised; the next event or resync re-delivers.
        """
        try:
            namespace, name = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False

        with self._pending_lock:
            self._pending.discard((namespace, name))

        try:
            outcome = self.reconciler.reconcile(namespace, name)
            logger.debug("Reconciled %s/%s: %s", namespace, name, outcome.value)
        except Exception:
            logger.exception("Reconcile of %s/%s failed", namespace, name)
        finally:
            self._queue.task_done()
        return True

    def _watch_declarations(self) -> None:
        while self.running:
            try:
                keys, resource_version = self.cluster.list_declaration_keys()
                for namespace, name in keys:
                    self.enqueue(namespace, name)
                for event_type, obj in self.cluster.watch_declarations(
                    resource_version, timeout_seconds=self.resync_seconds
                ):
                    if not self.running:
                        break
                    if event_type == "ERROR":
                        logger.warning("Declaration watch error: %s", obj)
                        break
                    self.handle_declaration_event(event_type, obj)
            except Exception:
                logger.exception("Declaration watch failed")
                time.sleep(self.error_backoff)

    def _watch_jobs(self) -> None:
        while self.running:
            try:
                for event_type, job in self.cluster.watch_jobs(timeout_seconds=self.resync_seconds):
                    if not self.running:
                        break
                    self.handle_job_event(event_type, job)
            except Exception:
                logger.exception("Job watch failed")
                time.sleep(self.error_backoff)

    def run(self) -> None:
        """Run the controller until SIGINT/SIGTERM."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        for target in (self._watch_declarations, self._watch_jobs):
            threading.Thread(target=target, name=target.__name__.lstrip("_"), daemon=True).start()

        logger.info("Controller started (resync every %ss)", self.resync_seconds)
        while self.running:
            self.process_next(timeout=1.0)
        logger.info("Controller stopped.")
