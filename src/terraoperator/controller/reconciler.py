# controller/reconciler.py
from __future__ import annotations

import hashlib
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from terraoperator.model import API_VERSION, KIND, ModuleDeclaration
from terraoperator.settings import AGENT_URL, RUNNER_IMAGE

from .cluster import CreateConflict, NotFound

logger = logging.getLogger(__name__)

CONTAINER_NAME = "terra-operator-runner"
MAX_NAME_LENGTH = 63


class Cluster(Protocol):
    def get_declaration(self, namespace: str, name: str) -> ModuleDeclaration:
        ...

    def get_job(self, namespace: str, name: str) -> Dict[str, Any]:
        ...

    def create_job(self, namespace: str, manifest: Dict[str, Any]) -> None:
        ...


class Outcome(str, Enum):
    DELETED = "deleted"    # declaration gone; owned Job is garbage-collected
    CREATED = "created"
    RACED = "raced"        # another reconcile created the Job first
    EXISTS = "exists"


def job_name_for(declaration: ModuleDeclaration) -> str:
    """
    Deterministic Job name for a declaration.

    The declaration name itself, unless it is too long for a Job name; then a
    truncated prefix plus a stable hash of the full name.
    """
    name = declaration.name
    if len(name) <= MAX_NAME_LENGTH:
        return name
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:8]
    return f"{name[:MAX_NAME_LENGTH - 9].rstrip('-.')}-{digest}"


def job_for_declaration(
    declaration: ModuleDeclaration,
    *,
    image: str = RUNNER_IMAGE,
    agent_url: Optional[str] = AGENT_URL,
) -> Dict[str, Any]:
    """
    Build the run-to-completion Job that executes one declaration.

    The owner reference ties the Job's lifetime to the declaration, so deleting
    the declaration lets the garbage collector delete the Job.
    """
    env = [
        {"name": "MODULEPATH", "value": declaration.module_path},
        {"name": "TF_VERSION", "value": declaration.version},
        {"name": "TF_VARIABLES", "value": json.dumps(declaration.variables, sort_keys=True)},
        {"name": "TF_MODE", "value": declaration.mode},
    ]
    if agent_url:
        env.append({"name": "AGENT_URL", "value": agent_url})

    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": job_name_for(declaration),
            "namespace": declaration.namespace,
            "ownerReferences": [
                {
                    "apiVersion": API_VERSION,
                    "kind": KIND,
                    "name": declaration.name,
                    "uid": declaration.uid,
                    "controller": True,
                    "blockOwnerDeletion": True,
                }
            ],
            "labels": {
                "createdby": "terraoperator",
                "terraoperatorObjectName": job_name_for(declaration),
            },
        },
        "spec": {
            "backoffLimit": 0,
            "template": {
                "spec": {
                    "containers": [
                        {
                            "name": CONTAINER_NAME,
                            "image": image,
                            "command": ["terraoperator", "run-job"],
                            "env": env,
                        }
                    ],
                    "restartPolicy": "Never",
                },
            },
        },
    }


class ModuleReconciler:
    """
    Keeps exactly one Job per Terraform declaration.

    Creation is at-most-once: an existing Job is left untouched even if the
    declaration changed since. Delete the Job to have it re-created from the
    current spec. No status is written.
    """

    def __init__(
        self,
        cluster: Cluster,
        *,
        image: str = RUNNER_IMAGE,
        agent_url: Optional[str] = AGENT_URL,
    ):
        self.cluster = cluster
        self.image = image
        self.agent_url = agent_url

    def reconcile(self, namespace: str, name: str) -> Outcome:
        """
        Reconcile one declaration. Safe to call any number of times.

        Raises:
            Anything except NotFound on the declaration and CreateConflict on
            the Job, so the caller can re-deliver.
        """
        try:
            declaration = self.cluster.get_declaration(namespace, name)
        except NotFound:
            logger.info("Terraform resource %s/%s not found. object should be deleted", namespace, name)
            return Outcome.DELETED

        job_name = job_name_for(declaration)
        try:
            self.cluster.get_job(namespace, job_name)
            logger.debug("Job %s/%s for %s already exists", namespace, job_name, declaration.key)
            return Outcome.EXISTS
        except NotFound:
            pass

        manifest = job_for_declaration(declaration, image=self.image, agent_url=self.agent_url)
        logger.info("Creating a new Job for terraform Job.Namespace=%s Job.Name=%s", namespace, job_name)
        try:
            self.cluster.create_job(namespace, manifest)
        except CreateConflict:
            logger.info("Job %s/%s was created concurrently", namespace, job_name)
            return Outcome.RACED
        except Exception:
            logger.error("failed to create a new Job Job.Namespace=%s Job.Name=%s", namespace, job_name)
            raise
        return Outcome.CREATED
