# controller/cluster.py
from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException

from terraoperator.model import GROUP, PLURAL, VERSION, ModuleDeclaration

logger = logging.getLogger(__name__)

JOB_LABEL_SELECTOR = "createdby=terraoperator"


class NotFound(Exception):
    """The requested object does not exist."""
    pass


class CreateConflict(Exception):
    """An object with the same name already exists."""
    pass


def _translate(e: ApiException, what: str) -> Exception:
    if e.status == 404:
        return NotFound(what)
    if e.status == 409:
        return CreateConflict(what)
    return e


def load_config(in_cluster: bool = False, kubeconfig: Optional[str] = None) -> None:
    if in_cluster:
        config.load_incluster_config()
    else:
        config.load_kube_config(config_file=kubeconfig)


class ClusterClient:
    """
    The controller's view of the cluster: Terraform resources and their Jobs.

    Objects are returned as plain dictionaries. ApiException 404/409 become
    NotFound/CreateConflict; anything else propagates unchanged.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None):
        self.api_client = api_client or client.ApiClient()
        self.custom = client.CustomObjectsApi(self.api_client)
        self.batch = client.BatchV1Api(self.api_client)

    def get_declaration(self, namespace: str, name: str) -> ModuleDeclaration:
        try:
            obj = self.custom.get_namespaced_custom_object(GROUP, VERSION, namespace, PLURAL, name)
        except ApiException as e:
            raise _translate(e, f"{PLURAL}/{namespace}/{name}")
        return ModuleDeclaration.from_resource(obj)

    def list_declaration_keys(self) -> Tuple[List[Tuple[str, str]], str]:
        """Return ([(namespace, name)], resourceVersion) for every Terraform resource."""
        obj = self.custom.list_cluster_custom_object(GROUP, VERSION, PLURAL)
        keys = [
            (item["metadata"].get("namespace", "default"), item["metadata"]["name"])
            for item in obj.get("items", [])
        ]
        return keys, obj.get("metadata", {}).get("resourceVersion", "")

    def get_job(self, namespace: str, name: str) -> Dict[str, Any]:
        try:
            job = self.batch.read_namespaced_job(name, namespace)
        except ApiException as e:
            raise _translate(e, f"jobs/{namespace}/{name}")
        return self.api_client.sanitize_for_serialization(job)

    def create_job(self, namespace: str, manifest: Dict[str, Any]) -> None:
        try:
            self.batch.create_namespaced_job(namespace, manifest)
        except ApiException as e:
            raise _translate(e, f"jobs/{namespace}/{manifest['metadata']['name']}")

    def watch_declarations(
        self,
        resource_version: str = "",
        timeout_seconds: int = 300,
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (event type, object) for Terraform resources until the server closes the watch."""
        w = watch.Watch()
        kwargs: Dict[str, Any] = {"timeout_seconds": timeout_seconds}
        if resource_version:
            kwargs["resource_version"] = resource_version
        try:
            for event in w.stream(self.custom.list_cluster_custom_object, GROUP, VERSION, PLURAL, **kwargs):
                yield event["type"], event["object"]
        finally:
            w.stop()

    def watch_jobs(self, timeout_seconds: int = 300) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Yield (event type, job dict) for Jobs created by this controller."""
        w = watch.Watch()
        try:
            for event in w.stream(
                self.batch.list_job_for_all_namespaces,
                label_selector=JOB_LABEL_SELECTOR,
                timeout_seconds=timeout_seconds,
            ):
                yield event["type"], self.api_client.sanitize_for_serialization(event["object"])
        finally:
            w.stop()
