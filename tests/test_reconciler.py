"""Tests for the Terraform -> Job reconciler and the cluster client error mapping."""

import json
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from kubernetes.client.exceptions import ApiException

from terraoperator.controller.cluster import ClusterClient, CreateConflict, NotFound
from terraoperator.controller.reconciler import (
    ModuleReconciler,
    Outcome,
    job_for_declaration,
    job_name_for,
)
from terraoperator.model import InvalidDeclaration, ModuleDeclaration


def resource(name="network", namespace="infra", **spec) -> Dict[str, Any]:
    body = {"modulePath": "https://example/repo.git", "version": "1.6.0"}
    body.update(spec)
    return {
        "apiVersion": "iac.terraoperator.com/v1alpha1",
        "kind": "Terraform",
        "metadata": {"name": name, "namespace": namespace, "uid": f"uid-{name}"},
        "spec": body,
    }


class FakeCluster:
    """In-memory stand-in for ClusterClient."""

    def __init__(self):
        self.declarations: Dict[tuple, ModuleDeclaration] = {}
        self.jobs: Dict[tuple, Dict[str, Any]] = {}
        self.create_calls: List[Dict[str, Any]] = []
        self.create_error: Optional[Exception] = None
        self.race = False

    def add(self, obj: Dict[str, Any]) -> ModuleDeclaration:
        decl = ModuleDeclaration.from_resource(obj)
        self.declarations[(decl.namespace, decl.name)] = decl
        return decl

    def get_declaration(self, namespace, name):
        try:
            return self.declarations[(namespace, name)]
        except KeyError:
            raise NotFound(f"{namespace}/{name}")

    def get_job(self, namespace, name):
        try:
            return self.jobs[(namespace, name)]
        except KeyError:
            raise NotFound(f"{namespace}/{name}")

    def create_job(self, namespace, manifest):
        self.create_calls.append(manifest)
        if self.create_error is not None:
            raise self.create_error
        key = (namespace, manifest["metadata"]["name"])
        if self.race or key in self.jobs:
            self.jobs[key] = manifest
            raise CreateConflict(str(key))
        self.jobs[key] = manifest


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def reconciler(cluster):
    return ModuleReconciler(cluster, image="runner:test", agent_url=None)


class TestReconcile:

    def test_missing_job_is_created_once_under_duplicate_delivery(self, cluster, reconciler):
        cluster.add(resource())

        assert reconciler.reconcile("infra", "network") is Outcome.CREATED
        assert reconciler.reconcile("infra", "network") is Outcome.EXISTS
        assert len(cluster.create_calls) == 1
        assert ("infra", "network") in cluster.jobs

    def test_existing_job_is_left_alone_even_after_spec_drift(self, cluster, reconciler):
        cluster.add(resource())
        reconciler.reconcile("infra", "network")

        cluster.add(resource(version="1.7.0", variables={"region": "us-east-1"}))
        assert reconciler.reconcile("infra", "network") is Outcome.EXISTS

        assert len(cluster.create_calls) == 1
        env = {e["name"]: e["value"] for e in cluster.jobs[("infra", "network")]["spec"]["template"]["spec"]["containers"][0]["env"]}
        assert env["TF_VERSION"] == "1.6.0"

    def test_externally_deleted_job_is_recreated(self, cluster, reconciler):
        cluster.add(resource())
        reconciler.reconcile("infra", "network")
        del cluster.jobs[("infra", "network")]

        assert reconciler.reconcile("infra", "network") is Outcome.CREATED
        assert len(cluster.create_calls) == 2

    def test_deleted_declaration_is_a_noop(self, cluster, reconciler):
        assert reconciler.reconcile("infra", "gone") is Outcome.DELETED
        assert cluster.create_calls == []

    def test_create_conflict_counts_as_success(self, cluster, reconciler):
        cluster.add(resource())
        cluster.race = True

        assert reconciler.reconcile("infra", "network") is Outcome.RACED

    def test_unexpected_errors_propagate(self, cluster, reconciler):
        cluster.add(resource())
        cluster.create_error = ApiException(status=500, reason="Internal Server Error")

        with pytest.raises(ApiException):
            reconciler.reconcile("infra", "network")

    def test_invalid_declaration_propagates(self, cluster, reconciler):
        def broken(namespace, name):
            return ModuleDeclaration.from_resource(resource(modulePath=""))

        cluster.get_declaration = broken
        with pytest.raises(InvalidDeclaration):
            reconciler.reconcile("infra", "network")
        assert cluster.create_calls == []


class TestJobManifest:

    def test_job_spec_mirrors_declaration(self):
        decl = ModuleDeclaration.from_resource(
            resource(variables={"zone": "b", "region": "us-east-1"}, mode="apply")
        )

        job = job_for_declaration(decl, image="runner:test", agent_url="http://agent:8080")

        meta = job["metadata"]
        assert meta["name"] == "network"
        assert meta["namespace"] == "infra"
        assert meta["labels"] == {"createdby": "terraoperator", "terraoperatorObjectName": "network"}
        assert meta["ownerReferences"] == [{
            "apiVersion": "iac.terraoperator.com/v1alpha1",
            "kind": "Terraform",
            "name": "network",
            "uid": "uid-network",
            "controller": True,
            "blockOwnerDeletion": True,
        }]

        spec = job["spec"]
        assert spec["backoffLimit"] == 0
        pod = spec["template"]["spec"]
        assert pod["restartPolicy"] == "Never"
        [container] = pod["containers"]
        assert container["name"] == "terra-operator-runner"
        assert container["image"] == "runner:test"
        assert container["command"] == ["terraoperator", "run-job"]
        env = {e["name"]: e["value"] for e in container["env"]}
        assert env == {
            "MODULEPATH": "https://example/repo.git",
            "TF_VERSION": "1.6.0",
            "TF_VARIABLES": json.dumps({"region": "us-east-1", "zone": "b"}),
            "TF_MODE": "apply",
            "AGENT_URL": "http://agent:8080",
        }

    def test_job_name_is_deterministic_and_bounded(self):
        long_name = "a" * 80
        decl = ModuleDeclaration(name=long_name, namespace="ns", module_path="m", version="1.6.0")

        first = job_name_for(decl)
        assert first == job_name_for(decl)
        assert len(first) <= 63
        assert first != job_name_for(ModuleDeclaration(name="a" * 81, namespace="ns", module_path="m", version="1.6.0"))

        assert job_name_for(ModuleDeclaration(name="short", namespace="ns", module_path="m", version="1.6.0")) == "short"

    def test_long_declaration_name_keeps_labels_within_limit(self):
        decl = ModuleDeclaration(name="a" * 80, namespace="ns", module_path="m", version="1.6.0", uid="u")

        job = job_for_declaration(decl, image="runner:test", agent_url=None)

        labels = job["metadata"]["labels"]
        assert all(len(value) <= 63 for value in labels.values())
        assert labels["terraoperatorObjectName"] == job["metadata"]["name"]
        assert job["metadata"]["ownerReferences"][0]["name"] == "a" * 80


class TestModuleDeclaration:

    def test_defaults(self):
        decl = ModuleDeclaration.from_resource(resource())

        assert decl.variables == {}
        assert decl.mode == "plan"
        assert decl.key == "infra/network"

    @pytest.mark.parametrize("spec", [{"modulePath": ""}, {"version": ""}, {"mode": "destroy"}])
    def test_invalid(self, spec):
        with pytest.raises(InvalidDeclaration):
            ModuleDeclaration.from_resource(resource(**spec))


class TestClusterClient:

    @pytest.fixture
    def client(self):
        api_client = MagicMock()
        api_client.sanitize_for_serialization.side_effect = lambda obj: obj
        c = ClusterClient(api_client)
        c.custom = MagicMock()
        c.batch = MagicMock()
        return c

    def test_declaration_not_found(self, client):
        client.custom.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")

        with pytest.raises(NotFound):
            client.get_declaration("infra", "network")

    def test_declaration_is_parsed(self, client):
        client.custom.get_namespaced_custom_object.return_value = resource()

        decl = client.get_declaration("infra", "network")

        assert decl.uid == "uid-network"
        client.custom.get_namespaced_custom_object.assert_called_once_with(
            "iac.terraoperator.com", "v1alpha1", "infra", "terraforms", "network"
        )

    def test_job_lookup_and_conflict(self, client):
        client.batch.read_namespaced_job.side_effect = ApiException(status=404, reason="Not Found")
        with pytest.raises(NotFound):
            client.get_job("infra", "network")

        client.batch.create_namespaced_job.side_effect = ApiException(status=409, reason="Conflict")
        with pytest.raises(CreateConflict):
            client.create_job("infra", {"metadata": {"name": "network"}})

    def test_other_api_errors_are_not_translated(self, client):
        client.batch.create_namespaced_job.side_effect = ApiException(status=403, reason="Forbidden")

        with pytest.raises(ApiException):
            client.create_job("infra", {"metadata": {"name": "network"}})

    def test_list_declaration_keys(self, client):
        client.custom.list_cluster_custom_object.return_value = {
            "metadata": {"resourceVersion": "42"},
            "items": [resource("a", "ns1"), resource("b", "ns2")],
        }

        keys, rv = client.list_declaration_keys()

        assert keys == [("ns1", "a"), ("ns2", "b")]
        assert rv == "42"
