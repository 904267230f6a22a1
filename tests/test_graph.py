from pathlib import Path

import pytest
from conftest import resource, write_manifest

from driftgate.errors import CycleDetected, DuplicateIdentifier, ManifestError, UnresolvedDependency
from driftgate.graph import ResourceGraphBuilder, load_manifest, stable_topological_order
from driftgate.models import ResourceDeclaration, ResourceKind


def test_ranks_follow_dependencies_with_lexical_ties() -> None:
    graph = ResourceGraphBuilder().build(
        [
            resource("web-b", depends_on=["subnet-b"]),
            resource("subnet-b", kind="subnet", depends_on=["vpc"]),
            resource("subnet-a", kind="subnet", depends_on=["vpc"]),
            resource("vpc", kind="network"),
            resource("web-a", depends_on=["subnet-a"]),
        ]
    )
    assert graph.order == ("vpc", "subnet-a", "subnet-b", "web-a", "web-b")
    assert [graph.rank(resource_id) for resource_id in graph.order] == [0, 1, 2, 3, 4]
    assert graph.node("subnet-a").kind == ResourceKind.SUBNET
    assert graph.dependents("vpc") == ("subnet-a", "subnet-b")
    assert graph.transitive_dependents("vpc") == ["subnet-a", "subnet-b", "web-a", "web-b"]


def test_ranks_are_independent_of_declaration_order() -> None:
    declarations = [
        resource("db", kind="database", depends_on=["net"]),
        resource("net", kind="network"),
        resource("app", depends_on=["db", "net"]),
        resource("bucket", kind="storage-bucket"),
    ]
    builder = ResourceGraphBuilder()
    forward = builder.build(declarations)
    backward = builder.build(list(reversed(declarations)))
    assert forward.order == backward.order == ("bucket", "net", "db", "app")


def test_accepts_declaration_models() -> None:
    declaration = ResourceDeclaration(resource_id="n1", kind=ResourceKind.NETWORK, attributes={"cidr": "10.0.0.0/16"})
    graph = ResourceGraphBuilder().build([declaration])
    assert "n1" in graph
    assert len(graph) == 1
    assert graph.node("n1").attributes == {"cidr": "10.0.0.0/16"}


def test_duplicate_identifier_is_rejected() -> None:
    with pytest.raises(DuplicateIdentifier) as excinfo:
        ResourceGraphBuilder().build([resource("n1", kind="network"), resource("n1", kind="network")])
    assert excinfo.value.resource_id == "n1"


def test_unresolved_dependency_is_rejected() -> None:
    with pytest.raises(UnresolvedDependency) as excinfo:
        ResourceGraphBuilder().build([resource("c1", depends_on=["ghost"])])
    assert excinfo.value.resource_id == "c1"
    assert excinfo.value.dependency == "ghost"


def test_cycle_is_rejected_with_members() -> None:
    with pytest.raises(CycleDetected) as excinfo:
        ResourceGraphBuilder().build(
            [
                resource("a", depends_on=["c"]),
                resource("b", depends_on=["a"]),
                resource("c", depends_on=["b"]),
                resource("root", kind="network"),
            ]
        )
    assert excinfo.value.members == ["a", "b", "c"]


def test_self_dependency_is_a_cycle() -> None:
    with pytest.raises(CycleDetected):
        ResourceGraphBuilder().build([resource("a", depends_on=["a"])])


def test_unknown_kind_is_a_manifest_error() -> None:
    with pytest.raises(ManifestError):
        ResourceGraphBuilder().build([{"id": "x", "kind": "mainframe"}])


def test_stable_topological_order_ignores_external_dependencies() -> None:
    assert stable_topological_order({"b": ["a", "outside"], "a": []}) == ["a", "b"]


def test_load_manifest(tmp_path: Path) -> None:
    path = write_manifest(
        tmp_path / "desired.json",
        resource("n1", kind="network", cidr="10.0.0.0/16"),
        resource("c1", depends_on=["n1"], size="small"),
    )
    declarations = load_manifest(path)
    assert [declaration.resource_id for declaration in declarations] == ["n1", "c1"]
    assert declarations[1].depends_on == ["n1"]


def test_load_manifest_errors(tmp_path: Path) -> None:
    with pytest.raises(ManifestError):
        load_manifest(tmp_path / "missing.json")
    bad = tmp_path / "bad.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(ManifestError):
        load_manifest(bad)
    wrong_shape = tmp_path / "wrong.json"
    wrong_shape.write_text('{"items": []}', encoding="utf-8")
    with pytest.raises(ManifestError):
        load_manifest(wrong_shape)
