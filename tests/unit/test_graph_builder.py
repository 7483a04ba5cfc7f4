import pytest

from topology.errors import (
    DeclarationAbortedError,
    DuplicateDeclarationError,
    InvalidPolicyError,
    UnresolvedReferenceError,
)
from topology.graph import GraphBuilder
from topology.models import (
    ComputeCluster,
    Credential,
    Database,
    Distribution,
    Handle,
    NetworkSegment,
    RemovalPolicy,
    SecurityBoundary,
    StorageBucket,
    SubnetKind,
    SubnetTier,
)
from topology.policy import derive_storage_grant
from stack_test_helpers import graph


@pytest.fixture
def builder() -> GraphBuilder:
    builder = GraphBuilder()
    builder.declare(NetworkSegment(name="net"))
    return builder


# ------------------- declaration -------------------


def test_declare_returns_handle(builder: GraphBuilder):
    handle = builder.declare(ComputeCluster(name="cluster", network="net"))

    assert handle == Handle("cluster", "ComputeCluster")
    assert builder.get(handle).network == "net"


def test_references_become_edges(builder: GraphBuilder):
    builder.declare(ComputeCluster(name="cluster", network="net"))
    graph = builder.build()

    assert graph.dependencies_of("cluster") == {"net"}
    assert graph.dependents_of("net") == {"cluster"}


def test_explicit_dependencies_are_added(builder: GraphBuilder):
    bucket = builder.declare(StorageBucket(name="assets"), deps=["net"])

    assert ("assets", "net") in builder.build().edges
    assert bucket.kind == "StorageBucket"


def test_forward_reference_is_rejected(builder: GraphBuilder):
    with pytest.raises(UnresolvedReferenceError) as exc_info:
        builder.declare(Distribution(name="cdn", origin="assets"))

    assert exc_info.value.entity == "cdn"
    assert exc_info.value.reference == "assets"


def test_unknown_dependency_handle_is_rejected(builder: GraphBuilder):
    with pytest.raises(UnresolvedReferenceError):
        builder.declare(StorageBucket(name="assets"), deps=[Handle("ghost", "Database")])


def test_duplicate_name_is_rejected(builder: GraphBuilder):
    builder.declare(StorageBucket(name="assets"))

    with pytest.raises(DuplicateDeclarationError):
        builder.declare(StorageBucket(name="assets"))


def test_reference_of_wrong_kind_is_rejected(builder: GraphBuilder):
    builder.declare(StorageBucket(name="assets"))

    with pytest.raises(InvalidPolicyError):
        builder.declare(ComputeCluster(name="cluster", network="assets"))


def test_failed_step_aborts_declaration(builder: GraphBuilder):
    with pytest.raises(UnresolvedReferenceError):
        builder.declare(Distribution(name="cdn", origin="missing"))

    assert builder.aborted
    with pytest.raises(DeclarationAbortedError):
        builder.declare(StorageBucket(name="assets"))
    with pytest.raises(DeclarationAbortedError):
        builder.build()


def test_graph_is_handed_off_once(builder: GraphBuilder):
    builder.build()

    with pytest.raises(DeclarationAbortedError):
        builder.declare(StorageBucket(name="assets"))


def test_distribution_without_grant_fails_build(builder: GraphBuilder):
    builder.declare(StorageBucket(name="assets"))
    builder.declare(Distribution(name="cdn", origin="assets"))

    with pytest.raises(InvalidPolicyError, match="exactly one access grant"):
        builder.build()


def test_shared_boundary_fails_build(builder: GraphBuilder):
    builder.declare(Credential(name="creds-a", username="a"))
    builder.declare(Credential(name="creds-b", username="b"))
    builder.declare(SecurityBoundary(name="sg", network="net"))
    builder.declare(Database(name="db-a", network="net", credential="creds-a", boundary="sg"))
    builder.declare(Database(name="db-b", network="net", credential="creds-b", boundary="sg"))

    with pytest.raises(InvalidPolicyError, match="shared"):
        builder.build()


# ------------------- ownership & replacement -------------------


def test_database_takes_ownership_of_credential(builder: GraphBuilder):
    builder.declare(Credential(name="creds", username="postgres"))
    assert not builder.get("creds").ready

    builder.declare(Database(name="db", network="net", credential="creds"))

    assert builder.get("creds").owner == "db"
    assert builder.get("creds").ready


def test_credential_cannot_have_two_owners(builder: GraphBuilder):
    builder.declare(Credential(name="creds", username="postgres"))
    builder.declare(Database(name="db", network="net", credential="creds"))

    with pytest.raises(InvalidPolicyError, match="already owned"):
        builder.declare(Database(name="db-2", network="net", credential="creds"))


def test_replace_refuses_cycles(builder: GraphBuilder):
    builder.declare(ComputeCluster(name="cluster", network="net"))

    with pytest.raises(InvalidPolicyError, match="already depends"):
        builder.evolve("net", deps=["cluster"])


def test_database_must_be_private():
    builder = GraphBuilder()
    builder.declare(
        NetworkSegment(
            name="net",
            tiers=[SubnetTier(name="Public-Subnet", kind=SubnetKind.PUBLIC)],
            nat_gateways=0,
        )
    )
    builder.declare(Credential(name="creds", username="postgres"))

    with pytest.raises(InvalidPolicyError, match="private subnet tier"):
        builder.declare(
            Database(name="db", network="net", credential="creds", placement="Public-Subnet")
        )


# ------------------- ordering -------------------


def test_topological_order_respects_every_edge(graph):
    order = graph.topological_order()
    position = {name: index for index, name in enumerate(order)}

    assert sorted(order) == sorted(graph.entities)
    for dependent, dependency in graph.edges:
        assert position[dependency] < position[dependent]


def test_teardown_runs_in_reverse_and_skips_retained(builder: GraphBuilder):
    builder.declare(StorageBucket(name="assets", removal_policy=RemovalPolicy.RETAIN))
    builder.declare(Distribution(name="cdn", origin="assets"))
    derive_storage_grant(builder, "cdn", "assets")
    builder.declare(ComputeCluster(name="cluster", network="net"))
    graph = builder.build()

    teardown = graph.teardown_order()

    assert "assets" not in teardown
    assert teardown.index("cluster") < teardown.index("net")
    assert teardown.index("cdn-read-assets") < teardown.index("cdn")
