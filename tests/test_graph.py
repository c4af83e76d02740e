import pytest

from hsme.chunking import canonicalize_name, compute_hash
from hsme.graph import DependencyEdge, graph_search, trace_dependencies
from hsme.storage import init_db


@pytest.fixture
def db(tmp_path):
    conn = init_db(tmp_path / "graph.db")
    yield conn
    conn.close()


def _memory(db, text):
    return db.execute(
        "INSERT INTO memories(raw_content, content_hash) VALUES (?, ?)",
        (text, compute_hash(text)),
    ).lastrowid


def _node(db, name, node_type="TECH"):
    canonical, display = canonicalize_name(name)
    return db.execute(
        "INSERT INTO kg_nodes(type, canonical_name, display_name) VALUES (?, ?, ?)",
        (node_type, canonical, display),
    ).lastrowid


def _edge(db, source, target, relation, memory):
    db.execute(
        "INSERT INTO kg_edge_evidence(source_node_id, target_node_id, relation_type, memory_id) "
        "VALUES (?, ?, ?, ?)",
        (source, target, relation, memory),
    )


@pytest.fixture
def chain(db):
    m1 = _memory(db, "Redis depends on Docker")
    m2 = _memory(db, "Docker depends on Linux")
    redis = _node(db, "Redis")
    docker = _node(db, "Docker")
    linux = _node(db, "Linux")
    _edge(db, redis, docker, "DEPENDS_ON", m1)
    _edge(db, docker, linux, "DEPENDS_ON", m2)
    db.commit()
    return {"m1": m1, "m2": m2, "redis": redis, "docker": docker, "linux": linux}


def test_downstream_walk(db, chain):
    trace = trace_dependencies(db, "Redis", "downstream", 5, 100)
    assert [n["name"] for n in trace.nodes] == ["Redis", "Docker", "Linux"]
    assert [n["id"] for n in trace.nodes] == [chain["redis"], chain["docker"], chain["linux"]]
    assert trace.edges == [
        DependencyEdge(chain["redis"], chain["docker"], "DEPENDS_ON", chain["m1"]),
        DependencyEdge(chain["docker"], chain["linux"], "DEPENDS_ON", chain["m2"]),
    ]
    assert trace.truncated is False
    assert trace.entity == "Redis"


def test_upstream_from_root_finds_only_root(db, chain):
    trace = trace_dependencies(db, "Redis", "upstream", 5, 100)
    assert [n["id"] for n in trace.nodes] == [chain["redis"]]
    assert trace.edges == []


def test_upstream_from_leaf(db, chain):
    trace = trace_dependencies(db, "Linux", "upstream", 5, 100)
    assert [n["name"] for n in trace.nodes] == ["Linux", "Docker", "Redis"]


def test_depth_limit(db, chain):
    trace = trace_dependencies(db, "Redis", "downstream", 1, 100)
    assert [n["name"] for n in trace.nodes] == ["Redis", "Docker"]
    assert trace.edges == [
        DependencyEdge(chain["redis"], chain["docker"], "DEPENDS_ON", chain["m1"])
    ]


def test_node_cap_sets_truncated(db, chain):
    trace = trace_dependencies(db, "Docker", "both", 5, 1)
    assert [n["name"] for n in trace.nodes] == ["Docker"]
    assert trace.truncated is True
    assert trace.edges == []


def test_non_positive_limits_use_defaults(db, chain):
    trace = trace_dependencies(db, "Redis", "both", 0, 0)
    assert {n["id"] for n in trace.nodes} == {chain["redis"], chain["docker"], chain["linux"]}
    assert trace.truncated is False


def test_canonical_match_is_case_insensitive(db, chain):
    trace = trace_dependencies(db, "  REDIS ", "downstream", 5, 100)
    assert trace.nodes[0]["id"] == chain["redis"]


def test_unknown_entity(db, chain):
    trace = trace_dependencies(db, "Kubernetes", "both", 5, 100)
    assert (trace.entity, trace.nodes, trace.edges, trace.truncated) == (
        "Kubernetes",
        [],
        [],
        False,
    )


def test_node_type_is_reported(db, chain):
    trace = trace_dependencies(db, "Redis", "downstream", 1, 100)
    assert {n["type"] for n in trace.nodes} == {"TECH"}


def test_graph_search_returns_evidence_memories(db, chain):
    results = graph_search(db, "dock", 10)
    assert {r.id for r in results} == {chain["m1"], chain["m2"]}
    assert {r.score for r in results} == {1.0}


def test_graph_search_respects_limit_and_misses(db, chain):
    assert len(graph_search(db, "dock", 1)) == 1
    assert graph_search(db, "kubernetes", 10) == []