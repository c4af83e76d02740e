from datetime import datetime, timezone

import pytest

from hsme.ingest import store_context
from hsme.observability import NoopRecorder
from hsme.storage import EMBEDDING_DIM, deserialize_float32, init_db
from hsme.worker import AsyncTask, Edge, KnowledgeGraph, Node, Worker, WorkerError


@pytest.fixture
def db(tmp_path):
    conn = init_db(tmp_path / "worker.db")
    yield conn
    conn.close()


class FakeEmbedder:
    def __init__(self, max_words=None, error=None):
        self.max_words = max_words
        self.error = error

    def generate_vector(self, text):
        if self.error is not None:
            raise RuntimeError(self.error)
        words = len(text.split())
        if self.max_words is not None and words > self.max_words:
            raise RuntimeError("the input length exceeds the context length")
        return [float(words)] + [0.25] * (EMBEDDING_DIM - 1)

    def dimension(self):
        return EMBEDDING_DIM

    def model_id(self):
        return "fake"


class FakeExtractor:
    def __init__(self, graphs=None, error=None):
        self.graphs = graphs or {}
        self.error = error

    def extract_entities(self, text):
        if self.error is not None:
            raise RuntimeError(self.error)
        return self.graphs.get(text, KnowledgeGraph())


class RecordingRecorder(NoopRecorder):
    def __init__(self):
        super().__init__()
        self.traces = []
        self.finished = []
        self.spans = []
        self.errors = []

    def enabled(self):
        return True

    def start_trace(self, args):
        self.traces.append(args)
        return super().start_trace(args)

    def finish_trace(self, trace, result):
        self.finished.append(result)

    def finish_span(self, span, result):
        self.spans.append((span.stage_name, result.status))

    def record_error(self, event):
        self.errors.append(event)


def _task(db, memory_id, task_type):
    task_id = db.execute(
        "SELECT id FROM async_tasks WHERE memory_id = ? AND task_type = ?",
        (memory_id, task_type),
    ).fetchone()[0]
    return AsyncTask(id=task_id, memory_id=memory_id, task_type=task_type)


def _status(db, task_id):
    return db.execute("SELECT status FROM async_tasks WHERE id = ?", (task_id,)).fetchone()[0]


def test_lease_returns_none_on_empty_queue(db):
    assert Worker(db).lease_next_task() is None


def test_lease_hands_out_each_task_once(db):
    memory_id = store_context(db, "Redis depends on Docker", "note", "proj")
    worker = Worker(db)
    first = worker.lease_next_task()
    second = worker.lease_next_task()
    assert worker.lease_next_task() is None
    assert {first.task_type, second.task_type} == {"embed", "graph_extract"}
    for task in (first, second):
        assert task.memory_id == memory_id
        assert task.status == "processing"
        assert task.attempt_count == 1
        assert task.leased_until > datetime.now(timezone.utc)


def test_expired_lease_is_leased_again(db):
    store_context(db, "expired lease content", "note", "proj")
    db.execute(
        "UPDATE async_tasks SET status = 'processing', attempt_count = 1, leased_until = '2000-01-01T00:00:00Z'"
    )
    db.commit()
    task = Worker(db).lease_next_task()
    assert task.attempt_count == 2


def test_exhausted_tasks_are_not_leased(db):
    store_context(db, "exhausted content", "note", "proj")
    db.execute("UPDATE async_tasks SET attempt_count = 5")
    db.commit()
    assert Worker(db).lease_next_task() is None


def test_embed_stores_vector_for_every_chunk(db):
    memory_id = store_context(db, "alpha beta gamma", "note", "proj")
    task = _task(db, memory_id, "embed")
    Worker(db, FakeEmbedder()).execute_task(task)
    rows = db.execute(
        "SELECT c.chunk_text, v.embedding FROM memory_chunks c JOIN memory_chunks_vec v ON v.chunk_id = c.id WHERE c.memory_id = ?",
        (memory_id,),
    ).fetchall()
    chunk_count = db.execute(
        "SELECT COUNT(*) FROM memory_chunks WHERE memory_id = ?", (memory_id,)
    ).fetchone()[0]
    assert len(rows) == chunk_count
    for text, blob in rows:
        assert deserialize_float32(blob) == FakeEmbedder().generate_vector(text)
    assert _status(db, task.id) == "completed"


def test_embed_failure_raises_and_leaves_task(db):
    memory_id = store_context(db, "failing embed", "note", "proj")
    task = _task(db, memory_id, "embed")
    with pytest.raises(WorkerError, match="failed to generate vector"):
        Worker(db, FakeEmbedder(error="connection refused")).execute_task(task)
    assert _status(db, task.id) == "pending"


def test_context_length_error_without_split_fails(db):
    memory_id = store_context(db, "short text", "note", "proj")
    task = _task(db, memory_id, "embed")
    embedder = FakeEmbedder(error="Input length exceeds the context length")
    with pytest.raises(WorkerError, match="failed to generate vector"):
        Worker(db, embedder).execute_task(task)


def test_oversized_chunk_is_rechunked(db):
    memory_id = store_context(db, "alpha beta", "note", "proj")
    big_words = [f"word{i}" for i in range(1000)]
    db.execute(
        "UPDATE memory_chunks SET chunk_text = ? WHERE memory_id = ? AND chunk_index = 0",
        (" ".join(big_words), memory_id),
    )
    db.execute(
        "INSERT INTO memory_chunks(memory_id, chunk_index, chunk_text, token_estimate) VALUES(?, 1, 'trailing text', 2)",
        (memory_id,),
    )
    db.commit()
    task = _task(db, memory_id, "embed")
    Worker(db, FakeEmbedder(max_words=800)).execute_task(task)

    rows = db.execute(
        "SELECT id, chunk_index, chunk_text FROM memory_chunks WHERE memory_id = ? ORDER BY chunk_index",
        (memory_id,),
    ).fetchall()
    indexes = [row[1] for row in rows]
    texts = [row[2] for row in rows]
    assert len(rows) >= 3
    assert indexes == list(range(len(rows)))
    assert texts[-1] == "trailing text"
    assert " ".join(texts[:-1]).split() == big_words
    vec_count = db.execute(
        "SELECT COUNT(*) FROM memory_chunks_vec WHERE chunk_id IN (SELECT id FROM memory_chunks WHERE memory_id = ?)",
        (memory_id,),
    ).fetchone()[0]
    assert vec_count == len(rows)
    assert _status(db, task.id) == "completed"


def test_graph_extract_filters_and_stores(db):
    content = "Redis depends on Docker"
    memory_id = store_context(db, content, "note", "proj")
    graph = KnowledgeGraph(
        nodes=[
            Node("TECH", "Redis"),
            Node("tech", " Docker "),
            Node("TECH|ERROR", "Bogus"),
        ],
        edges=[
            Edge("Redis", "docker", "depends_on"),
            Edge("Redis", "Docker", "LIKES"),
        ],
    )
    task = _task(db, memory_id, "graph_extract")
    Worker(db, extractor=FakeExtractor({content: graph})).execute_task(task)

    nodes = db.execute(
        "SELECT type, canonical_name, display_name FROM kg_nodes ORDER BY id"
    ).fetchall()
    assert nodes == [("TECH", "redis", "Redis"), ("TECH", "docker", "Docker")]
    edges = db.execute(
        """
        SELECT s.canonical_name, t.canonical_name, e.relation_type, e.memory_id
          FROM kg_edge_evidence e
          JOIN kg_nodes s ON s.id = e.source_node_id
          JOIN kg_nodes t ON t.id = e.target_node_id
        """
    ).fetchall()
    assert edges == [("redis", "docker", "DEPENDS_ON", memory_id)]
    assert _status(db, task.id) == "completed"


def test_unresolved_edge_is_reconciled_later(db):
    first_text = "first memory"
    second_text = "second memory"
    first_id = store_context(db, first_text, "note", "proj")
    second_id = store_context(db, second_text, "note", "proj")
    extractor = FakeExtractor(
        {
            first_text: KnowledgeGraph(
                nodes=[Node("TECH", "Redis")],
                edges=[Edge("Redis", "Postgres", "DEPENDS_ON")],
            ),
            second_text: KnowledgeGraph(nodes=[Node("TECH", "Postgres")]),
        }
    )
    worker = Worker(db, extractor=extractor)

    worker.execute_task(_task(db, first_id, "graph_extract"))
    assert db.execute("SELECT COUNT(*) FROM kg_unresolved_edges").fetchone()[0] == 1
    assert db.execute("SELECT COUNT(*) FROM kg_edge_evidence").fetchone()[0] == 0

    worker.execute_task(_task(db, second_id, "graph_extract"))
    assert db.execute("SELECT COUNT(*) FROM kg_unresolved_edges").fetchone()[0] == 0
    evidence = db.execute("SELECT relation_type, memory_id FROM kg_edge_evidence").fetchall()
    assert evidence == [("DEPENDS_ON", first_id)]


def test_extractor_failure_raises(db):
    memory_id = store_context(db, "extract me", "note", "proj")
    task = _task(db, memory_id, "graph_extract")
    with pytest.raises(WorkerError, match="failed to extract entities"):
        Worker(db, extractor=FakeExtractor(error="model offline")).execute_task(task)
    assert _status(db, task.id) == "pending"


def test_missing_memory_raises(db):
    task = AsyncTask(id=1, memory_id=999, task_type="embed")
    with pytest.raises(WorkerError, match="failed to get memory content"):
        Worker(db, FakeEmbedder()).execute_task(task)


def test_recorder_sees_successful_trace(db):
    memory_id = store_context(db, "traced content", "note", "proj")
    recorder = RecordingRecorder()
    Worker(db, FakeEmbedder(), recorder=recorder).execute_task(_task(db, memory_id, "embed"))
    assert recorder.traces[0].trace_kind == "worker_task"
    assert recorder.traces[0].task_type == "embed"
    assert [result.status for result in recorder.finished] == ["ok"]
    stages = [stage for stage, _ in recorder.spans]
    assert stages == ["load_memory", "load_chunks", "embed_and_persist_chunks"]
    assert recorder.errors == []


def test_recorder_sees_load_failure(db):
    recorder = RecordingRecorder()
    task = AsyncTask(id=7, memory_id=12345, task_type="embed")
    with pytest.raises(WorkerError):
        Worker(db, FakeEmbedder(), recorder=recorder).execute_task(task)
    assert [result.status for result in recorder.finished] == ["error"]
    assert recorder.errors[0].operation == "load_memory"
    assert recorder.errors[0].memory_id == 12345
    assert recorder.spans == [("load_memory", "error")]