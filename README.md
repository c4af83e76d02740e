# hsme

A local, single-file memory store built on SQLite. Documents are split into
chunks and indexed for full-text search with FTS5. A worker adds vector
embeddings and a small knowledge graph of technical entities. Queries fuse
lexical and vector rankings with reciprocal rank fusion, and can optionally
favour recent material.

The package uses only the standard library. Embeddings and entity extraction
come from a local Ollama server over HTTP. Python's `sqlite3` module must be
built against an SQLite with FTS5 and `RETURNING` support (3.35 or later).

## What it stores

- **Memories**: raw documents with a SHA-256 hash of the NFC-normalised text.
  Content is deduplicated among active memories, and a memory can supersede
  an older one.
- **Chunks**: pieces of each memory. A piece is split further while it has
  more than 800 words or more than 3200 bytes of UTF-8, first on blank
  lines, then on single newlines, then on spaces.
- **Chunk vectors**: little-endian float32 blobs of 768 values in the table
  `memory_chunks_vec`. Nearest neighbours are found by a full scan ordered by
  the `vec_distance_l2` SQL function that `init_db` registers.
- **Async tasks**: one `embed` and one `graph_extract` task per memory, leased
  and processed by `hsme.worker.Worker`.
- **Knowledge graph**: nodes of type `TECH`, `ERROR`, `FILE` or `CMD`, and edges
  of type `DEPENDS_ON`, `RESOLVES` or `CAUSES`, each tied to the memory it
  came from. Edges whose endpoints are not yet known are kept in
  `kg_unresolved_edges` and linked once both nodes exist.

## Quick start

```python
from hsme.bootstrap import load_from_env, open_with_worker
from hsme.ingest import store_context
from hsme.search import fuzzy_search, exact_search
from hsme.recall import recall_recent_session
from hsme.graph import trace_dependencies
from hsme.worker import Worker

config = load_from_env()
db, embedder, extractor = open_with_worker(config)

memory_id = store_context(db, "Redis depends on Docker to run.", "note", "demo")

worker = Worker(db, embedder, extractor)
while (task := worker.lease_next_task()) is not None:
    worker.execute_task(task)

for hit in fuzzy_search(db, embedder, "redis docker", 5, "demo"):
    print(hit.memory_id, hit.score, hit.vector_coverage)

print(exact_search(db, "Docker", 10, "demo"))
print(recall_recent_session(db, 5, "demo"))
print(trace_dependencies(db, "redis", "both", 5, 100))
```

Storing the same content again returns the existing memory's id. Pass
`force_reingest=True` together with `supersedes_id` set to that id to replace
it; any other forced re-ingest raises `hsme.ingest.DuplicateContentError`.

## Modules

- `hsme.bootstrap`: `AppConfig`, `load_from_env()`, `open_db()`,
  `open_with_embedder()`, `open_with_worker()`. Failures raise
  `BootstrapError`. `AppConfig.apply_flag_overrides()` takes an
  `argparse.Namespace` or a mapping and overlays non-empty `db`,
  `ollama-host`, `embedding-model` and `extraction-model` values.
- `hsme.storage`: `init_db(path)` opens the database (WAL, a 5 s busy
  timeout, foreign keys on, `BEGIN IMMEDIATE` transactions) and applies the
  schema; `serialize_float32` and `deserialize_float32` convert vectors.
- `hsme.system_config`: `validate_embedding_config(db, embedder)` records the
  embedding model and dimension on first open and raises
  `EmbeddingConfigMismatch` when they later differ.
- `hsme.ingest`: `store_context()`.
- `hsme.search`: `fuzzy_search()`, `lexical_search()`, `vector_search()`,
  `exact_search()` and the `Embedder` protocol. If embedding the query or
  the vector search fails, `fuzzy_search` logs it and uses lexical results
  only; superseded memories have their score halved.
- `hsme.results`: the result records and `rrf(limit, *result_sets)`.
- `hsme.recall`: `recall_recent_session()` returns the newest active
  `session_summary` memories (default 5, at most 50).
- `hsme.graph`: `graph_search()` and `trace_dependencies()`; direction is
  `both`, `downstream` or `upstream`, and `truncated` reports whether more
  than `max_nodes` nodes were reachable.
- `hsme.worker`: `Worker.lease_next_task()` leases the oldest pending task,
  or one whose lease expired, for five minutes, while it has fewer than five
  attempts. `Worker.execute_task()` raises `WorkerError` on failure. A chunk
  the embedder rejects as too long for its context is split in place and the
  memory's chunks are embedded again.
- `hsme.ollama`: `OllamaClient`, `OllamaEmbedder`, `OllamaExtractor` and
  `parse_extracted_kg()`, which tolerates prose around the model's JSON.
  HTTP and decoding failures raise `OllamaError`.
- `hsme.admin`: `backup()`, `restore()`, `retry_failed_tasks()`.
- `hsme.chunking`: `split`, `estimate_tokens`, `compute_hash`,
  `canonicalize_name`, `canonicalize_type`.
- `hsme.decay`: `DecayConfig`, `load_decay_config()`, `get_decay_config()`,
  `set_decay_config()`, `age_in_days()`, `decay_factor()`.
- `hsme.observability` and `hsme.obs_config`: trace, span and event records,
  the `Recorder` interface, `NoopRecorder`, `run_span()`, `next_id()`,
  `ObservabilityConfig` and `load_config_from_env()`.

## Configuration

Application settings are read by `hsme.bootstrap.load_from_env()`:

| Variable           | Default            |
|--------------------|--------------------|
| `SQLITE_DB_PATH`   | `data/engram.db`   |
| `OLLAMA_HOST`      | empty, meaning `http://localhost:11434` |
| `EMBEDDING_MODEL`  | `nomic-embed-text` |
| `EXTRACTION_MODEL` | `phi3.5`           |

The embedding dimension is fixed at 768. `open_with_embedder` and
`open_with_worker` check the embedder against the values recorded in the
database and raise `BootstrapError` on a mismatch.

Recency decay, read by `open_db` through `load_decay_config()`:

| Variable             | Meaning                                         |
|----------------------|-------------------------------------------------|
| `RRF_TIME_DECAY`     | `on` or `off` (default `off`)                   |
| `RRF_HALF_LIFE_DAYS` | positive number of days (default `14`)          |

Invalid values raise `DecayConfigError`. When decay is on, `fuzzy_search`
weights results by `0.5 ** (age_days / half_life_days)` for queries that
mention recency ("latest", "recent", "last", "today", "yesterday") and adds
the newest matching memories as candidates; `exact_search` always applies
the decay and orders its merged results by score.

Observability settings, read by `hsme.obs_config.load_config_from_env()`:

| Variable                          | Default |
|-----------------------------------|---------|
| `HSME_OBS_LEVEL`                  | `off` (`basic`, `debug`, `trace`) |
| `HSME_OBS_SAMPLE_RATE`            | `0.10`, clamped to 0–1 |
| `HSME_OBS_SLOW_THRESHOLDS`        | e.g. `mcp.request=100ms,worker.execute=2s` |
| `HSME_OBS_RAW_RETENTION_DAYS`     | `7`     |
| `HSME_OBS_MINUTE_RETENTION_DAYS`  | `7`     |
| `HSME_OBS_HOUR_RETENTION_DAYS`    | `30`    |
| `HSME_OBS_DAY_RETENTION_DAYS`     | `365`   |
| `HSME_OBS_FLUSH_INTERVAL_SECONDS` | `60`    |

## Administration

```python
from hsme.admin import backup, restore, retry_failed_tasks

backup("data/engram.db", "backups/engram.db")
restore("data/engram.db", "backups/engram.db")
count = retry_failed_tasks(db)
```

`restore` refuses a backup that fails SQLite's integrity check. It copies
the backup to `restore.db.tmp` beside the target, removes stale `-wal` and
`-shm` files, then renames the copy into place. `retry_failed_tasks` resets
failed tasks and tasks with five or more attempts to pending and returns how
many it reset. Failures raise `AdminError`.

## What it does not do

- There is no command-line program and no server; the package is a library.
- The only recorder is `NoopRecorder`, which keeps nothing. The schema
  creates the `obs_*` tables, views, default retention policies and rollup
  jobs, but nothing in the package writes traces or events to them, rolls
  metrics up or applies retention.
- Vector search scans every stored vector; there is no approximate index.