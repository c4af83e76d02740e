"""HTTP client for an Ollama server: text embeddings and graph extraction."""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from array import array
from contextlib import closing
from typing import Any

from hsme.worker import Edge, KnowledgeGraph, Node

__all__ = [
    "DEFAULT_BASE_URL",
    "DEFAULT_TIMEOUT",
    "DEFAULT_EMBEDDING_MODEL",
    "DEFAULT_EMBEDDING_DIM",
    "DEFAULT_EXTRACTION_MODEL",
    "OllamaError",
    "OllamaClient",
    "OllamaEmbedder",
    "OllamaExtractor",
    "parse_extracted_kg",
]

_log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_TIMEOUT = 120.0
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
DEFAULT_EMBEDDING_DIM = 768
DEFAULT_EXTRACTION_MODEL = "phi3.5"

_PREVIEW_CHARS = 200

_SYSTEM_PROMPT = """You are a technical graph extractor. Analyze the provided text (may be in Spanish or English) and extract technical entities and their relationships. 

EXAMPLES:
Text: "El servicio Redis depende de Docker para funcionar."
Output: {"nodes": [{"type": "TECH", "name": "Redis"}, {"type": "TECH", "name": "Docker"}], "edges": [{"source": "Redis", "target": "Docker", "relation": "DEPENDS_ON"}]}

Text: "Fix: Corregido el bug en auth.go que causaba error 500."
Output: {"nodes": [{"type": "FILE", "name": "auth.go"}, {"type": "ERROR", "name": "error 500"}], "edges": [{"source": "auth.go", "target": "error 500", "relation": "RESOLVES"}]}

RULES:
- Return ONLY valid JSON. No prose, no markdown code blocks.
- Preserve technical names exactly (e.g. "Entidad Alfa").
- If no entities are found, return {"nodes": [], "edges": []}."""


class OllamaError(RuntimeError):
    """Raised when the Ollama server cannot be reached or answers badly."""


def _decode_first(text: str) -> Any:
    """Decode the first JSON value in ``text``, ignoring anything after it."""
    value, _ = json.JSONDecoder().raw_decode(text.lstrip(" \t\r\n"))
    return value


class OllamaClient:
    """Connection settings shared by the embedder and the extractor."""

    def __init__(self, base_url: str = "", timeout: float = DEFAULT_TIMEOUT) -> None:
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, payload: dict[str, Any], label: str) -> tuple[int, bytes]:
        request = urllib.request.Request(
            self.base_url + path,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                return response.status, response.read()
        except urllib.error.HTTPError as exc:
            with closing(exc):
                return exc.code, exc.read()
        except (urllib.error.URLError, OSError, ValueError) as exc:
            raise OllamaError(f"failed to execute {label} request: {exc}") from exc


class OllamaEmbedder:
    """Produces embedding vectors through ``/api/embeddings``."""

    def __init__(self, client: OllamaClient, model: str = "", dim: int = 0) -> None:
        self.client = client
        self.model = model or DEFAULT_EMBEDDING_MODEL
        self._dim = dim or DEFAULT_EMBEDDING_DIM

    def generate_vector(self, text: str) -> list[float]:
        """Embed ``text``; values are rounded to single precision."""
        status, body = self.client._post(
            "/api/embeddings", {"model": self.model, "prompt": text}, "embed"
        )
        if status != 200:
            if not body:
                raise OllamaError(f"ollama API returned status {status} for embeddings")
            raise OllamaError(
                f"ollama API returned status {status} for embeddings: "
                f"{body.decode('utf-8', errors='replace')}"
            )
        try:
            decoded = _decode_first(body.decode("utf-8", errors="replace"))
            if not isinstance(decoded, dict):
                raise ValueError("response is not an object")
            values = decoded.get("embedding") or []
            if not isinstance(values, list):
                raise ValueError("embedding is not a list")
            return list(array("f", (float(value) for value in values)))
        except (ValueError, TypeError, OverflowError) as exc:
            raise OllamaError(f"failed to decode embed response: {exc}") from exc

    def dimension(self) -> int:
        return self._dim

    def model_id(self) -> str:
        """Stable model identifier compared with the stored baseline at startup."""
        return self.model


def _field(obj: dict[str, Any], name: str) -> Any:
    value = None
    for key, item in obj.items():
        if isinstance(key, str) and key.lower() == name:
            value = item
    return value


def _str_field(obj: dict[str, Any], name: str) -> str:
    value = _field(obj, name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{name} is not a string")
    return value


def _objects(obj: dict[str, Any], name: str) -> list[dict[str, Any]]:
    items = _field(obj, name)
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError(f"{name} is not a list")
    out = []
    for item in items:
        if item is None:
            out.append({})
        elif isinstance(item, dict):
            out.append(item)
        else:
            raise ValueError(f"{name} holds a non-object")
    return out


def _graph_from(value: Any) -> KnowledgeGraph:
    if value is None:
        return KnowledgeGraph()
    if not isinstance(value, dict):
        raise ValueError("graph is not an object")
    nodes = [
        Node(type=_str_field(item, "type"), name=_str_field(item, "name"))
        for item in _objects(value, "nodes")
    ]
    edges = [
        Edge(
            source=_str_field(item, "source"),
            target=_str_field(item, "target"),
            relation=_str_field(item, "relation"),
        )
        for item in _objects(value, "edges")
    ]
    return KnowledgeGraph(nodes=nodes, edges=edges)


def parse_extracted_kg(raw: str) -> KnowledgeGraph:
    """Parse a model's graph output, tolerating prose around the JSON.

    The first JSON value is tried directly; failing that, the first balanced
    ``{...}`` object is used. Anything unparseable yields an empty graph.
    """
    try:
        return _graph_from(_decode_first(raw))
    except ValueError:
        pass

    start = raw.find("{")
    if start < 0:
        return KnowledgeGraph()
    depth = 0
    in_string = False
    escape = False
    for index, char in enumerate(raw[start:], start=start):
        if escape:
            escape = False
            continue
        if char == "\\":
            escape = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                try:
                    return _graph_from(json.loads(raw[start : index + 1]))
                except ValueError:
                    return KnowledgeGraph()
    return KnowledgeGraph()


class OllamaExtractor:
    """Extracts technical entities and relations through ``/api/generate``."""

    def __init__(self, client: OllamaClient, model: str = "") -> None:
        self.client = client
        self.model = model or DEFAULT_EXTRACTION_MODEL

    def extract_entities(self, text: str) -> KnowledgeGraph:
        """Ask the model for a graph of ``text``; unusable output gives an empty graph."""
        payload = {
            "model": self.model,
            "prompt": _SYSTEM_PROMPT + "\n\nText to analyze:\n" + text,
            "format": "json",
            "stream": False,
            "options": {"temperature": 0.0},
        }
        status, body = self.client._post("/api/generate", payload, "extract")
        if status != 200:
            raise OllamaError(f"ollama API returned status {status} for extraction")
        try:
            decoded = _decode_first(body.decode("utf-8", errors="replace"))
            if not isinstance(decoded, dict):
                raise ValueError("response is not an object")
            response = decoded.get("response") or ""
            if not isinstance(response, str):
                raise ValueError("response is not a string")
        except ValueError as exc:
            raise OllamaError(f"failed to decode extract response: {exc}") from exc

        kg = parse_extracted_kg(response)
        if not kg.nodes and not kg.edges and response.strip():
            preview = response
            if len(preview) > _PREVIEW_CHARS:
                preview = preview[:_PREVIEW_CHARS] + "…"
            _log.warning("graph extraction gave nothing usable, continuing without it (preview: %s)", preview)
        return kg