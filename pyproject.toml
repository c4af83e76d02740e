[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "hsme"
version = "1.0.1"
description = "Local memory store on SQLite with chunked full-text and vector search and a knowledge graph"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "sqlite",
    "fts5",
    "vector-search",
    "knowledge-graph",
    "memory",
    "embeddings",
    "rrf",
    "ollama",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database",
    "Topic :: Text Processing :: Indexing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["hsme"]

[tool.hatch.build.targets.sdist]
include = ["hsme", "tests", "README.md"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true

[tool.coverage.run]
source = ["hsme"]
branch = true
