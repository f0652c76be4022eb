[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "orbitstores"
version = "0.1.0"
description = "Replicated key-value, document and event-log stores built on a shared append-only operation log"
requires-python = ">=3.10"
dependencies = [
    "cbor2",
]
keywords = [
    "database",
    "crdt",
    "replication",
    "event-log",
    "key-value",
    "document-store",
    "snapshot",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Database :: Database Engines/Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["orbitstores"]

[tool.hatch.build.targets.sdist]
include = [
    "orbitstores",
    "tests",
]

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
