[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "jiboia"
version = "0.0.1"
description = "Building blocks to ingest data over HTTP, accumulate it in memory, upload it to object storage and announce each upload on an external queue."
requires-python = ">=3.10"
keywords = ["ingestion", "logging", "s3", "sqs", "object-storage", "accumulator", "wsgi", "metrics"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: WWW/HTTP :: WSGI :: Application",
    "Topic :: System :: Logging",
]
dependencies = [
    "pyyaml",
    "requests",
    "werkzeug",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["jiboia"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
