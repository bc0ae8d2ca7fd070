[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "logenc"
version = "0.1.0"
description = "Low-level JSON and CBOR encoders for structured log records, with a CBOR-to-JSON decoder"
requires-python = ">=3.10"
dependencies = []
keywords = ["logging", "json", "cbor", "structured-logging", "encoder", "decoder"]
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
    "Topic :: System :: Logging",
    "Topic :: File Formats :: JSON",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["logenc"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
