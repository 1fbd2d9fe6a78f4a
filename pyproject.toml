[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "chatharness"
version = "0.1.0"
description = "Provider-neutral chat harness: normalized chat schema, model catalog, fallback routing, TOML config and an ASGI HTTP API."
requires-python = ">=3.11"
dependencies = [
    "starlette",
]
keywords = [
    "llm",
    "chat",
    "harness",
    "fallback",
    "router",
    "sse",
    "asgi",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
    "Topic :: Software Development :: Libraries :: Python Modules",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
    "httpx",
]

[tool.hatch.build.targets.wheel]
packages = ["chatharness"]

[tool.hatch.build.targets.sdist]
include = [
    "chatharness",
    "tests",
    "pyproject.toml",
    "README.md",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"

[tool.ruff.lint]
select = ["E", "F", "I", "B", "UP"]

[tool.mypy]
python_version = "3.11"
warn_unused_ignores = true
warn_redundant_casts = true
