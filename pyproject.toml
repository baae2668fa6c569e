[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "pulsarsec"
version = "0.1.0"
description = "Building blocks of a modular runtime security observability agent: events, an event bus, module contexts, a process tracker, configuration and filtering policy"
requires-python = ">=3.10"
keywords = ["security", "observability", "monitoring", "events", "process-tracking", "asyncio"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: Security",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "semver",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["pulsarsec"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
