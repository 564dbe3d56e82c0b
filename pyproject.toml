[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "overseer"
version = "0.0.0.dev0"
description = "Node agent that samples hardware performance counters and publishes per-node contention state"
requires-python = ">=3.10"
keywords = ["pmu", "performance-counters", "kubernetes", "scheduling", "contention", "topology"]
classifiers = [
    "Development Status :: 2 - Pre-Alpha",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Framework :: AsyncIO",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "aiohttp",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
overseer-agent = "overseer.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["overseer"]

[tool.pytest.ini_options]
addopts = "--tb=short"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
