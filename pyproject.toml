[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fencedheap"
version = "1.0.0"
description = "A fenced heap allocator over simulated sbrk memory, with a resource-leak tracker and a small unit-test reporting kit"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "allocator",
    "heap",
    "sbrk",
    "malloc",
    "memory fences",
    "leak detection",
    "debugging",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: POSIX",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Debuggers",
    "Topic :: Software Development :: Testing",
    "Topic :: Education",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
fencedheap = "fencedheap.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["fencedheap"]

[tool.hatch.build.targets.sdist]
include = ["fencedheap", "tests"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]
