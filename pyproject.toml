[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ftheap"
version = "0.1.0"
description = "A simulated zone-based memory allocator with tiny, small and large zones, free-list chunk management and allocation reports."
requires-python = ">=3.10"
dependencies = []
keywords = ["allocator", "malloc", "heap", "memory", "simulation", "free-list", "printf"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Libraries",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["ftheap"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
