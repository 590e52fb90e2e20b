[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "remoteexec"
version = "0.1.0"
description = "Content digests, command descriptions and Merkle input trees for remote build execution"
requires-python = ">=3.10"
dependencies = []
keywords = ["remote-execution", "build", "merkle-tree", "content-addressable-storage", "digest"]
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
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["remoteexec"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
