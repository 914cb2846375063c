[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "snapsidecar"
version = "0.1.0"
description = "Sidecar controller logic that creates, checks and deletes volume snapshots through a CSI driver, plus a JUnit report filter"
requires-python = ">=3.10"
dependencies = []
keywords = ["csi", "snapshot", "volume", "controller", "storage", "junit"]
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
    "Topic :: System :: Filesystems",
    "Topic :: Software Development :: Testing",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
filter-junit = "snapsidecar.junit_filter:main"

[tool.hatch.build.targets.wheel]
packages = ["snapsidecar"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
