[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "rec53"
version = "0.1.0"
description = "Building blocks for an iterative, caching DNS resolver: state machine, message cache, upstream quality tracking, UDP/TCP front end and metrics"
requires-python = ">=3.10"
dependencies = [
    "dnspython",
]
keywords = ["dns", "resolver", "iterative", "cache", "nameserver", "metrics"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Internet :: Name Service (DNS)",
    "Topic :: System :: Networking",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["rec53"]

[tool.hatch.build.targets.sdist]
include = [
    "rec53",
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
