[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "devrestore"
version = "0.1.0"
description = "Firmware container formats and restore-protocol helpers for device recovery"
requires-python = ">=3.10"
dependencies = []
keywords = ["restore", "firmware", "ftab", "fls", "ace3", "uarp", "asr", "fdr", "recovery"]
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
    "Topic :: System :: Recovery Tools",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["devrestore"]

[tool.pytest.ini_options]
addopts = "-ra"
