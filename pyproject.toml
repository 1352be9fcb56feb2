[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "ndscargo"
version = "0.1.2"
description = "Cargo wrapper for building, running and testing Nintendo DS homebrew applications"
requires-python = ">=3.11"
dependencies = []
keywords = ["nds", "homebrew", "cargo", "ndstool", "dslink", "blocksds"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Build Tools",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
cargo-nds = "ndscargo.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["ndscargo"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py311"
