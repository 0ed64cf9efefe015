[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "espressoreader"
version = "0.1.0"
description = "Reads rollup inputs from an Espresso sequencer and an EVM base layer, indexes them into epochs and tracks claims and output execution."
requires-python = ">=3.11"
keywords = [
    "rollups",
    "espresso",
    "sequencer",
    "evm",
    "ethereum",
    "eip-712",
    "epochs",
    "inputs",
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
    "Framework :: aiohttp",
    "Topic :: System :: Distributed Computing",
]
dependencies = [
    "pycryptodome",
    "aiohttp",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[project.scripts]
espressoreader-configgen = "espressoreader.configgen:main"

[tool.hatch.build.targets.wheel]
packages = ["espressoreader"]

[tool.hatch.build.targets.sdist]
include = [
    "espressoreader",
    "tests",
    "pyproject.toml",
]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]
