[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vigilant"
version = "0.1.0"
description = "Relays sealed epoch checkpoints to Bitcoin as two chained OP_RETURN transactions"
requires-python = ">=3.10"
dependencies = []
keywords = ["bitcoin", "checkpoint", "op_return", "submitter", "relayer", "spv"]
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
    "Topic :: System :: Distributed Computing",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["vigilant"]

[tool.pytest.ini_options]
addopts = "-ra"
