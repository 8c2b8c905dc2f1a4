[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "vinetree"
version = "0.1.0"
description = "Building blocks for variational inference of phylogenies from node embeddings: UPGMA, tree priors, optimisation helpers and posterior resampling"
requires-python = ">=3.10"
keywords = [
    "phylogenetics",
    "variational inference",
    "upgma",
    "tree prior",
    "importance sampling",
    "rejection sampling",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Operating System :: OS Independent",
    "Topic :: Scientific/Engineering :: Bio-Informatics",
]
dependencies = [
    "numpy",
    "scipy",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["vinetree"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
