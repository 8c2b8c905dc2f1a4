"""Trees, UPGMA, tree priors, optimisation helpers and resampling for
variational inference of phylogenies."""

__version__ = "0.1.0"

__all__ = [
    "tree",
    "upgma",
    "importance",
    "tree_prior",
    "variational",
    "resampling",
]