# vinetree

Building blocks for variational inference of phylogenetic trees from
point embeddings of taxa: tree reconstruction by UPGMA, priors over trees
and branch lengths, pieces of a stochastic-gradient optimisation loop, and
refinement of sampled trees by importance and rejection sampling.

## Installation

```
pip install .
```

## Modules

- `vinetree.tree`: `TreeNode`, a rooted tree node with `name`, `dparent`
  (length of the branch above it), `id`, `parent` and `children`.
  It offers `add_child`, `is_leaf`, `preorder`, `postorder`, `leaves`,
  `renumber` (preorder ids 0, 1, ...), the properties `lchild`, `rchild`,
  `nodes` (ordered by id) and `nnodes`, and `to_newick(show_lengths)`.
  `parse_newick(text)` reads a Newick string and numbers nodes in preorder.
- `vinetree.upgma`: `infer_tree(distances, names)` builds an ultrametric
  UPGMA tree (leaves get ids 0..n-1, the root 2n-2); `fast_infer` does the
  same using a min-heap of candidate pairs. `branch_jacobian(tree)` returns
  the Jacobian of branch lengths (rows by node id) against the n-choose-2
  pairwise distances, indexed by `pair_index(i, j, n)`. The lower-level
  steps `find_min` and `update_distances` are also exposed.
- `vinetree.tree_prior`: `TreePrior` with a `TreePriorType` of `YULE`,
  `GAMMA` or `NONE`, optionally with a relaxed local clock
  (`relclock=True`). `log_prior(tree)` returns the log prior and its
  gradient per branch; with the clock on it also sets
  `relclock_sig_grad` and `nodetimes_grad`. Helpers: `tree_length`,
  `leaf_bitsets`, `softplus`, `inv_softplus`, `sigmoid`, the scaled
  softplus `ssp`, `ssp_prime`, `ssp_inv`, and the Huber functions
  `huber_rho` and `huber_psi`.
- `vinetree.variational`: `AdamOptimizer(size).step(grad, lr)` returns the
  Adam increment for gradient ascent; `AntitheticSampler(mean, scale, rng)`
  draws points in antithetic pairs together with their standard normal
  variates; `ConvergenceMonitor(window, min_steps).update(elbo,
  full_gradient)` tracks the best ELBO and says when to stop;
  `kld_gaussian`, `kld_grad_lowrank`, `apply_flows` and `clip_gradient`.
- `vinetree.importance`: `importance_sample(nsamples, trees,
  log_densities, log_likelihood, rng, log)` redraws trees with weights
  likelihood over sampling density; `shell_bounds`, `shell_index` and
  `systematic_resample` are shared with the resampling schemes.
- `vinetree.resampling`: `rejection_sample` and `importance_resample`
  take a `propose()` callable returning a `Proposal(tree, log_likelihood,
  log_density, z2)` and stratify proposals into chi-square shells.
  `rejection_sample` raises `RejectionSamplingError` when the acceptance
  rate is too low. Diagnostics go to the `logging` module; a summary line
  is written to `log` when a text stream is given.

## Example

```python
import numpy as np
from vinetree.upgma import infer_tree, branch_jacobian
from vinetree.tree_prior import TreePrior, TreePriorType

distances = np.array([
    [0.0, 0.2, 0.6, 0.6],
    [0.2, 0.0, 0.6, 0.6],
    [0.6, 0.6, 0.0, 0.4],
    [0.6, 0.6, 0.4, 0.0],
])
tree = infer_tree(distances, ["a", "b", "c", "d"])
print(tree.to_newick(True))

jacobian = branch_jacobian(tree)   # nodes x pairwise distances

prior = TreePrior(TreePriorType.YULE)
log_p, branch_grad = prior.log_prior(tree)
```

## What the package does not do

There is no command-line program. The package does not read alignments
or mutation tables, compute sequence likelihoods, embed taxa as points,
or turn points into distances; the caller supplies likelihoods (the
`log_likelihood` callable of `importance_sample`, the `Proposal` values
returned by `propose`) and the distributions to sample from. The pieces
in `vinetree.variational` are parts of an optimisation loop, not a full
driver for one.

## Tests

```
pip install .[test]
pytest
```