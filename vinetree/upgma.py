"""UPGMA tree inference with a Jacobian of branch lengths against distances."""

from __future__ import annotations

import heapq
from typing import Callable, Sequence

import numpy as np

from .tree import TreeNode


def pair_index(i: int, j: int, n: int) -> int:
    """Index of the unordered pair (i, j) among the n-choose-2 pairs."""
    if i == j or not (0 <= i < n and 0 <= j < n):
        raise ValueError(f"invalid pair ({i}, {j}) for {n} taxa")
    if i > j:
        i, j = j, i
    return i * n - i * (i + 1) // 2 + (j - i - 1)


def _dist(distances: np.ndarray, a: int, b: int) -> float:
    return float(distances[a, b] if a < b else distances[b, a])


def _nonneg(x: float) -> float:
    return x if x > 0 else 0.0


def find_min(distances: np.ndarray, active: np.ndarray) -> tuple[int, int]:
    """Closest pair (u, v), u < v, among active taxa of an upper-triangular matrix."""
    idx = np.flatnonzero(np.asarray(active, dtype=bool))
    rows, cols = np.triu_indices(len(idx), k=1)
    if rows.size == 0:
        raise ValueError("fewer than two active taxa")
    values = np.asarray(distances)[idx[rows], idx[cols]]
    k = int(np.argmin(values))
    if not values[k] < np.inf:
        raise ValueError("fewer than two active taxa")
    return int(idx[rows[k]]), int(idx[cols[k]])


def update_distances(distances: np.ndarray, u: int, v: int, w: int,
                     active: np.ndarray, sizes: np.ndarray,
                     heights: np.ndarray) -> None:
    """Join u and v into new node w, filling column w of the working matrix."""
    size_u, size_v = sizes[u], sizes[v]
    size_w = size_u + size_v
    for k in range(w):
        if not active[k] or k in (u, v):
            continue
        dnew = (size_u * _dist(distances, u, k) + size_v * _dist(distances, v, k)) / size_w
        distances[k, w] = _nonneg(dnew)
    hw = _dist(distances, u, v) / 2.0
    # negative lengths would break the likelihood calculation
    distances[u, w] = _nonneg(hw - heights[u])
    distances[v, w] = _nonneg(hw - heights[v])
    heights[w] = hw
    sizes[w] = size_w


def _setup(distances, names: Sequence[str]):
    init = np.asarray(distances, dtype=float)
    if init.ndim != 2 or init.shape[0] != init.shape[1] or init.shape[0] < 2:
        raise ValueError("bad distance matrix")
    n = init.shape[0]
    if len(names) != n:
        raise ValueError("number of names does not match distance matrix")
    big = 2 * n - 2
    work = np.zeros((big, big))
    work[:n, :n] = np.triu(init, k=1)
    active = np.zeros(big, dtype=bool)
    active[:n] = True
    sizes = np.zeros(big)
    sizes[:n] = 1.0
    heights = np.zeros(big + 1)
    nodes = [TreeNode(name=str(name), id=i) for i, name in enumerate(names)]
    return n, big, work, active, sizes, heights, nodes


def _join(work, u, v, w, active, sizes, heights, nodes) -> None:
    update_distances(work, u, v, w, active, sizes, heights)
    node_w = TreeNode(id=w)
    nodes.append(node_w)
    for child in (u, v):
        node_w.add_child(nodes[child])
        nodes[child].dparent = float(work[child, w])
    active[u] = active[v] = False
    active[w] = True


def _finish(big, work, active, heights, nodes) -> TreeNode:
    remaining = np.flatnonzero(active)
    if len(remaining) != 2:
        raise ValueError("expected exactly two nodes left at root")
    u, v = (int(x) for x in remaining)
    root = TreeNode(id=big)
    root.add_child(nodes[u])
    root.add_child(nodes[v])
    hw = _dist(work, u, v) / 2.0
    nodes[u].dparent = hw - heights[u]
    nodes[v].dparent = hw - heights[v]
    heights[big] = hw
    return root


def _infer(distances, names, choose: Callable[..., tuple[int, int]]) -> TreeNode:
    n, big, work, active, sizes, heights, nodes = _setup(distances, names)
    for w in range(n, big):
        u, v = choose(work, active, w)
        _join(work, u, v, w, active, sizes, heights, nodes)
    return _finish(big, work, active, heights, nodes)


def infer_tree(distances, names: Sequence[str]) -> TreeNode:
    """Build an ultrametric UPGMA tree; leaves get ids 0..n-1, the root 2n-2."""
    return _infer(distances, names, lambda work, active, w: find_min(work, active))


def fast_infer(distances, names: Sequence[str]) -> TreeNode:
    """UPGMA using a min-heap of candidate pairs with lazy invalidation."""
    n = len(names)
    heap: list[tuple[float, int, int]] = []
    state = {"last": None}

    def choose(work, active, w):
        if state["last"] is None:
            heap.extend((float(work[i, j]), i, j) for i in range(n) for j in range(i + 1, n))
            heapq.heapify(heap)
        else:
            prev = state["last"]
            for i in range(prev):
                if active[i]:
                    heapq.heappush(heap, (_dist(work, i, prev), i, prev))
        while heap:
            _, i, j = heapq.heappop(heap)
            if active[i] and active[j]:
                state["last"] = w
                return i, j
        raise ValueError("fewer than two active taxa")

    return _infer(distances, names, choose)


def branch_jacobian(tree: TreeNode) -> np.ndarray:
    """Jacobian of branch lengths (rows by node id) against pairwise distances.

    Rows for the root and for its right child are zero, treating the
    tree as unrooted.
    """
    nodes = tree.nodes
    nnodes = len(nodes)
    nleaves = (nnodes + 2) // 2
    ndist = nleaves * (nleaves - 1) // 2
    if [node.id for node in nodes] != list(range(nnodes)):
        raise ValueError("node ids must be 0..nnodes-1")

    leaf_ids: dict[int, list[int]] = {}
    for node in tree.postorder():
        if node.is_leaf():
            if node.id >= nleaves:
                raise ValueError("leaf ids must precede internal node ids")
            leaf_ids[node.id] = [node.id]
        else:
            leaf_ids[node.id] = [x for c in node.children for x in leaf_ids[c.id]]

    heights = np.zeros((nnodes, ndist))
    for node in nodes:
        if len(node.children) != 2:
            continue
        left, right = leaf_ids[node.lchild.id], leaf_ids[node.rchild.id]
        weight = 1.0 / (2.0 * len(left) * len(right))
        cols = [pair_index(a, b, nleaves) for a in left for b in right]
        heights[node.id, cols] = weight

    jac = np.zeros((nnodes, ndist))
    for node in nodes:
        if node is tree or node is tree.rchild:
            continue
        jac[node.id] = heights[node.parent.id] - heights[node.id]
    return jac