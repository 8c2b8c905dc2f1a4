"""Binary phylogenetic tree nodes with Newick reading and writing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator

_DELIMITERS = "(),:;"


@dataclass(eq=False)
class TreeNode:
    """A node of a rooted tree; ``dparent`` is the length of the branch above it."""

    name: str = ""
    dparent: float = 0.0
    id: int = -1
    parent: TreeNode | None = field(default=None, repr=False)
    children: list[TreeNode] = field(default_factory=list, repr=False)

    def add_child(self, child: TreeNode) -> None:
        """Attach ``child`` beneath this node."""
        if child.parent is not None:
            raise ValueError("node already has a parent")
        if child is self:
            raise ValueError("a node cannot be its own child")
        child.parent = self
        self.children.append(child)

    @property
    def lchild(self) -> TreeNode | None:
        return self.children[0] if self.children else None

    @property
    def rchild(self) -> TreeNode | None:
        return self.children[1] if len(self.children) > 1 else None

    def is_leaf(self) -> bool:
        return not self.children

    def preorder(self) -> Iterator[TreeNode]:
        """Yield nodes of the subtree, each parent before its children."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def postorder(self) -> Iterator[TreeNode]:
        """Yield nodes of the subtree, each parent after its children."""
        stack: list[tuple[TreeNode, bool]] = [(self, False)]
        while stack:
            node, expanded = stack.pop()
            if expanded or node.is_leaf():
                yield node
                continue
            stack.append((node, True))
            stack.extend((child, False) for child in reversed(node.children))

    def leaves(self) -> list[TreeNode]:
        """Leaves of the subtree, from left to right."""
        return [node for node in self.preorder() if node.is_leaf()]

    @property
    def nodes(self) -> list[TreeNode]:
        """All nodes of the subtree, ordered by id."""
        return sorted(self.preorder(), key=lambda node: node.id)

    @property
    def nnodes(self) -> int:
        return sum(1 for _ in self.preorder())

    def renumber(self) -> None:
        """Assign ids 0, 1, ... to the nodes of the subtree in preorder."""
        for index, node in enumerate(self.preorder()):
            node.id = index

    def to_newick(self, show_lengths: bool = True) -> str:
        """Render the subtree as a Newick string ending in ';'."""
        return self._newick(show_lengths) + ";"

    def _newick(self, show_lengths: bool) -> str:
        text = ""
        if self.children:
            text = "(" + ",".join(c._newick(show_lengths) for c in self.children) + ")"
        text += self.name
        if show_lengths and self.parent is not None:
            text += ":" + repr(float(self.dparent))
        return text


class _NewickParser:
    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def _skip_space(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _peek(self) -> str:
        self._skip_space()
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _token(self) -> str:
        self._skip_space()
        start = self.pos
        while self.pos < len(self.text) and self.text[self.pos] not in _DELIMITERS:
            self.pos += 1
        return self.text[start:self.pos].strip()

    def parse(self) -> TreeNode:
        root = self._subtree()
        if self._peek() == ";":
            self.pos += 1
        if self._peek():
            raise ValueError(f"unexpected text at position {self.pos} in Newick string")
        root.renumber()
        return root

    def _subtree(self) -> TreeNode:
        node = TreeNode()
        if self._peek() == "(":
            self.pos += 1
            while True:
                node.add_child(self._subtree())
                sep = self._peek()
                self.pos += 1
                if sep == ")":
                    break
                if sep != ",":
                    raise ValueError("unbalanced parentheses in Newick string")
        node.name = self._token()
        if self._peek() == ":":
            self.pos += 1
            length = self._token()
            try:
                node.dparent = float(length)
            except ValueError:
                raise ValueError(f"bad branch length {length!r} in Newick string") from None
        return node


def parse_newick(text: str) -> TreeNode:
    """Parse a Newick string; node ids are assigned in preorder."""
    text = text.strip()
    if not text:
        raise ValueError("empty Newick string")
    return _NewickParser(text).parse()