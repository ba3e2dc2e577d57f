"""Semantic document tree.

Documents are parsed into a tree of immutable ``Node`` objects. Transform
stages never mutate a node; they return replacements and ``rewrite`` rebuilds
only the spine above the nodes that changed, so untouched subtrees are shared
between the input and output trees.
"""

from enum import Enum
from typing import Any, Callable, Iterator

from pydantic import BaseModel, ConfigDict, Field


class NodeType(str, Enum):
    """Kinds of nodes in the semantic tree."""

    ROOT = "root"
    PARAGRAPH = "paragraph"
    HEADING = "heading"
    LIST = "list"
    LIST_ITEM = "list_item"
    BLOCKQUOTE = "blockquote"
    CODE = "code"
    INLINE_CODE = "inline_code"
    TABLE = "table"
    TABLE_ROW = "table_row"
    TABLE_CELL = "table_cell"
    LINK = "link"
    IMAGE = "image"
    TEXT = "text"
    EMPHASIS = "emphasis"
    STRONG = "strong"
    DELETE = "delete"
    BREAK = "break"
    THEMATIC_BREAK = "thematic_break"
    HTML = "html"
    FOOTNOTE_REFERENCE = "footnote_reference"
    FOOTNOTE_DEFINITION = "footnote_definition"
    FOOTNOTES = "footnotes"
    CALLOUT = "callout"
    EMBED = "embed"
    WIKILINK = "wikilink"
    MATH = "math"


class Node(BaseModel):
    """A node in the semantic tree.

    Leaf nodes carry ``value`` (text, code, raw HTML, TeX); variant specific
    attributes such as a heading level or a link URL live in ``props``.
    """

    model_config = ConfigDict(frozen=True)

    type: NodeType
    children: tuple["Node", ...] = ()
    value: str | None = None
    props: dict[str, Any] = Field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        """Return a prop value."""
        return self.props.get(key, default)

    def evolve(self, children: "tuple[Node, ...] | list[Node] | None" = None, **props: Any) -> "Node":
        """Return a copy with replaced children and/or merged props."""
        update: dict[str, Any] = {}
        if children is not None:
            update["children"] = tuple(children)
        if props:
            update["props"] = {**self.props, **props}
        return self.model_copy(update=update)


def element(node_type: NodeType, *children: Node, **props: Any) -> Node:
    """Build a container node."""
    return Node(type=node_type, children=children, props=props)


def text(value: str) -> Node:
    """Build a text node."""
    return Node(type=NodeType.TEXT, value=value)


Visitor = Callable[[Node], "Node | list[Node] | None"]


def rewrite(node: Node, visit: Visitor) -> Node:
    """Apply ``visit`` to every descendant of ``node`` and rebuild the tree.

    For each child ``visit`` returns one of:

    * ``None`` - keep the child and descend into it;
    * a ``Node`` - substitute it (returning the child itself skips its subtree);
    * a list of nodes - splice them in place of the child (may be empty).

    Substituted and spliced nodes are not visited again, which lets a stage
    mark a subtree as already rewritten.
    """
    if not node.children:
        return node

    new_children: list[Node] = []
    changed = False
    for child in node.children:
        result = visit(child)
        if result is None:
            new_child = rewrite(child, visit)
            changed = changed or new_child is not child
            new_children.append(new_child)
        elif isinstance(result, Node):
            changed = changed or result is not child
            new_children.append(result)
        else:
            changed = True
            new_children.extend(result)

    if not changed:
        return node
    return node.evolve(children=new_children)


def walk(node: Node) -> Iterator[Node]:
    """Yield ``node`` and all its descendants in document order."""
    yield node
    for child in node.children:
        yield from walk(child)


def text_content(node: Node) -> str:
    """Return the plain text of a subtree."""
    if node.type in (NodeType.TEXT, NodeType.INLINE_CODE, NodeType.CODE):
        return node.value or ""
    if node.type == NodeType.MATH:
        return node.get("tex", "")
    if node.type == NodeType.WIKILINK:
        return node.get("alias") or node.get("target", "")
    if node.type == NodeType.BREAK:
        return "\n"
    return "".join(text_content(child) for child in node.children)
