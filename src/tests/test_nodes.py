"""Unit tests for the semantic tree helpers."""

import pytest
from pydantic import ValidationError

from ditawiki.core.nodes import Node, NodeType, element, rewrite, text, text_content, walk


def sample_tree() -> Node:
    return element(
        NodeType.ROOT,
        element(NodeType.HEADING, text("Title"), level=1),
        element(NodeType.PARAGRAPH, text("one "), element(NodeType.STRONG, text("two"))),
        element(NodeType.PARAGRAPH, text("three")),
    )


# ============================================================
# rewrite
# ============================================================


class TestRewrite:
    def test_unchanged_tree_is_shared(self):
        tree = sample_tree()
        assert rewrite(tree, lambda node: None) is tree

    def test_substitution(self):
        tree = sample_tree()

        def upper(node):
            if node.type == NodeType.TEXT:
                return text(node.value.upper())
            return None

        result = rewrite(tree, upper)
        assert text_content(result) == "TITLEONE TWOTHREE"
        assert text_content(tree) == "Titleone twothree"

    def test_untouched_subtrees_are_shared(self):
        tree = sample_tree()

        def replace_heading(node):
            if node.type == NodeType.HEADING:
                return node.evolve(id="title")
            return None

        result = rewrite(tree, replace_heading)
        assert result is not tree
        assert result.children[0].get("id") == "title"
        assert result.children[1] is tree.children[1]
        assert result.children[2] is tree.children[2]

    def test_splice_and_delete(self):
        tree = sample_tree()

        def splice(node):
            if node.type == NodeType.HEADING:
                return []
            if node.type == NodeType.PARAGRAPH and text_content(node) == "three":
                return [text("a"), text("b")]
            return None

        result = rewrite(tree, splice)
        assert [child.type for child in result.children] == [
            NodeType.PARAGRAPH,
            NodeType.TEXT,
            NodeType.TEXT,
        ]

    def test_substituted_nodes_are_not_revisited(self):
        tree = element(NodeType.ROOT, element(NodeType.PARAGRAPH, text("x")))
        seen = []

        def visit(node):
            seen.append(node.type)
            if node.type == NodeType.PARAGRAPH:
                return element(NodeType.PARAGRAPH, text("y"))
            return None

        result = rewrite(tree, visit)
        assert seen == [NodeType.PARAGRAPH]
        assert text_content(result) == "y"


# ============================================================
# walk / text_content
# ============================================================


class TestHelpers:
    def test_walk_is_preorder(self):
        tree = sample_tree()
        types = [node.type for node in walk(tree)]
        assert types[:3] == [NodeType.ROOT, NodeType.HEADING, NodeType.TEXT]

    def test_text_content_of_special_nodes(self):
        tree = element(
            NodeType.PARAGRAPH,
            Node(type=NodeType.WIKILINK, props={"target": "Page", "alias": "Shown"}),
            Node(type=NodeType.BREAK),
            Node(type=NodeType.MATH, props={"tex": "x^2"}),
        )
        assert text_content(tree) == "Shown\nx^2"

    def test_nodes_are_immutable(self):
        node = text("a")
        with pytest.raises(ValidationError):
            node.value = "b"
