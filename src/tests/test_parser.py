"""Unit tests for the document parser."""

from ditawiki.core.models import MapMetadata, TopicMetadata
from ditawiki.core.nodes import NodeType, text_content, walk
from ditawiki.core.parser import parse, parse_markdown


def nodes_of(tree, node_type):
    return [node for node in walk(tree) if node.type == node_type]


# ============================================================
# Preamble and metadata
# ============================================================


class TestPreamble:
    def test_metadata_and_body(self):
        metadata, tree = parse("---\ntitle: Hello\ntags: [a, b]\n---\n\n# Heading\n\nText")
        assert isinstance(metadata, TopicMetadata)
        assert metadata.title == "Hello"
        assert metadata.tags == ["a", "b"]
        assert [child.type for child in tree.children] == [NodeType.HEADING, NodeType.PARAGRAPH]

    def test_title_from_first_heading(self):
        metadata, _ = parse("# My Title\n\nBody")
        assert metadata.title == "My Title"

    def test_preamble_title_wins(self):
        metadata, _ = parse("---\ntitle: Real\n---\n# Other\n")
        assert metadata.title == "Real"

    def test_malformed_preamble_degrades(self):
        metadata, tree = parse("---\ntitle: [broken\n---\nBody text")
        assert metadata.title is None
        assert metadata.tags == []
        assert "Body text" in text_content(tree)

    def test_bad_field_shape_degrades(self):
        metadata, tree = parse("---\ntags: {a: 1}\n---\nBody")
        assert metadata.tags == []
        assert "Body" in text_content(tree)

    def test_bytes_with_bom(self):
        metadata, _ = parse("\ufeff# Title\n".encode("utf-8"))
        assert metadata.title == "Title"

    def test_empty_source(self):
        metadata, tree = parse("")
        assert metadata.title is None
        assert tree.children == ()


class TestMaps:
    def test_markdown_map_topics_from_body(self):
        source = "---\ntitle: Guide\n---\n- [[intro]]\n- [[setup|Setup]]\n"
        metadata, _ = parse(source, "maps/guide.md")
        assert isinstance(metadata, MapMetadata)
        assert metadata.topics == ["intro", "setup"]

    def test_preamble_topics_win(self):
        source = "---\ntopics: [one, two]\n---\n- [[other]]\n"
        metadata, _ = parse(source, "maps/guide.md")
        assert metadata.topics == ["one", "two"]

    def test_xml_map(self):
        source = (
            '<map title="Guide"><topicmeta><author>Ada</author></topicmeta>'
            '<topicref href="intro.dita"/><topicref href="setup.dita"/></map>'
        )
        metadata, _ = parse(source, "maps/guide.ditamap")
        assert isinstance(metadata, MapMetadata)
        assert metadata.title == "Guide"
        assert metadata.author == "Ada"
        assert metadata.topics == ["intro.dita", "setup.dita"]


# ============================================================
# Markdown structure
# ============================================================


class TestBlocks:
    def test_lists(self):
        tree = parse_markdown("- one\n- two\n\n1. first\n2. second")
        lists = nodes_of(tree, NodeType.LIST)
        assert [lst.get("ordered") for lst in lists] == [False, True]
        assert [text_content(item) for item in lists[0].children] == ["one", "two"]

    def test_task_list(self):
        tree = parse_markdown("- [x] done\n- [ ] todo")
        items = nodes_of(tree, NodeType.LIST_ITEM)
        assert [item.get("checked") for item in items] == [True, False]
        assert [text_content(item).strip() for item in items] == ["done", "todo"]

    def test_plain_list_item_has_no_checked_state(self):
        item = nodes_of(parse_markdown("- plain"), NodeType.LIST_ITEM)[0]
        assert item.get("checked") is None

    def test_fenced_code(self):
        tree = parse_markdown("Intro\n\n```python\nprint('hi')\nif a < b:\n    pass\n```\n\nAfter")
        code = nodes_of(tree, NodeType.CODE)[0]
        assert code.get("language") == "python"
        assert code.value == "print('hi')\nif a < b:\n    pass"
        assert text_content(tree.children[-1]) == "After"

    def test_fenced_code_with_blank_lines(self):
        code = nodes_of(parse_markdown("```\na\n\nb\n```"), NodeType.CODE)[0]
        assert code.value == "a\n\nb"
        assert code.get("language") is None

    def test_fenced_code_keeps_wiki_syntax(self):
        code = nodes_of(parse_markdown("```\n[[not a link]]\n```"), NodeType.CODE)[0]
        assert code.value == "[[not a link]]"

    def test_fenced_code_keeps_html(self):
        tree = parse_markdown("```html\n<div>\n  <b>x</b> &amp;\n</div>\n```")
        assert nodes_of(tree, NodeType.HTML) == []
        code = nodes_of(tree, NodeType.CODE)[0]
        assert code.get("language") == "html"
        assert code.value == "<div>\n  <b>x</b> &amp;\n</div>"

    def test_fenced_code_in_blockquote(self):
        quote = parse_markdown("> ```\n> x\n> ```").children[0]
        assert quote.type == NodeType.BLOCKQUOTE
        assert nodes_of(quote, NodeType.CODE)[0].value == "x"

    def test_indented_code(self):
        code = nodes_of(parse_markdown("Text\n\n    x = 1 & 2\n"), NodeType.CODE)[0]
        assert code.value == "x = 1 & 2"

    def test_table(self):
        tree = parse_markdown("| A | B |\n|---|:-:|\n| 1 | 2 |\n| 3 | 4 |")
        table = nodes_of(tree, NodeType.TABLE)[0]
        assert table.get("columns") == 2
        assert [row.get("header") for row in table.children] == [True, False, False]
        assert table.children[1].children[1].get("align") == "center"
        assert text_content(table.children[2]) == "34"

    def test_blockquote(self):
        tree = parse_markdown("> quoted")
        assert tree.children[0].type == NodeType.BLOCKQUOTE

    def test_thematic_break(self):
        tree = parse_markdown("a\n\n***\n\nb")
        assert tree.children[1].type == NodeType.THEMATIC_BREAK

    def test_raw_html_block(self):
        tree = parse_markdown("<div>raw</div>\n\nText")
        assert tree.children[0].type == NodeType.HTML
        assert tree.children[0].value.strip() == "<div>raw</div>"


class TestInline:
    def test_emphasis_strong_code(self):
        paragraph = parse_markdown("Some *em* and **strong** and `a < b`").children[0]
        types = [child.type for child in paragraph.children]
        assert NodeType.EMPHASIS in types
        assert NodeType.STRONG in types
        code = [child for child in paragraph.children if child.type == NodeType.INLINE_CODE][0]
        assert code.value == "a < b"

    def test_strikethrough(self):
        tree = parse_markdown("~~gone~~")
        assert nodes_of(tree, NodeType.DELETE)

    def test_link_and_image(self):
        tree = parse_markdown('[site](https://example.com "Example") ![pic](a.png)')
        link = nodes_of(tree, NodeType.LINK)[0]
        image = nodes_of(tree, NodeType.IMAGE)[0]
        assert link.get("url") == "https://example.com"
        assert link.get("title") == "Example"
        assert image.get("url") == "a.png"
        assert image.get("alt") == "pic"

    def test_entities_become_text(self):
        assert text_content(parse_markdown("a &copy; b")) == "a © b"


class TestContentSyntaxIsKept:
    def test_wikilinks_and_embeds(self):
        source = "See [[Page]] and [[Other|alias]] and ![[img.png|100]]"
        assert text_content(parse_markdown(source)) == source

    def test_callout_marker(self):
        tree = parse_markdown("> [!warning] Careful\n> Body")
        paragraph = tree.children[0].children[0]
        assert text_content(paragraph) == "[!warning] Careful\nBody"

    def test_footnote_definition_stays_in_flow(self):
        tree = parse_markdown("Text[^1].\n\n[^1]: The note.")
        assert [text_content(child) for child in tree.children] == ["Text[^1].", "[^1]: The note."]

    def test_consecutive_footnote_definitions_are_split(self):
        tree = parse_markdown("[^a]: First.\n[^b]: Second.")
        assert [text_content(child) for child in tree.children] == ["[^a]: First.", "[^b]: Second."]

    def test_math_is_not_emphasized(self):
        tree = parse_markdown("Inline $a_b*c*$ and \\(x^2\\) here")
        assert not nodes_of(tree, NodeType.EMPHASIS)
        assert "$a_b*c*$" in text_content(tree)
        assert "\\(x^2\\)" in text_content(tree)


# ============================================================
# XML dialect
# ============================================================


class TestXmlTopic:
    SOURCE = (
        '<topic id="t1"><title>XML Topic</title><shortdesc>About it</shortdesc>'
        "<prolog><author>Ada</author><metadata><audience type=\"beginner\"/>"
        "<keywords><keyword>xml</keyword></keywords></metadata></prolog>"
        "<body><p>Hello <b>world</b></p><ul><li>One</li></ul>"
        '<codeblock outputclass="language-sh">ls</codeblock></body></topic>'
    )

    def test_metadata(self):
        metadata, _ = parse(self.SOURCE, "topics/t1.dita")
        assert metadata.id == "t1"
        assert metadata.title == "XML Topic"
        assert metadata.shortdesc == "About it"
        assert metadata.author == "Ada"
        assert metadata.audience == "beginner"
        assert metadata.tags == ["xml"]

    def test_body(self):
        _, tree = parse(self.SOURCE, "topics/t1.dita")
        assert [child.type for child in tree.children] == [
            NodeType.PARAGRAPH,
            NodeType.LIST,
            NodeType.CODE,
        ]
        assert text_content(tree.children[0]) == "Hello world"
        assert tree.children[2].get("language") == "sh"

    def test_invalid_xml_is_markdown(self):
        _, tree = parse("<topic><unclosed></topic>\n\nText")
        assert "Text" in text_content(tree)
