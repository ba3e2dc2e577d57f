"""Markdown parser producing a semantic tree.

Python-Markdown does the block and inline parsing. Instead of serializing its
ElementTree to HTML, the tree is converted into ``Node`` objects so the
transform pipeline can work on structure rather than on markup. Wikilinks,
embeds, callouts, footnotes and math are left as text for the pipeline; the
extensions here only keep Python-Markdown from mangling that syntax.
"""

import html
import logging
import re
import xml.etree.ElementTree as etree
from xml.etree.ElementTree import Element, SubElement

from markdown import Markdown
from markdown.blockprocessors import BlockProcessor
from markdown.extensions import Extension
from markdown.inlinepatterns import InlineProcessor, SimpleTagInlineProcessor
from markdown.preprocessors import Preprocessor
from markdown.util import HTML_PLACEHOLDER_RE, AtomicString, code_escape

from ditawiki.core.errors import MalformedPreambleError
from ditawiki.core.metadata import (
    Role,
    build_metadata,
    detect_role,
    empty_metadata,
    extract_topic_refs,
    split_preamble,
)
from ditawiki.core.models import MapMetadata, TopicMetadata
from ditawiki.core.nodes import Node, NodeType, element, text, text_content

logger = logging.getLogger(__name__)


# Pattern for strikethrough: ~~text~~
# Group 2 must contain the text (SimpleTagInlineProcessor expectation)
STRIKETHROUGH_PATTERN = r"(~~)(.*?)~~"

# Math runs: $$...$$, \[...\], \(...\) and $...$ (no space inside the dollars)
MATH_SOURCE_PATTERN = (
    r"(\$\$.+?\$\$"
    r"|\\\[.+?\\\]"
    r"|\\\(.+?\\\)"
    r"|(?<![\\$\w])\$(?=\S)[^$\n]+?(?<=\S)\$(?![\w$]))"
)

# Wikilink and embed source: [[...]] or ![[...]] on one line
WIKI_SOURCE_PATTERN = r"(!?\[\[[^\]\n]+\]\])"

FENCE_OPEN = re.compile(r"^[ ]{0,3}(?P<fence>`{3,}|~{3,})[ \t]*(?P<lang>[^\s`]*)[^`]*$")
FENCE_START = re.compile(r"^(?P<fence>`{3,}|~{3,})[ \t]*(?P<lang>[^\s`]*)[^`\n]*$", re.MULTILINE)
FOOTNOTE_DEF_START = re.compile(r"^[ ]{0,3}\[\^[^\]\s]+\]:", re.MULTILINE)
CHECKBOX_PREFIX = re.compile(r"^\[([ xX])\]\s+")

XML_ROOTS = ("topic", "concept", "task", "reference", "map")


class StrikethroughExtension(Extension):
    """Markdown extension for ~~strikethrough~~ text."""

    def extendMarkdown(self, md: Markdown) -> None:
        """Add strikethrough pattern to markdown parser."""
        md.inlinePatterns.register(
            SimpleTagInlineProcessor(STRIKETHROUGH_PATTERN, "del"),
            "strikethrough",
            50,
        )


class MathSourceInlineProcessor(InlineProcessor):
    """Keep math runs verbatim so emphasis and escapes do not touch them."""

    def handleMatch(self, m: re.Match, data: str) -> tuple[Element | None, int, int]:
        el = Element("span")
        el.set("class", "math-source")
        el.text = AtomicString(m.group(1))
        return el, m.start(0), m.end(0)


class WikiSourceInlineProcessor(InlineProcessor):
    def handleMatch(self, m: re.Match, data: str) -> tuple[Element | None, int, int]:
        el = Element("span")
        el.set("class", "wiki-source")
        el.text = AtomicString(m.group(1))
        return el, m.start(0), m.end(0)


class MathSourceExtension(Extension):
    """Protect $...$ and bracket delimited math from inline parsing."""

    def extendMarkdown(self, md: Markdown) -> None:
        # Above "escape" (180) so \( and \[ survive, below "backtick" (190)
        md.inlinePatterns.register(
            MathSourceInlineProcessor(MATH_SOURCE_PATTERN, md),
            "math_source",
            185,
        )


class WikiSourceExtension(Extension):
    """Keep [[...]] and ![[...]] runs verbatim so emphasis cannot split them."""

    def extendMarkdown(self, md: Markdown) -> None:
        # Below "escape" (180), above "link" (160) and "image_link" (150)
        md.inlinePatterns.register(
            WikiSourceInlineProcessor(WIKI_SOURCE_PATTERN, md),
            "wiki_source",
            175,
        )


class FencedCodePreprocessor(Preprocessor):
    """Pull top-level fenced code out before raw HTML blocks are stashed.

    Each fence becomes a stashed ``<pre><code>`` element on a line of its
    own, so markup inside the fence is never parsed.
    """

    def run(self, lines: list[str]) -> list[str]:
        out: list[str] = []
        i = 0
        while i < len(lines):
            m = FENCE_OPEN.match(lines[i])
            if m is None:
                out.append(lines[i])
                i += 1
                continue
            fence = m.group("fence")
            closing = re.compile(rf"^[ ]{{0,3}}{re.escape(fence[0])}{{{len(fence)},}}[ \t]*$")
            end = i + 1
            # Unterminated fence runs to the end of the document
            while end < len(lines) and not closing.match(lines[end]):
                end += 1
            pre = Element("pre")
            code_el = SubElement(pre, "code")
            if m.group("lang"):
                code_el.set("class", f"language-{m.group('lang')}")
            code_el.text = AtomicString(code_escape("\n".join(lines[i + 1 : end])))
            out.extend(["", self.md.htmlStash.store(pre), ""])
            i = end + 1
        return out


class FencedCodeBlockProcessor(BlockProcessor):
    """Fences nested in blockquotes and list items, which the preprocessor skips."""

    def test(self, parent: Element, block: str) -> bool:
        return bool(FENCE_START.search(block))

    def run(self, parent: Element, blocks: list[str]) -> None:
        block = blocks.pop(0)
        m = FENCE_START.search(block)
        before = block[: m.start()].rstrip("\n")
        if before.strip():
            self.parser.parseBlocks(parent, [before])

        fence = m.group("fence")
        closing = re.compile(
            rf"^{re.escape(fence[0])}{{{len(fence)},}}[ \t]*$",
            re.MULTILINE,
        )
        body = block[m.end() :]
        if body.startswith("\n"):
            body = body[1:]

        while True:
            close = closing.search(body)
            if close is not None:
                code = body[: close.start()]
                after = body[close.end() :].lstrip("\n")
                if after:
                    blocks.insert(0, after)
                break
            if not blocks:
                # Unterminated fence runs to the end of the document
                code = body
                break
            body = f"{body}\n\n{blocks.pop(0)}"

        if code.endswith("\n"):
            code = code[:-1]
        pre = etree.SubElement(parent, "pre")
        code_el = etree.SubElement(pre, "code")
        if m.group("lang"):
            code_el.set("class", f"language-{m.group('lang')}")
        code_el.text = AtomicString(code_escape(code))


class FootnoteDefinitionProcessor(BlockProcessor):
    """Keep ``[^id]: text`` blocks as paragraphs.

    Without this the reference processor would read them as link
    definitions and drop them from the document.
    """

    def test(self, parent: Element, block: str) -> bool:
        return bool(FOOTNOTE_DEF_START.match(block))

    def run(self, parent: Element, blocks: list[str]) -> None:
        block = blocks.pop(0)
        starts = [m.start() for m in FOOTNOTE_DEF_START.finditer(block)]
        for start, end in zip(starts, starts[1:] + [len(block)]):
            p = etree.SubElement(parent, "p")
            p.text = block[start:end].strip()


class ContentBlocksExtension(Extension):
    """Fenced code and footnote definition block handling."""

    def extendMarkdown(self, md: Markdown) -> None:
        md.preprocessors.register(FencedCodePreprocessor(md), "fenced_code", 25)
        md.parser.blockprocessors.register(
            FencedCodeBlockProcessor(md.parser), "fenced_code_block", 85
        )
        md.parser.blockprocessors.register(
            FootnoteDefinitionProcessor(md.parser), "footnote_definition", 17
        )


def create_parser() -> Markdown:
    """Create a Markdown parser configured for content sources.

    Returns:
        Configured Markdown parser instance.
    """
    return Markdown(
        extensions=[
            "tables",
            "sane_lists",
            "pymdownx.tasklist",  # Task lists with checkboxes
            StrikethroughExtension(),  # ~~strikethrough~~
            MathSourceExtension(),  # $math$ kept verbatim
            WikiSourceExtension(),  # [[wikilinks]] kept verbatim
            ContentBlocksExtension(),  # ``` fences, [^id]: definitions
        ]
    )


def _markdown_to_etree(md: Markdown, source: str) -> Element:
    """Run Python-Markdown up to (but excluding) serialization."""
    md.reset()
    lines = source.split("\n")
    for preprocessor in md.preprocessors:
        lines = preprocessor.run(lines)
    root = md.parser.parseDocument(lines).getroot()
    for treeprocessor in md.treeprocessors:
        new_root = treeprocessor.run(root)
        if new_root is not None:
            root = new_root
    return root


BLOCK_TAGS = frozenset(
    {"p", "h1", "h2", "h3", "h4", "h5", "h6", "ul", "ol", "li", "blockquote",
     "pre", "table", "thead", "tbody", "tr", "hr", "div"}
)
INLINE_TAGS = {
    "em": NodeType.EMPHASIS,
    "i": NodeType.EMPHASIS,
    "strong": NodeType.STRONG,
    "b": NodeType.STRONG,
    "del": NodeType.DELETE,
    "s": NodeType.DELETE,
}


class _TreeBuilder:
    """Convert a Python-Markdown ElementTree into ``Node`` objects."""

    def __init__(self, md: Markdown):
        self.md = md

    def _raw_html(self, index: int) -> str:
        try:
            raw = self.md.htmlStash.rawHtmlBlocks[index]
        except IndexError:
            return ""
        if isinstance(raw, Element):
            return etree.tostring(raw, encoding="unicode")
        return str(raw)

    def _text_nodes(self, value: str | None) -> list[Node]:
        """Split text on stash placeholders into text and raw HTML nodes."""
        if not value:
            return []
        nodes: list[Node] = []
        pos = 0
        for m in HTML_PLACEHOLDER_RE.finditer(value):
            if m.start() > pos:
                nodes.append(text(value[pos : m.start()]))
            raw = self._raw_html(int(m.group(1)))
            if re.fullmatch(r"&#?\w+;", raw.strip()):
                nodes.append(text(html.unescape(raw.strip())))
            else:
                nodes.append(Node(type=NodeType.HTML, value=raw))
            pos = m.end()
        if pos < len(value):
            nodes.append(text(value[pos:]))
        return nodes

    def _is_block_container(self, el: Element) -> bool:
        if el.tag in ("div", "blockquote", "ul", "ol", "table", "thead", "tbody", "tr"):
            return True
        return el.tag == "li" and any(child.tag in BLOCK_TAGS for child in el)

    def children(self, el: Element) -> list[Node]:
        block = self._is_block_container(el)
        nodes: list[Node] = []

        def add_text(value: str | None) -> None:
            if block and (value is None or not value.strip()):
                return
            nodes.extend(self._text_nodes(value.strip() if block else value))

        add_text(el.text)
        for child in el:
            nodes.extend(self.convert(child))
            add_text(child.tail)
        return nodes

    def convert(self, el: Element) -> list[Node]:
        tag = el.tag
        if tag == "p":
            raw = (el.text or "").strip()
            m = HTML_PLACEHOLDER_RE.fullmatch(raw)
            if m is not None and len(el) == 0:
                stashed = self.md.htmlStash.rawHtmlBlocks[int(m.group(1))]
                if isinstance(stashed, Element) and stashed.tag == "pre":
                    return self.convert(stashed)
                return [Node(type=NodeType.HTML, value=self._raw_html(int(m.group(1))), props={"block": True})]
            return [element(NodeType.PARAGRAPH, *self.children(el))]
        if tag in ("h1", "h2", "h3", "h4", "h5", "h6"):
            props = {"level": int(tag[1])}
            if el.get("id"):
                props["id"] = el.get("id")
            return [element(NodeType.HEADING, *self.children(el), **props)]
        if tag in ("ul", "ol"):
            props = {"ordered": tag == "ol"}
            if tag == "ol" and el.get("start"):
                props["start"] = int(el.get("start"))
            return [element(NodeType.LIST, *self.children(el), **props)]
        if tag == "li":
            return [self._list_item(el)]
        if tag == "blockquote":
            return [element(NodeType.BLOCKQUOTE, *self.children(el))]
        if tag == "pre":
            code_el = el.find("code")
            source = code_el if code_el is not None else el
            # Python-Markdown ends code block text with a single newline
            value = html.unescape("".join(source.itertext())).removesuffix("\n")
            props = {}
            css = source.get("class", "")
            if css.startswith("language-"):
                props["language"] = css[len("language-") :]
            return [Node(type=NodeType.CODE, value=value, props=props)]
        if tag == "code":
            return [Node(type=NodeType.INLINE_CODE, value=html.unescape("".join(el.itertext())))]
        if tag == "table":
            return [self._table(el)]
        if tag == "a":
            props = {"url": el.get("href", "")}
            if el.get("title"):
                props["title"] = el.get("title")
            return [element(NodeType.LINK, *self.children(el), **props)]
        if tag == "img":
            props = {"url": el.get("src", ""), "alt": el.get("alt", "")}
            if el.get("title"):
                props["title"] = el.get("title")
            return [element(NodeType.IMAGE, **props)]
        if tag in INLINE_TAGS:
            return [element(INLINE_TAGS[tag], *self.children(el))]
        if tag == "br":
            return [Node(type=NodeType.BREAK)]
        if tag == "hr":
            return [Node(type=NodeType.THEMATIC_BREAK)]
        if tag == "span" and el.get("class") in ("math-source", "wiki-source"):
            return [text(el.text or "")]
        if tag == "input":
            return [Node(type=NodeType.HTML, value=etree.tostring(el, encoding="unicode").strip())]
        # Unknown wrappers are transparent
        return self.children(el)

    def _list_item(self, el: Element) -> Node:
        children = self.children(el)
        checked = None
        target = children
        if children and children[0].type == NodeType.PARAGRAPH:
            target = list(children[0].children)

        if target:
            first = target[0]
            if first.type == NodeType.HTML and 'type="checkbox"' in (first.value or ""):
                checked = bool(re.search(r"\bchecked\b", first.value or ""))
                target = target[1:]
                if target and target[0].type == NodeType.TEXT:
                    target[0] = text((target[0].value or "").lstrip())
            elif first.type == NodeType.TEXT:
                m = CHECKBOX_PREFIX.match(first.value or "")
                if m is not None:
                    checked = m.group(1) != " "
                    target = [text((first.value or "")[m.end() :]), *target[1:]]

        if checked is not None:
            if children and children[0].type == NodeType.PARAGRAPH:
                children = [children[0].evolve(children=target), *children[1:]]
            else:
                children = target
        return element(NodeType.LIST_ITEM, *children, checked=checked)

    def _table(self, el: Element) -> Node:
        rows: list[Node] = []
        for section in el:
            header = section.tag == "thead"
            tr_elements = [section] if section.tag == "tr" else list(section)
            for tr in tr_elements:
                cells = []
                for cell in tr:
                    align = cell.get("align")
                    style = cell.get("style", "")
                    m = re.search(r"text-align:\s*(\w+)", style)
                    if m:
                        align = m.group(1)
                    cells.append(
                        element(
                            NodeType.TABLE_CELL,
                            *self.children(cell),
                            header=cell.tag == "th",
                            align=align,
                        )
                    )
                rows.append(element(NodeType.TABLE_ROW, *cells, header=header))
        columns = len(rows[0].children) if rows else 0
        return element(NodeType.TABLE, *rows, columns=columns)


def parse_markdown(source: str) -> Node:
    """Parse markdown text into a root node."""
    if not source.strip():
        return element(NodeType.ROOT)
    md = create_parser()
    root = _markdown_to_etree(md, source)
    return element(NodeType.ROOT, *_TreeBuilder(md).children(root))


# ========== XML dialect ==========


def _xml_text(el: Element | None) -> str | None:
    if el is None:
        return None
    value = " ".join("".join(el.itertext()).split())
    return value or None


def _dita_inline(el: Element) -> list[Node]:
    nodes: list[Node] = []
    if el.text:
        nodes.append(text(el.text))
    for child in el:
        nodes.extend(_dita_node(child))
        if child.tail:
            nodes.append(text(child.tail))
    return nodes


def _dita_blocks(el: Element) -> list[Node]:
    nodes: list[Node] = []
    if el.text and el.text.strip():
        nodes.append(element(NodeType.PARAGRAPH, text(el.text.strip())))
    for child in el:
        nodes.extend(_dita_node(child))
        if child.tail and child.tail.strip():
            nodes.append(element(NodeType.PARAGRAPH, text(child.tail.strip())))
    return nodes


def _dita_node(el: Element) -> list[Node]:
    tag = el.tag
    if tag == "p":
        return [element(NodeType.PARAGRAPH, *_dita_inline(el))]
    if tag in ("ul", "ol"):
        return [element(NodeType.LIST, *(n for li in el for n in _dita_node(li)), ordered=tag == "ol")]
    if tag == "li":
        if any(child.tag in ("p", "ul", "ol", "codeblock", "note") for child in el):
            return [element(NodeType.LIST_ITEM, *_dita_blocks(el), checked=None)]
        return [element(NodeType.LIST_ITEM, *_dita_inline(el), checked=None)]
    if tag == "codeblock":
        props = {}
        outputclass = el.get("outputclass", "")
        if outputclass.startswith("language-"):
            props["language"] = outputclass[len("language-") :]
        return [Node(type=NodeType.CODE, value="".join(el.itertext()), props=props)]
    if tag == "note":
        note_type = el.get("type", "note")
        if note_type == "other" and el.get("othertype") == "blockquote":
            return [element(NodeType.BLOCKQUOTE, *_dita_blocks(el))]
        title = el.find("title")
        if title is not None:
            el.remove(title)
        heading = f"[!{note_type}]" + (f" {_xml_text(title)}" if title is not None else "")
        body = _dita_blocks(el)
        return [element(NodeType.BLOCKQUOTE, element(NodeType.PARAGRAPH, text(heading)), *body)]
    if tag == "section":
        nodes: list[Node] = []
        title = el.find("title")
        if title is not None:
            nodes.append(element(NodeType.HEADING, *_dita_inline(title), level=2))
            el.remove(title)
        return nodes + _dita_blocks(el)
    if tag == "xref":
        label = _dita_inline(el) or [text(el.get("href", ""))]
        return [element(NodeType.LINK, *label, url=el.get("href", ""))]
    if tag == "image":
        alt = el.find("alt")
        return [element(NodeType.IMAGE, url=el.get("href", ""), alt=_xml_text(alt) or el.get("alt", ""))]
    if tag in ("b", "i", "u"):
        node_type = NodeType.STRONG if tag == "b" else NodeType.EMPHASIS
        return [element(node_type, *_dita_inline(el))]
    if tag == "codeph":
        return [Node(type=NodeType.INLINE_CODE, value="".join(el.itertext()))]
    if tag in ("ph", "keyword", "term", "shortdesc"):
        return _dita_inline(el)
    if tag == "lines":
        value = "".join(el.itertext())
        if value.strip() == "---":
            return [Node(type=NodeType.THEMATIC_BREAK)]
        parts: list[Node] = []
        for i, line in enumerate(value.strip("\n").split("\n")):
            if i:
                parts.append(Node(type=NodeType.BREAK))
            parts.append(text(line))
        return [element(NodeType.PARAGRAPH, *parts)]
    if tag == "table":
        return [_dita_table(el)]
    return [Node(type=NodeType.HTML, value=etree.tostring(el, encoding="unicode").strip(), props={"block": True})]


def _dita_table(el: Element) -> Node:
    rows: list[Node] = []
    for part in el.iter():
        if part.tag not in ("thead", "tbody"):
            continue
        for row in part.findall("row"):
            cells = [
                element(NodeType.TABLE_CELL, *_dita_inline(entry), header=part.tag == "thead", align=None)
                for entry in row.findall("entry")
            ]
            rows.append(element(NodeType.TABLE_ROW, *cells, header=part.tag == "thead"))
    columns = len(rows[0].children) if rows else 0
    return element(NodeType.TABLE, *rows, columns=columns)


def _xml_metadata(root: Element) -> dict:
    """Heuristic metadata from title/prolog/topicmeta elements."""
    data: dict = {}
    if root.get("id"):
        data["id"] = root.get("id")
    title = _xml_text(root.find("title")) or root.get("title")
    if title:
        data["title"] = title
    shortdesc = _xml_text(root.find("shortdesc"))

    meta = root.find("prolog")
    if meta is None:
        meta = root.find("topicmeta")
    if meta is not None:
        if _xml_text(meta.find(".//author")):
            data["author"] = _xml_text(meta.find(".//author"))
        created = meta.find(".//critdates/created")
        if created is not None and created.get("date"):
            data["date"] = created.get("date")
        audience = meta.find(".//audience")
        if audience is not None:
            data["audience"] = audience.get("type") or _xml_text(audience)
        if _xml_text(meta.find(".//category")):
            data["category"] = _xml_text(meta.find(".//category"))
        keywords = [_xml_text(k) for k in meta.iter("keyword") if _xml_text(k)]
        if keywords:
            data["tags"] = keywords
        shortdesc = shortdesc or _xml_text(meta.find(".//shortdesc"))
        resource = meta.find(".//resourceid[@appname='access_level']")
        if resource is not None and resource.get("id"):
            data["access_level"] = resource.get("id")
        for item in meta.iter("data"):
            name, value = item.get("name"), item.get("value")
            if name in ("publish", "featured"):
                data[name] = value == "true"
            elif name == "access_level" and value:
                data["access_level"] = value
            elif name == "tags" and value:
                data.setdefault("tags", [t.strip() for t in value.split(",") if t.strip()])
    if shortdesc:
        data["shortdesc"] = shortdesc
    return data


def _parse_xml_body(body: str) -> Element | None:
    stripped = body.lstrip()
    if not stripped.startswith("<"):
        return None
    try:
        root = etree.fromstring(stripped)
    except etree.ParseError:
        return None
    if root.tag not in XML_ROOTS:
        return None
    return root


def _xml_tree(root: Element) -> tuple[dict, Node, list[str]]:
    data = _xml_metadata(root)
    if root.tag == "map":
        refs = [ref.get("href") for ref in root.iter("topicref") if ref.get("href")]
        items = []
        for ref in root.iter("topicref"):
            if not ref.get("href"):
                continue
            navtitle = _xml_text(ref.find("topicmeta/navtitle"))
            label = f"[[{ref.get('href')}|{navtitle}]]" if navtitle else f"[[{ref.get('href')}]]"
            items.append(element(NodeType.LIST_ITEM, text(label), checked=None))
        tree = element(NodeType.ROOT, element(NodeType.LIST, *items, ordered=True)) if items else element(NodeType.ROOT)
        return data, tree, refs

    body = root.find("body")
    if body is None:
        body = root.find("conbody")
    if body is None:
        body = root.find("taskbody")
    if body is None:
        body = root.find("refbody")
    children = _dita_blocks(body) if body is not None else []
    return data, element(NodeType.ROOT, *children), []


# ========== Entry point ==========


def first_heading_text(tree: Node, level: int = 1) -> str | None:
    """Return the text of the first heading of ``level``."""
    for child in tree.children:
        if child.type == NodeType.HEADING and child.get("level") == level:
            return text_content(child).strip() or None
    return None


def parse(
    raw: bytes | str,
    path: str | None = None,
) -> tuple[TopicMetadata | MapMetadata, Node]:
    """Parse a source into metadata and a semantic tree.

    A malformed preamble never fails the parse: metadata falls back to
    empty and the whole input is parsed as body.

    Args:
        raw: Source bytes or text.
        path: Source path, used to tell maps from topics.

    Returns:
        Tuple of (metadata, root node).
    """
    source = raw.decode("utf-8-sig", errors="replace") if isinstance(raw, bytes) else raw
    source = source.replace("\r\n", "\n")

    malformed = False
    try:
        data, body = split_preamble(source)
    except MalformedPreambleError as e:
        logger.warning("Malformed preamble in %s: %s", path or "<source>", e.message)
        data, body, malformed = {}, source, True

    xml_root = None if malformed else _parse_xml_body(body)
    role: Role = detect_role(path, data, xml_root.tag if xml_root is not None else None)

    refs: list[str] = []
    if xml_root is not None:
        xml_data, tree, refs = _xml_tree(xml_root)
        data = {**xml_data, **data}
    else:
        tree = parse_markdown(body)
        if role == "map":
            refs = extract_topic_refs(body)

    try:
        metadata = build_metadata(data, role)
    except MalformedPreambleError as e:
        logger.warning("Malformed preamble in %s: %s", path or "<source>", e.message)
        metadata = empty_metadata(role)
        if not malformed:
            tree = parse_markdown(source)

    if isinstance(metadata, MapMetadata) and not metadata.topics and refs:
        metadata = metadata.model_copy(update={"topics": refs})
    if metadata.title is None:
        title = first_heading_text(tree)
        if title:
            metadata = metadata.model_copy(update={"title": title})
    return metadata, tree
