"""Serialize semantic trees to HTML and to DITA XML."""

import logging
import re
from enum import Enum
from xml.etree import ElementTree as etree
from xml.etree.ElementTree import Element, SubElement

from markdown.serializers import to_html_string

from ditawiki.core.errors import UnsupportedNodeError
from ditawiki.core.locator import normalize_slug
from ditawiki.core.models import MapMetadata, TopicMetadata
from ditawiki.core.nodes import Node, NodeType, text_content

logger = logging.getLogger(__name__)

TOPIC_DOCTYPE = '<!DOCTYPE topic PUBLIC "-//OASIS//DTD DITA Topic//EN" "topic.dtd">'
MAP_DOCTYPE = '<!DOCTYPE map PUBLIC "-//OASIS//DTD DITA Map//EN" "map.dtd">'
XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'

# Raw HTML is swapped in after serialization
RAW_PLACEHOLDER = "\x02raw:{}\x03"
RAW_PLACEHOLDER_RE = re.compile(r"\x02raw:(\d+)\x03")


class OutputFormat(str, Enum):
    """Supported output representations."""

    HTML = "html"
    DITA = "dita"


def _append_text(parent: Element, value: str) -> None:
    """Append text after the last child of ``parent`` (ElementTree tail rules)."""
    if not value:
        return
    if len(parent):
        last = parent[-1]
        last.tail = (last.tail or "") + value
    else:
        parent.text = (parent.text or "") + value


def _sole_child(node: Node, node_type: NodeType) -> Node | None:
    """Return the only non-blank child of ``node`` if it has ``node_type``."""
    children = [
        child for child in node.children
        if not (child.type == NodeType.TEXT and not (child.value or "").strip())
    ]
    if len(children) == 1 and children[0].type == node_type:
        return children[0]
    return None


def _image_size(size: str) -> dict[str, str]:
    if not size:
        return {}
    m = re.fullmatch(r"(\d+)(?:x(\d+))?", size)
    if m:
        attrs = {"width": m.group(1)}
        if m.group(2):
            attrs["height"] = m.group(2)
        return attrs
    m = re.fullmatch(r"(width|height)=(\d+%?)", size)
    if m:
        return {m.group(1): m.group(2)}
    return {}


# ========== HTML ==========


class HtmlSerializer:
    """Render a tree to an HTML fragment."""

    def __init__(self) -> None:
        self._raw: list[str] = []

    def render(self, tree: Node) -> str:
        container = Element("div")
        self._children(container, tree)
        output = to_html_string(container)
        # Strip the container element
        output = output[len("<div>") : -len("</div>")] if output.startswith("<div>") else ""
        return RAW_PLACEHOLDER_RE.sub(lambda m: self._raw[int(m.group(1))], output).strip()

    def _children(self, parent: Element, node: Node) -> None:
        for child in node.children:
            self._node(parent, child)

    def _raw_html(self, parent: Element, value: str) -> None:
        self._raw.append(value)
        _append_text(parent, RAW_PLACEHOLDER.format(len(self._raw) - 1))

    def _node(self, parent: Element, node: Node) -> None:
        t = node.type
        if t == NodeType.TEXT:
            _append_text(parent, node.value or "")
        elif t == NodeType.PARAGRAPH:
            sole = _sole_child(node, NodeType.EMBED)
            if sole is not None and sole.get("kind") == "content":
                self._embed(parent, sole)
                return
            self._children(SubElement(parent, "p"), node)
        elif t == NodeType.HEADING:
            el = SubElement(parent, f"h{node.get('level', 1)}")
            if node.get("id"):
                el.set("id", node.get("id"))
            self._children(el, node)
        elif t == NodeType.LIST:
            el = SubElement(parent, "ol" if node.get("ordered") else "ul")
            if node.get("ordered") and node.get("start", 1) != 1:
                el.set("start", str(node.get("start")))
            if any(item.get("checked") is not None for item in node.children):
                el.set("class", "contains-task-list")
            self._children(el, node)
        elif t == NodeType.LIST_ITEM:
            el = SubElement(parent, "li")
            checked = node.get("checked")
            if checked is not None:
                el.set("class", "task-list-item")
                target = el
                if node.children and node.children[0].type == NodeType.PARAGRAPH:
                    target = SubElement(el, "p")
                box = SubElement(target, "input", type="checkbox", disabled="disabled")
                if checked:
                    box.set("checked", "checked")
                box.tail = " "
                if target is not el:
                    self._children(target, node.children[0])
                    for child in node.children[1:]:
                        self._node(el, child)
                    return
            self._children(el, node)
        elif t == NodeType.BLOCKQUOTE:
            self._children(SubElement(parent, "blockquote"), node)
        elif t == NodeType.CODE:
            code = SubElement(SubElement(parent, "pre"), "code")
            if node.get("language"):
                code.set("class", f"language-{node.get('language')}")
            code.text = node.value or ""
        elif t == NodeType.INLINE_CODE:
            SubElement(parent, "code").text = node.value or ""
        elif t == NodeType.TABLE:
            self._table(parent, node)
        elif t == NodeType.LINK:
            el = SubElement(parent, "a", href=node.get("url", ""))
            if node.get("title"):
                el.set("title", node.get("title"))
            self._children(el, node)
        elif t == NodeType.IMAGE:
            el = SubElement(parent, "img", src=node.get("url", ""), alt=node.get("alt", ""))
            if node.get("title"):
                el.set("title", node.get("title"))
        elif t == NodeType.EMPHASIS:
            self._children(SubElement(parent, "em"), node)
        elif t == NodeType.STRONG:
            self._children(SubElement(parent, "strong"), node)
        elif t == NodeType.DELETE:
            self._children(SubElement(parent, "del"), node)
        elif t == NodeType.BREAK:
            SubElement(parent, "br")
        elif t == NodeType.THEMATIC_BREAK:
            SubElement(parent, "hr")
        elif t == NodeType.HTML:
            self._raw_html(parent, node.value or "")
        elif t == NodeType.CALLOUT:
            self._callout(parent, node)
        elif t == NodeType.WIKILINK:
            self._wikilink(parent, node)
        elif t == NodeType.EMBED:
            self._embed(parent, node)
        elif t == NodeType.MATH:
            self._math(parent, node)
        elif t == NodeType.FOOTNOTE_REFERENCE:
            sup = SubElement(parent, "sup", id=node.get("ref_id", ""))
            link = SubElement(sup, "a", href=f"#{node.get('target_id', '')}")
            link.set("class", "footnote-ref")
            link.text = str(node.get("number"))
        elif t == NodeType.FOOTNOTES:
            self._footnotes(parent, node)
        else:
            self._children(parent, node)

    def _table(self, parent: Element, node: Node) -> None:
        table = SubElement(parent, "table")
        head = [row for row in node.children if row.get("header")]
        body = [row for row in node.children if not row.get("header")]
        for section_tag, rows in (("thead", head), ("tbody", body)):
            if not rows:
                continue
            section = SubElement(table, section_tag)
            for row in rows:
                tr = SubElement(section, "tr")
                for cell in row.children:
                    el = SubElement(tr, "th" if cell.get("header") else "td")
                    if cell.get("align"):
                        el.set("style", f"text-align: {cell.get('align')};")
                    self._children(el, cell)

    def _callout(self, parent: Element, node: Node) -> None:
        callout_type = node.get("callout_type", "note")
        div = SubElement(parent, "div")
        div.set("class", f"callout callout-{callout_type} {node.get('style_class', '')}".strip())
        div.set("data-callout-type", callout_type)
        if node.get("fold"):
            div.set("data-callout-fold", node.get("fold"))
        header = SubElement(div, "div")
        header.set("class", "callout-header")
        icon = SubElement(header, "span")
        icon.set("class", "callout-icon")
        icon.text = node.get("icon", "")
        title = SubElement(header, "span")
        title.set("class", "callout-title")
        title.text = node.get("title") or callout_type.capitalize()
        content = SubElement(div, "div")
        content.set("class", "callout-content")
        self._children(content, node)

    def _wikilink(self, parent: Element, node: Node) -> None:
        el = SubElement(parent, "a", href=node.get("href", ""))
        css = "wiki-link" if node.get("exists", True) else "wiki-link wiki-link-missing"
        el.set("class", css)
        el.set("data-target", node.get("target", ""))
        if node.get("kind") == "external":
            el.set("target", "_blank")
            el.set("rel", "noopener noreferrer")
        elif node.get("kind") == "document":
            el.set("target", "_blank")
        el.text = node.get("alias") or node.get("target", "")

    def _embed(self, parent: Element, node: Node) -> None:
        kind = node.get("kind")
        source = node.get("source", "")
        if kind == "image":
            el = SubElement(parent, "img", src=node.get("url", ""), alt=node.get("alt") or source)
            for key, value in _image_size(node.get("size", "")).items():
                el.set(key, value)
            el.set("class", "embed-image")
            return
        if kind in ("document", "external"):
            el = SubElement(parent, "a", href=node.get("url", source))
            el.set("class", f"embed-{kind}")
            el.set("target", "_blank")
            el.text = node.get("alt") or source
            return

        if node.get("error"):
            div = SubElement(parent, "div")
            div.set("class", "embed embed-error")
            div.set("data-source", source)
            div.text = node.get("error")
            return
        if not node.get("resolved"):
            div = SubElement(parent, "div")
            div.set("class", "embed-pending")
            div.set("data-source", source)
            return
        div = SubElement(parent, "div")
        div.set("class", "embed")
        div.set("data-source", source)
        if node.get("section"):
            div.set("data-section", node.get("section"))
        self._children(div, node)

    def _math(self, parent: Element, node: Node) -> None:
        el = SubElement(parent, "span")
        tex = node.get("tex", "")
        if node.get("display"):
            el.set("class", "math math-display")
            el.text = f"\\[{tex}\\]"
        else:
            el.set("class", "math math-inline")
            el.text = f"\\({tex}\\)"

    def _footnotes(self, parent: Element, node: Node) -> None:
        section = SubElement(parent, "section")
        section.set("class", "footnotes")
        ol = SubElement(section, "ol")
        for definition in node.children:
            li = SubElement(ol, "li", id=definition.get("anchor_id", ""))
            target = SubElement(li, "p")
            for child in definition.children:
                if child.type == NodeType.PARAGRAPH:
                    self._children(target, child)
                else:
                    self._node(li, child)
            backref = SubElement(target, "a", href=f"#{definition.get('ref_id', '')}")
            backref.set("class", "footnote-backref")
            backref.text = "↩"
            backref.tail = None
            if len(target) > 1:
                previous = target[-2]
                previous.tail = (previous.tail or "") + " "
            else:
                target.text = (target.text or "") + " "


def to_html(tree: Node) -> str:
    """Render a tree to an HTML fragment."""
    return HtmlSerializer().render(tree)


# ========== DITA ==========


def topic_id(value: str | None) -> str:
    """Make an XML id out of a slug or free text."""
    cleaned = re.sub(r"[^A-Za-z0-9_.-]+", "_", value or "").strip("_")
    if not cleaned:
        return "topic"
    if not re.match(r"[A-Za-z_]", cleaned):
        cleaned = f"t_{cleaned}"
    return cleaned


def _comment(value: str) -> Element:
    return etree.Comment(f" {value.replace('--', '- -')} ")


class DitaSerializer:
    """Render a tree to a DITA topic body.

    Nodes without a DITA equivalent become XML comments.
    """

    def __init__(self, doc_id: str) -> None:
        self.doc_id = doc_id
        self._definitions: dict[int, Node] = {}
        self._emitted: set[int] = set()

    def body(self, tree: Node) -> Element:
        for node in tree.children:
            if node.type == NodeType.FOOTNOTES:
                for definition in node.children:
                    self._definitions[definition.get("number")] = definition
        body = Element("body")
        self._children(body, tree)
        return body

    def _children(self, parent: Element, node: Node) -> None:
        for child in node.children:
            self._node(parent, child)

    def _node(self, parent: Element, node: Node) -> None:
        try:
            self._convert(parent, node)
        except UnsupportedNodeError as e:
            logger.warning("No DITA mapping for %s node in %s", e.node_type, self.doc_id)
            comment = _comment(f"unsupported {e.node_type}: {node.value or text_content(node)}")
            parent.append(comment)

    def _convert(self, parent: Element, node: Node) -> None:
        t = node.type
        if t == NodeType.TEXT:
            _append_text(parent, node.value or "")
        elif t == NodeType.PARAGRAPH:
            image = _sole_child(node, NodeType.IMAGE)
            if image is not None:
                self._node(parent, image)
                return
            embed = _sole_child(node, NodeType.EMBED)
            if embed is not None and embed.get("kind") in ("content", "image"):
                self._embed(parent, embed, block=True)
                return
            self._children(SubElement(parent, "p"), node)
        elif t == NodeType.HEADING:
            ph = SubElement(SubElement(parent, "p"), "ph", importance="high")
            ph.set("outputclass", f"heading-{node.get('level', 1)}")
            self._children(ph, node)
        elif t == NodeType.LIST:
            self._children(SubElement(parent, "ol" if node.get("ordered") else "ul"), node)
        elif t == NodeType.LIST_ITEM:
            li = SubElement(parent, "li")
            checked = node.get("checked")
            if checked is not None:
                state = "checked" if checked else "unchecked"
                li.set("outputclass", f"task-list-item task-list-item-{state}")
            self._children(li, node)
        elif t == NodeType.BLOCKQUOTE:
            self._children(SubElement(parent, "note", type="other", othertype="blockquote"), node)
        elif t == NodeType.CALLOUT:
            note = SubElement(parent, "note", type=node.get("note_type", "other"))
            if note.get("type") == "other":
                note.set("othertype", node.get("callout_type", "callout"))
            if node.get("title"):
                SubElement(note, "title").text = node.get("title")
            self._children(note, node)
        elif t == NodeType.CODE:
            block = SubElement(parent, "codeblock")
            if node.get("language"):
                block.set("outputclass", f"language-{node.get('language')}")
            block.text = node.value or ""
        elif t == NodeType.INLINE_CODE:
            SubElement(parent, "codeph").text = node.value or ""
        elif t == NodeType.TABLE:
            self._table(parent, node)
        elif t == NodeType.LINK:
            url = node.get("url", "")
            external = url.startswith(("http", "//"))
            xref = SubElement(
                parent,
                "xref",
                href=url,
                format="html" if external else "dita",
                scope="external" if external else "local",
            )
            if node.get("title"):
                xref.set("title", node.get("title"))
            self._children(xref, node)
        elif t == NodeType.IMAGE:
            image = SubElement(parent, "image", href=node.get("url", ""))
            if node.get("alt"):
                SubElement(image, "alt").text = node.get("alt")
            if node.get("title"):
                image.set("title", node.get("title"))
        elif t == NodeType.EMPHASIS:
            self._children(SubElement(parent, "i"), node)
        elif t == NodeType.STRONG:
            self._children(SubElement(parent, "b"), node)
        elif t == NodeType.DELETE:
            self._children(SubElement(parent, "ph", outputclass="strikethrough"), node)
        elif t == NodeType.BREAK:
            SubElement(parent, "ph", outputclass="line-break")
        elif t == NodeType.THEMATIC_BREAK:
            SubElement(parent, "lines").text = "---"
        elif t == NodeType.WIKILINK:
            self._wikilink(parent, node)
        elif t == NodeType.EMBED:
            self._embed(parent, node, block=False)
        elif t == NodeType.MATH:
            css = "math math-display" if node.get("display") else "math"
            SubElement(parent, "ph", outputclass=css).text = node.get("tex", "")
        elif t == NodeType.FOOTNOTE_REFERENCE:
            self._footnote(parent, node)
        elif t == NodeType.FOOTNOTES:
            # Emitted inline at the references
            return
        else:
            raise UnsupportedNodeError(t.value)

    def _table(self, parent: Element, node: Node) -> None:
        rows = list(node.children)
        table = SubElement(parent, "table")
        tgroup = SubElement(table, "tgroup", cols=str(node.get("columns") or (len(rows[0].children) if rows else 0)))
        if not rows:
            return
        for section_tag, section_rows in (("thead", rows[:1]), ("tbody", rows[1:])):
            if not section_rows:
                continue
            section = SubElement(tgroup, section_tag)
            for row in section_rows:
                row_el = SubElement(section, "row")
                for cell in row.children:
                    self._children(SubElement(row_el, "entry"), cell)

    def _wikilink(self, parent: Element, node: Node) -> None:
        kind = node.get("kind")
        external = kind == "external"
        xref = SubElement(
            parent,
            "xref",
            href=node.get("href", ""),
            format="html" if external else ("dita" if kind in ("page", "section") else kind),
            scope="external" if external else "local",
        )
        if not node.get("exists", True):
            xref.set("outputclass", "wiki-link-missing")
        xref.text = node.get("alias") or node.get("target", "")

    def _embed(self, parent: Element, node: Node, block: bool) -> None:
        kind = node.get("kind")
        source = node.get("source", "")
        if kind == "image":
            image = SubElement(parent, "image", href=node.get("url", ""))
            for key, value in _image_size(node.get("size", "")).items():
                image.set(key, value)
            if node.get("alt"):
                SubElement(image, "alt").text = node.get("alt")
            return
        if kind in ("document", "external"):
            xref = SubElement(parent, "xref", href=node.get("url", source), format="html", scope="external")
            if kind == "document":
                xref.set("format", source.rsplit(".", 1)[-1].lower())
                xref.set("scope", "local")
            xref.text = node.get("alt") or source
            return
        if node.get("error"):
            if block:
                note = SubElement(parent, "note", type="warning", outputclass="embed-error")
                SubElement(note, "p").text = node.get("error")
            else:
                SubElement(parent, "ph", outputclass="embed-error").text = node.get("error")
            return
        if block and node.get("resolved"):
            self._children(parent, node)
            return
        xref = SubElement(parent, "xref", href=source, format="dita", scope="local")
        xref.text = node.get("alt") or source

    def _footnote(self, parent: Element, node: Node) -> None:
        number = node.get("number")
        definition = self._definitions.get(number)
        anchor = f"fn-{number}"
        if definition is None:
            parent.append(_comment(f"footnote {node.get('identifier')} has no definition"))
            return
        if number in self._emitted:
            SubElement(parent, "xref", href=f"#{self.doc_id}/{anchor}", type="fn")
            return
        self._emitted.add(number)
        fn = SubElement(parent, "fn", id=anchor)
        for child in definition.children:
            if child.type == NodeType.PARAGRAPH:
                self._children(fn, child)
            else:
                self._node(fn, child)


def _prolog(parent: Element, metadata: TopicMetadata | MapMetadata) -> None:
    prolog = SubElement(parent, "prolog")
    if metadata.author:
        SubElement(prolog, "author").text = metadata.author
    if metadata.date:
        SubElement(SubElement(prolog, "critdates"), "created", date=metadata.date)
    meta = SubElement(prolog, "metadata")
    if metadata.audience:
        SubElement(meta, "audience", type=metadata.audience)
    if metadata.category:
        SubElement(meta, "category").text = metadata.category
    if metadata.tags:
        keywords = SubElement(meta, "keywords")
        for tag in metadata.tags:
            SubElement(keywords, "keyword").text = tag
    SubElement(meta, "resourceid", appname="access_level", id=metadata.access_level)


def to_dita_topic(tree: Node, metadata: TopicMetadata | MapMetadata, doc_id: str | None = None) -> str:
    """Render a tree as a DITA topic document."""
    identifier = topic_id(metadata.id or doc_id)
    topic = Element("topic", id=identifier)
    SubElement(topic, "title").text = metadata.title or "Untitled"
    if metadata.shortdesc:
        SubElement(topic, "shortdesc").text = metadata.shortdesc
    _prolog(topic, metadata)
    topic.append(DitaSerializer(identifier).body(tree))
    xml = etree.tostring(topic, encoding="unicode")
    return f"{XML_DECLARATION}\n{TOPIC_DOCTYPE}\n{xml}\n"


def navtitle(ref: str) -> str:
    """Title-cased navigation title from a topic reference."""
    name = normalize_slug(ref).rsplit("/", 1)[-1]
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), name.replace("-", " ").replace("_", " "))


def serialize_map(
    metadata: MapMetadata,
    topic_refs: list[str] | None = None,
    map_id: str | None = None,
) -> str:
    """Render map metadata and topic references as a DITA map.

    Topic references point at ``<basename>.dita`` files next to the map.
    """
    refs = metadata.topics if topic_refs is None else topic_refs
    root = Element("map")
    if metadata.id or map_id:
        root.set("id", topic_id(metadata.id or map_id))
    if metadata.title:
        SubElement(root, "title").text = metadata.title

    topicmeta = Element("topicmeta")
    if metadata.author:
        SubElement(topicmeta, "author").text = metadata.author
    if metadata.audience:
        SubElement(topicmeta, "audience", type=metadata.audience)
    if metadata.category:
        SubElement(topicmeta, "category").text = metadata.category
    if metadata.tags:
        keywords = SubElement(topicmeta, "keywords")
        for tag in metadata.tags:
            SubElement(keywords, "keyword").text = tag
    SubElement(topicmeta, "data", name="publish", value=str(metadata.publish).lower())
    SubElement(topicmeta, "data", name="featured", value=str(metadata.featured).lower())
    if metadata.shortdesc:
        SubElement(topicmeta, "shortdesc").text = metadata.shortdesc
    root.append(topicmeta)

    for ref in refs:
        slug = normalize_slug(ref)
        if not slug:
            continue
        topicref = SubElement(root, "topicref", href=f"{slug.rsplit('/', 1)[-1]}.dita", format="dita")
        SubElement(SubElement(topicref, "topicmeta"), "navtitle").text = navtitle(ref)

    xml = etree.tostring(root, encoding="unicode")
    return f"{XML_DECLARATION}\n{MAP_DOCTYPE}\n{xml}\n"


def serialize(
    tree: Node,
    output_format: OutputFormat | str = OutputFormat.HTML,
    metadata: TopicMetadata | MapMetadata | None = None,
    doc_id: str | None = None,
) -> str:
    """Serialize a tree in the requested format.

    Raises:
        ValueError: Unknown output format.
    """
    output_format = OutputFormat(output_format)
    if output_format == OutputFormat.HTML:
        return to_html(tree)
    return to_dita_topic(tree, metadata or TopicMetadata(), doc_id)
