"""Transform pipeline: ordered tree-rewrite stages over the semantic tree.

Stages run in a fixed order: wikilinks, embeds, callouts, footnotes, math.
Each stage is a function ``(tree, context) -> tree`` built on
``nodes.rewrite``, so it never mutates its input. The context carries the
callbacks a stage needs (``page_exists``) and collects what the stages find.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, NamedTuple

from markdown.extensions.toc import slugify, unique

from ditawiki.core.models import EmbedRef, Footnote, TocEntry, WikiLinkRef
from ditawiki.core.nodes import Node, NodeType, element, rewrite, text, text_content, walk

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".avif")
DOCUMENT_EXTENSIONS = (".pdf", ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx")

# [[target]] or [[target|alias]], but not ![[embed]]
WIKI_LINK_PATTERN = re.compile(r"(?<!!)\[\[([^\]|]+)(?:\|([^\]]+))?\]\]")
EMBED_PATTERN = re.compile(r"!\[\[(.*?)\]\]")
EMBED_SIZE_PATTERN = re.compile(r"^\d+(x\d+)?$|^(width|height)=\d+%?$")
CALLOUT_PATTERN = re.compile(r"^\s*\[!(\w+)\]([+-])?(?:\s+(.*?))?\s*$")
FOOTNOTE_DEF_PATTERN = re.compile(r"^\[\^([^\]\s]+)\]:\s*")
FOOTNOTE_REF_PATTERN = re.compile(r"\[\^([^\]\s]+)\]")
MATH_PATTERN = re.compile(
    r"\$\$(?P<display>.+?)\$\$"
    r"|\\\[(?P<display_bracket>.+?)\\\]"
    r"|\\\((?P<inline_bracket>.+?)\\\)"
    r"|(?<![\\$\w])\$(?P<inline>(?=\S)[^$\n]+?(?<=\S))\$(?![\w$])",
    re.DOTALL,
)


class CalloutStyle(NamedTuple):
    icon: str
    style_class: str
    note_type: str


# Presentation and interchange share this table
CALLOUT_TYPES: dict[str, CalloutStyle] = {
    "note": CalloutStyle("ℹ️", "callout-note", "note"),
    "info": CalloutStyle("ℹ️", "callout-info", "note"),
    "todo": CalloutStyle("✅", "callout-todo", "note"),
    "nota": CalloutStyle("📌", "callout-note", "note"),
    "abstract": CalloutStyle("📝", "callout-abstract", "other"),
    "tldr": CalloutStyle("📄", "callout-tldr", "other"),
    "tip": CalloutStyle("💡", "callout-tip", "important"),
    "hint": CalloutStyle("💡", "callout-tip", "important"),
    "important": CalloutStyle("❗", "callout-important", "important"),
    "success": CalloutStyle("✅", "callout-success", "tip"),
    "check": CalloutStyle("✅", "callout-success", "tip"),
    "done": CalloutStyle("✅", "callout-success", "tip"),
    "question": CalloutStyle("❓", "callout-question", "other"),
    "help": CalloutStyle("❓", "callout-question", "other"),
    "faq": CalloutStyle("❓", "callout-question", "other"),
    "example": CalloutStyle("📑", "callout-example", "other"),
    "quote": CalloutStyle("💬", "callout-quote", "other"),
    "cite": CalloutStyle("💬", "callout-quote", "other"),
    "warning": CalloutStyle("⚠️", "callout-warning", "caution"),
    "caution": CalloutStyle("⚠️", "callout-warning", "caution"),
    "attention": CalloutStyle("⚠️", "callout-warning", "caution"),
    "descargo": CalloutStyle("⚠️", "callout-warning", "caution"),
    "failure": CalloutStyle("❌", "callout-failure", "warning"),
    "fail": CalloutStyle("❌", "callout-failure", "warning"),
    "missing": CalloutStyle("❌", "callout-failure", "warning"),
    "danger": CalloutStyle("⚠️", "callout-danger", "danger"),
    "error": CalloutStyle("⚠️", "callout-danger", "danger"),
    "bug": CalloutStyle("🐛", "callout-bug", "danger"),
    "disclaimer": CalloutStyle("🚨", "callout-disclaimer", "other"),
}
DEFAULT_CALLOUT = CalloutStyle("ℹ️", "callout-default", "other")


def callout_style(callout_type: str) -> CalloutStyle:
    """Look up icon, CSS class and note type for a callout type."""
    return CALLOUT_TYPES.get(callout_type.lower(), DEFAULT_CALLOUT)


@dataclass
class TransformContext:
    """Inputs and findings of one pipeline run."""

    page_exists: Callable[[str], bool] = lambda name: True
    asset_url_prefix: str = "/content/assets"
    link_base_path: str = ""
    doc_id: str = "doc"
    wikilinks: list[WikiLinkRef] = field(default_factory=list)
    embeds: list[EmbedRef] = field(default_factory=list)
    footnotes: list[Footnote] = field(default_factory=list)
    unresolved_footnotes: list[str] = field(default_factory=list)

    def asset_url(self, target: str) -> str:
        return f"{self.asset_url_prefix.rstrip('/')}/{target.lstrip('/')}"


def page_slug(target: str) -> str:
    """URL slug for a same-site page: spaces to dashes, lowercase, safe chars only."""
    slug = re.sub(r"\.md$", "", target.strip(), flags=re.IGNORECASE)
    slug = re.sub(r"\s+", "-", slug).lower()
    return re.sub(r"[^a-z0-9\-_/]", "", slug)


def _split_text(value: str, pattern: re.Pattern, make: Callable[[re.Match], Node | None]) -> list[Node] | None:
    """Split a text run on ``pattern``; ``None`` when nothing matched."""
    nodes: list[Node] = []
    pos = 0
    matched = False
    for m in pattern.finditer(value):
        replacement = make(m)
        if replacement is None:
            continue
        matched = True
        if m.start() > pos:
            nodes.append(text(value[pos : m.start()]))
        nodes.append(replacement)
        pos = m.end()
    if not matched:
        return None
    if pos < len(value):
        nodes.append(text(value[pos:]))
    return nodes


# Text inside these is never rewritten
OPAQUE_TYPES = frozenset({NodeType.LINK, NodeType.CODE, NodeType.INLINE_CODE, NodeType.HTML})


# ========== Wikilinks ==========


def classify_target(target: str) -> tuple[str, str | None]:
    """Classify a wikilink target.

    Returns:
        Tuple of (kind, fragment); kind is one of ``external``, ``image``,
        ``document``, ``section`` or ``page``.
    """
    lowered = target.lower()
    if lowered.startswith(("http://", "https://")):
        return "external", None
    if lowered.endswith(IMAGE_EXTENSIONS):
        return "image", None
    if lowered.endswith(DOCUMENT_EXTENSIONS):
        return "document", None
    if "#" in target:
        return "section", target.split("#", 1)[1].strip() or None
    return "page", None


def _wikilink_node(m: re.Match, ctx: TransformContext) -> Node:
    target = m.group(1).strip()
    alias = m.group(2).strip() if m.group(2) else None
    kind, fragment = classify_target(target)

    exists = True
    if kind == "external":
        href = target
    elif kind in ("image", "document"):
        href = ctx.asset_url(target)
    else:
        name = target.split("#", 1)[0].strip()
        href = f"{ctx.link_base_path.rstrip('/')}/{page_slug(name)}" if name else ""
        if fragment:
            href = f"{href}#{slugify(fragment, '-')}"
        exists = ctx.page_exists(name) if name else True

    ctx.wikilinks.append(WikiLinkRef(target=target, alias=alias, kind=kind, href=href, exists=exists))
    return Node(
        type=NodeType.WIKILINK,
        props={
            "target": target,
            "alias": alias,
            "kind": kind,
            "fragment": fragment,
            "href": href,
            "exists": exists,
        },
    )


def wikilink_stage(tree: Node, ctx: TransformContext) -> Node:
    """Replace ``[[target|alias]]`` runs with wikilink nodes."""

    def visit(node: Node) -> Node | list[Node] | None:
        if node.type in OPAQUE_TYPES:
            return node
        if node.type == NodeType.TEXT and node.value:
            return _split_text(node.value, WIKI_LINK_PATTERN, lambda m: _wikilink_node(m, ctx))
        return None

    return rewrite(tree, visit)


# ========== Embeds ==========


def parse_embed(inner: str) -> tuple[str, str | None, str, str]:
    """Split embed syntax into (source, section, alt, size).

    The segment after the source is a size when it looks like one
    (``100``, ``100x50``, ``width=100``), otherwise alt text; a third
    segment fills whichever of the two is still empty.
    """
    parts = [part.strip() for part in inner.split("|")]
    source = parts[0]
    alt = size = ""
    if len(parts) > 1:
        if EMBED_SIZE_PATTERN.match(parts[1]):
            size = parts[1]
            alt = parts[2] if len(parts) > 2 else ""
        else:
            alt = parts[1]
            size = parts[2] if len(parts) > 2 else ""

    section = None
    if "#" in source and not source.lower().startswith(("http://", "https://")):
        source, section = (piece.strip() for piece in source.split("#", 1))
        section = section or None
    return source, section, alt, size


def _embed_node(m: re.Match, ctx: TransformContext) -> Node | None:
    source, section, alt, size = parse_embed(m.group(1))
    if not source:
        return None
    kind, _ = classify_target(source)
    if kind in ("page", "section"):
        kind = "content"

    props = {
        "source": source,
        "section": section,
        "alt": alt,
        "size": size,
        "kind": kind,
        "index": len(ctx.embeds),
    }
    if kind == "external":
        props["url"] = source
    elif kind in ("image", "document"):
        props["url"] = ctx.asset_url(source)

    ctx.embeds.append(EmbedRef(source=source, section=section, alt=alt, size=size, kind=kind))
    return Node(type=NodeType.EMBED, props=props)


def embed_stage(tree: Node, ctx: TransformContext) -> Node:
    """Replace ``![[source|alt|size]]`` runs with embed placeholders."""

    def visit(node: Node) -> Node | list[Node] | None:
        if node.type in OPAQUE_TYPES:
            return node
        if node.type == NodeType.TEXT and node.value:
            return _split_text(node.value, EMBED_PATTERN, lambda m: _embed_node(m, ctx))
        return None

    return rewrite(tree, visit)


# ========== Callouts ==========


def _split_callout_heading(paragraph: Node) -> tuple[re.Match, list[Node]] | None:
    """Match ``[!type] title`` on the first line of a paragraph.

    Returns the marker match and the paragraph children left after the
    first line, or ``None`` when the paragraph is not a callout heading.
    """
    children = list(paragraph.children)
    if not children or children[0].type != NodeType.TEXT:
        return None

    first_line: list[Node] = []
    rest: list[Node] = []
    for i, child in enumerate(children):
        if child.type == NodeType.TEXT and "\n" in (child.value or ""):
            head, tail = (child.value or "").split("\n", 1)
            first_line.append(text(head))
            tail = tail.lstrip()
            rest = ([text(tail)] if tail else []) + children[i + 1 :]
            break
        if child.type == NodeType.BREAK:
            rest = children[i + 1 :]
            if rest and rest[0].type == NodeType.TEXT:
                rest[0] = text((rest[0].value or "").lstrip())
            break
        first_line.append(child)

    marker = re.match(r"^\s*\[!\w+\][+-]?", first_line[0].value or "")
    if marker is None:
        return None
    line = "".join(text_content(node) for node in first_line)
    m = CALLOUT_PATTERN.match(line)
    if m is None:
        return None
    return m, rest


def callout_stage(tree: Node, ctx: TransformContext) -> Node:
    """Turn ``> [!type] title`` blockquotes into callout blocks."""

    def visit(node: Node) -> Node | list[Node] | None:
        if node.type in OPAQUE_TYPES:
            return node
        if node.type != NodeType.BLOCKQUOTE or not node.children:
            return None
        first = node.children[0]
        if first.type != NodeType.PARAGRAPH:
            return None
        split = _split_callout_heading(first)
        if split is None:
            return None

        m, rest = split
        callout_type = m.group(1).lower()
        style = callout_style(callout_type)
        body = list(node.children[1:])
        if rest:
            body.insert(0, first.evolve(children=rest))
        callout = element(
            NodeType.CALLOUT,
            *body,
            callout_type=callout_type,
            title=m.group(3) or None,
            fold=m.group(2),
            icon=style.icon,
            style_class=style.style_class,
            note_type=style.note_type,
        )
        # Callouts may nest
        return rewrite(callout, visit)

    return rewrite(tree, visit)


# ========== Footnotes ==========


def footnote_stage(tree: Node, ctx: TransformContext) -> Node:
    """Bind ``[^id]`` references to ``[^id]: text`` definitions.

    Definitions are removed from the flow and gathered, numbered by first
    reference, into a ``footnotes`` node at the end of the document.
    References without a definition stay literal text.
    """
    definitions: dict[str, Node] = {}
    labels: dict[str, str] = {}

    def collect(node: Node) -> Node | list[Node] | None:
        if node.type in OPAQUE_TYPES:
            return node
        if node.type != NodeType.PARAGRAPH or not node.children:
            return None
        first = node.children[0]
        if first.type != NodeType.TEXT:
            return None
        m = FOOTNOTE_DEF_PATTERN.match(first.value or "")
        if m is None:
            return None
        key = m.group(1).lower()
        remainder = (first.value or "")[m.end() :]
        children = ([text(remainder)] if remainder else []) + list(node.children[1:])
        if key not in definitions:
            definitions[key] = element(NodeType.PARAGRAPH, *children)
            labels[key] = m.group(1)
        return []

    tree = rewrite(tree, collect)

    numbers: dict[str, int] = {}
    ref_counts: dict[str, int] = {}

    def reference(m: re.Match) -> Node | None:
        key = m.group(1).lower()
        if key not in definitions:
            ctx.unresolved_footnotes.append(m.group(1))
            logger.warning("Unresolved footnote reference [^%s] in %s", m.group(1), ctx.doc_id)
            return None
        if key not in numbers:
            numbers[key] = len(numbers) + 1
        ref_counts[key] = ref_counts.get(key, 0) + 1
        number = numbers[key]
        count = ref_counts[key]
        ref_id = f"fnref-{ctx.doc_id}-{number}" + (f"-{count}" if count > 1 else "")
        return Node(
            type=NodeType.FOOTNOTE_REFERENCE,
            props={
                "identifier": labels[key],
                "number": number,
                "ref_id": ref_id,
                "target_id": f"fn-{ctx.doc_id}-{number}",
            },
        )

    def visit(node: Node) -> Node | list[Node] | None:
        if node.type in OPAQUE_TYPES:
            return node
        if node.type == NodeType.TEXT and node.value:
            return _split_text(node.value, FOOTNOTE_REF_PATTERN, reference)
        return None

    tree = rewrite(tree, visit)

    # Definitions may reference further footnotes, which extends the numbering
    bodies: dict[str, Node] = {}
    done = 0
    while done < len(numbers):
        key = next(k for k, n in numbers.items() if n == done + 1)
        bodies[key] = rewrite(definitions[key], visit)
        done += 1

    if not numbers:
        return tree

    items = []
    for key, number in sorted(numbers.items(), key=lambda item: item[1]):
        body = bodies[key]
        ctx.footnotes.append(
            Footnote(identifier=labels[key], number=number, content=text_content(body).strip())
        )
        items.append(
            element(
                NodeType.FOOTNOTE_DEFINITION,
                body,
                identifier=labels[key],
                number=number,
                anchor_id=f"fn-{ctx.doc_id}-{number}",
                ref_id=f"fnref-{ctx.doc_id}-{number}",
            )
        )
    return tree.evolve(children=[*tree.children, element(NodeType.FOOTNOTES, *items)])


# ========== Math ==========


def _math_node(m: re.Match) -> Node:
    display = m.group("display") or m.group("display_bracket")
    if display is not None:
        return Node(type=NodeType.MATH, props={"tex": display.strip(), "display": True})
    inline = m.group("inline_bracket") or m.group("inline") or ""
    return Node(type=NodeType.MATH, props={"tex": inline.strip(), "display": False})


def math_stage(tree: Node, ctx: TransformContext) -> Node:
    """Tag ``$..$``, ``$$..$$``, ``\\(..\\)`` and ``\\[..\\]`` runs as math."""

    def visit(node: Node) -> Node | list[Node] | None:
        if node.type in OPAQUE_TYPES:
            return node
        if node.type == NodeType.TEXT and node.value:
            return _split_text(node.value, MATH_PATTERN, _math_node)
        return None

    return rewrite(tree, visit)


STAGES: tuple[Callable[[Node, TransformContext], Node], ...] = (
    wikilink_stage,
    embed_stage,
    callout_stage,
    footnote_stage,
    math_stage,
)


# ========== Headings ==========


def assign_heading_ids(tree: Node) -> Node:
    """Give every heading a unique slug id."""
    used: set[str] = set()

    def visit(node: Node) -> Node | None:
        if node.type in OPAQUE_TYPES:
            return node
        if node.type != NodeType.HEADING:
            return None
        wanted = node.get("id") or slugify(text_content(node), "-") or "section"
        return node.evolve(id=unique(wanted, used))

    return rewrite(tree, visit)


def build_toc(tree: Node) -> list[TocEntry]:
    """Collect TOC entries from headings in document order."""
    return [
        TocEntry(id=node.get("id", ""), text=text_content(node).strip(), level=node.get("level", 1))
        for node in walk(tree)
        if node.type == NodeType.HEADING
    ]


def transform(tree: Node, ctx: TransformContext | None = None) -> Node:
    """Run every stage in order, then assign heading ids."""
    ctx = ctx or TransformContext()
    for stage in STAGES:
        tree = stage(tree, ctx)
    return assign_heading_ids(tree)
