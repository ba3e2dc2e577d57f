"""Content loader: locate, parse, transform and serialize content items.

The loader owns the result cache and the table of in-flight resolutions.
Concurrent requests for the same reference share one resolution, and at
most ``max_concurrent`` resolutions do file work at any moment.
"""

import asyncio
import logging
import re
from pathlib import Path

from markdown.extensions.toc import slugify

from ditawiki.core.errors import CircularEmbedError, ContentIOError, ContentNotFoundError
from ditawiki.core.locator import CATEGORY_DIRS, EXTENSIONS, Locator, normalize_slug
from ditawiki.core.metadata import is_topic_compatible_with_map
from ditawiki.core.models import Article, MapMetadata, ResolvedDocument
from ditawiki.core.nodes import Node, NodeType, element, rewrite, text, text_content, walk
from ditawiki.core.parser import parse
from ditawiki.core.pipeline import TransformContext, assign_heading_ids, build_toc, transform
from ditawiki.core.serializer import OutputFormat, serialize_map, to_dita_topic, to_html, topic_id

logger = logging.getLogger(__name__)


def _is_anchor(node: Node, name: str) -> bool:
    if node.type != NodeType.HTML:
        return False
    pattern = rf"<a\b[^>]*\b(?:name|id)=[\"']{re.escape(name)}[\"']"
    return re.search(pattern, node.value or "", re.IGNORECASE) is not None


def _is_any_anchor(node: Node) -> bool:
    return node.type == NodeType.HTML and re.search(r"<a\b[^>]*\bname=", node.value or "", re.IGNORECASE) is not None


def extract_section(tree: Node, section: str | None) -> tuple[Node, ...] | None:
    """Return the top-level nodes under a heading or anchor named ``section``.

    The named heading itself is excluded; the section ends at the next
    heading of equal or higher level (or the next anchor). Returns ``None``
    when no such heading or anchor exists.
    """
    children = tree.children
    if not section:
        return children
    wanted = section.strip()
    wanted_id = slugify(wanted, "-")

    for i, node in enumerate(children):
        if node.type == NodeType.HEADING:
            title = text_content(node).strip()
            if title.lower() != wanted.lower() and node.get("id") not in (wanted, wanted_id):
                continue
            level = node.get("level", 1)
            end = len(children)
            for j in range(i + 1, len(children)):
                other = children[j]
                if (other.type == NodeType.HEADING and other.get("level", 1) <= level) or _is_any_anchor(other):
                    end = j
                    break
            return tuple(c for c in children[i + 1 : end] if c.type != NodeType.FOOTNOTES)

        if _is_anchor(node, wanted):
            end = len(children)
            for j in range(i + 1, len(children)):
                if children[j].type == NodeType.HEADING or _is_any_anchor(children[j]):
                    end = j
                    break
            return tuple(c for c in children[i + 1 : end] if c.type != NodeType.FOOTNOTES)
    return None


def renumber_footnotes(tree: Node, offset: int) -> Node:
    """Shift footnote numbers by ``offset``."""
    if not offset:
        return tree

    def visit(node: Node) -> Node | None:
        if node.type == NodeType.FOOTNOTE_REFERENCE:
            return node.evolve(number=node.get("number", 0) + offset)
        if node.type == NodeType.FOOTNOTE_DEFINITION:
            return rewrite(node.evolve(number=node.get("number", 0) + offset), visit)
        return None

    return rewrite(tree, visit)


class ContentLoader:
    """Resolve logical references into ``ResolvedDocument`` objects.

    Each instance has its own cache; use ``clear()`` to drop it.
    """

    def __init__(
        self,
        content_dir: Path,
        max_concurrent: int = 5,
        asset_url_prefix: str = "/content/assets",
        link_base_path: str = "",
        locator: Locator | None = None,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.content_dir = Path(content_dir)
        self.locator = locator or Locator(self.content_dir)
        self.max_concurrent = max_concurrent
        self.asset_url_prefix = asset_url_prefix
        self.link_base_path = link_base_path
        self._slots = asyncio.Semaphore(max_concurrent)
        self._cache: dict[str, ResolvedDocument] = {}
        self._in_flight: dict[str, asyncio.Task] = {}
        # slug -> slugs its resolution is currently waiting for
        self._waiting_on: dict[str, set[str]] = {}

    # ========== Resolution ==========

    async def load(self, slug: str, visited: tuple[str, ...] = ()) -> ResolvedDocument:
        """Resolve a reference, using the cache and in-flight resolutions.

        Args:
            slug: Logical reference.
            visited: References already on the embed chain, outermost first.

        Raises:
            ContentNotFoundError: The reference does not resolve to a file.
            CircularEmbedError: The reference is already on the chain.
            ContentIOError: The file exists but could not be read.
        """
        key = normalize_slug(slug)
        if not key:
            raise ValueError(f"Empty content reference: {slug!r}")
        chain = tuple(normalize_slug(v) for v in visited)
        if key in chain:
            raise CircularEmbedError(key, chain)

        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s", key)
            return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.create_task(self._resolve(key, chain))
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            requester = chain[-1] if chain else None
            if requester is not None and self._waits_for(key, requester):
                # Attaching would make two resolutions wait on each other
                raise CircularEmbedError(key, chain)
            logger.debug("Attaching to in-flight resolution of %s", key)
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    def _waits_for(self, start: str, target: str) -> bool:
        """Check whether ``start`` transitively waits for ``target``."""
        seen: set[str] = set()
        stack = [start]
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._waiting_on.get(current, ()))
        return False

    async def _read(self, path: Path) -> bytes:
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise ContentNotFoundError(str(path)) from e
        except OSError as e:
            raise ContentIOError(str(path), e) from e

    async def _resolve(self, key: str, chain: tuple[str, ...]) -> ResolvedDocument:
        async with self._slots:
            path = await asyncio.to_thread(self.locator.find, key)
            if path is None:
                raise ContentNotFoundError(key)
            raw = await self._read(path)
            relative = path.relative_to(self.content_dir).as_posix()
            metadata, tree = parse(raw, relative)
            ctx = TransformContext(
                page_exists=self.locator.exists,
                asset_url_prefix=self.asset_url_prefix,
                link_base_path=self.link_base_path,
                doc_id=topic_id(key),
            )
            # Wikilink existence checks hit the file system
            tree = await asyncio.to_thread(transform, tree, ctx)

        # The slot is released before waiting on embeds, which take slots of their own
        tree, problems, has_cycle = await self._resolve_embeds(key, tree, (*chain, key))
        if ctx.embeds:
            # Spliced content brings its own heading ids
            tree = assign_heading_ids(tree)
        problems = [*(f"Unresolved footnote: {ref}" for ref in ctx.unresolved_footnotes), *problems]

        document = ResolvedDocument(
            slug=key,
            path=relative,
            metadata=metadata,
            tree=tree,
            html=to_html(tree),
            toc=build_toc(tree),
            embeds=ctx.embeds,
            wikilinks=ctx.wikilinks,
            footnotes=ctx.footnotes,
            problems=problems,
            has_cycle=has_cycle,
        )
        # A result that met a cycle depends on the chain it was resolved under
        if not has_cycle:
            self._cache[key] = document
        logger.info("Loaded %s from %s (%d embeds)", key, relative, len(ctx.embeds))
        return document

    async def _resolve_embeds(
        self, key: str, tree: Node, chain: tuple[str, ...]
    ) -> tuple[Node, list[str], bool]:
        """Resolve content embeds concurrently and splice them in document order."""
        embeds = [
            node for node in walk(tree)
            if node.type == NodeType.EMBED and node.get("kind") == "content"
        ]
        if not embeds:
            return tree, [], False

        self._waiting_on[key] = {normalize_slug(node.get("source", "")) for node in embeds}
        try:
            results = await asyncio.gather(*(self._resolve_embed(node, chain) for node in embeds))
        finally:
            self._waiting_on.pop(key, None)

        replacements = {node.get("index"): replacement for node, (replacement, _, _) in zip(embeds, results)}
        problems = [problem for _, problem, _ in results if problem]
        has_cycle = any(cycle for _, _, cycle in results)

        def visit(node: Node) -> Node | None:
            if node.type == NodeType.EMBED and node.get("index") in replacements:
                return replacements[node.get("index")]
            return None

        return rewrite(tree, visit), problems, has_cycle

    async def _resolve_embed(self, node: Node, chain: tuple[str, ...]) -> tuple[Node, str | None, bool]:
        source = node.get("source", "")
        parent = chain[-1]
        try:
            document = await self.load(source, chain)
        except ContentNotFoundError as e:
            logger.warning("Embed %r in %s not found", source, parent)
            return node.evolve(error=f"Embedded content not found: {source}"), e.message, False
        except CircularEmbedError as e:
            logger.warning("Circular embed %r in %s: %s", source, parent, e.path)
            return node.evolve(error=f"Circular embed: {e.path}", cycle=e.path), e.message, True

        section = node.get("section")
        body = extract_section(document.tree, section)
        if body is None:
            logger.warning("Section %r not found in %s, embedding full content", section, document.slug)
            body = document.tree.children
        return (
            node.evolve(children=body, resolved=True, title=document.title),
            None,
            document.has_cycle,
        )

    # ========== Output ==========

    async def render(self, slug: str, output_format: OutputFormat | str = OutputFormat.HTML) -> str:
        """Return a reference serialized as HTML or as DITA XML."""
        output_format = OutputFormat(output_format)
        document = await self.load(slug)
        if output_format == OutputFormat.HTML:
            return document.html
        if isinstance(document.metadata, MapMetadata):
            return serialize_map(document.metadata, map_id=document.slug)
        return to_dita_topic(document.tree, document.metadata, document.slug)

    async def _load_topic(self, ref: str) -> ResolvedDocument | str:
        try:
            return await self.load(ref)
        except (ContentNotFoundError, CircularEmbedError) as e:
            return e.message

    async def load_article(self, slug: str) -> Article:
        """Load a map with its published, compatible topics in map order."""
        document = await self.load(slug)
        metadata = document.metadata
        if not isinstance(metadata, MapMetadata):
            return Article(
                slug=document.slug,
                metadata=metadata,
                topics=[document],
                toc=document.toc,
                html=document.html,
            )

        results = await asyncio.gather(*(self._load_topic(ref) for ref in metadata.topics))

        topics: list[ResolvedDocument] = []
        skipped: dict[str, str] = {}
        for ref, result in zip(metadata.topics, results):
            if isinstance(result, str):
                skipped[ref] = result
                continue
            if not result.metadata.publish:
                skipped[ref] = "Topic is not published"
                continue
            compatible, reason = is_topic_compatible_with_map(result.metadata, metadata)
            if not compatible:
                skipped[ref] = reason or "Topic is not compatible with map"
                continue
            topics.append(result)
        for ref, reason in skipped.items():
            logger.warning("Skipping topic %r in %s: %s", ref, document.slug, reason)

        children: list[Node] = []
        offset = 0
        for topic in topics:
            tree = renumber_footnotes(topic.tree, offset)
            offset += len(topic.footnotes)
            first = tree.children[0] if tree.children else None
            if not (first is not None and first.type == NodeType.HEADING):
                children.append(element(NodeType.HEADING, text(topic.title), level=2))
            children.extend(tree.children)
        combined = assign_heading_ids(element(NodeType.ROOT, *children))

        return Article(
            slug=document.slug,
            metadata=metadata,
            topics=topics,
            skipped=skipped,
            toc=build_toc(combined),
            html=to_html(combined),
        )

    # ========== Listings ==========

    def list_slugs(self) -> list[str]:
        """List references of every content file, in sorted path order."""
        slugs: list[str] = []
        seen: set[str] = set()
        roots = [self.content_dir / category for category in CATEGORY_DIRS]
        for root in roots:
            if not root.is_dir():
                continue
            for path in sorted(root.rglob("*")):
                if path.suffix.lower() not in EXTENSIONS or not path.is_file():
                    continue
                slug = self.locator.slug_for(path)
                if slug and slug not in seen:
                    seen.add(slug)
                    slugs.append(slug)
        return slugs

    async def load_all(self) -> list[ResolvedDocument]:
        """Load every listed content item; missing or cyclic items are skipped."""
        slugs = self.list_slugs()
        results = await asyncio.gather(*(self._load_topic(slug) for slug in slugs))
        documents = []
        for slug, result in zip(slugs, results):
            if isinstance(result, str):
                logger.warning("Skipping %s: %s", slug, result)
                continue
            documents.append(result)
        return documents

    async def published_slugs(self) -> list[str]:
        """References of content whose ``publish`` flag is set."""
        return [doc.slug for doc in await self.load_all() if doc.metadata.publish]

    async def by_tag(self, tag: str) -> list[ResolvedDocument]:
        """Published content carrying ``tag`` (case-insensitive)."""
        wanted = tag.strip().lower()
        return [
            doc for doc in await self.load_all()
            if doc.metadata.publish and wanted in (t.lower() for t in doc.metadata.tags)
        ]

    async def by_audience(self, audience: str) -> list[ResolvedDocument]:
        """Published content written for ``audience`` (case-insensitive)."""
        wanted = audience.strip().lower()
        return [
            doc for doc in await self.load_all()
            if doc.metadata.publish and (doc.metadata.audience or "").lower() == wanted
        ]

    def clear(self) -> None:
        """Drop cached results and cached path lookups.

        In-flight resolutions keep running for their current waiters.
        """
        self._cache.clear()
        self.locator.clear()
