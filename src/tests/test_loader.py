"""Tests for the ContentLoader: caching, coalescing, embeds, cycles and articles."""

import asyncio
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from ditawiki.core.errors import ContentIOError, ContentNotFoundError
from ditawiki.core.loader import ContentLoader, extract_section
from ditawiki.core.nodes import Node, NodeType, element, text, text_content, walk
from ditawiki.core.parser import parse_markdown
from ditawiki.core.pipeline import transform

TOPICS = {
    "intro": "---\ntitle: Intro\ntags: [guide, Start]\naudience: beginner\n---\n# Intro\n\nWelcome text.",
    "details": (
        "# Details\n\nTop text.\n\n## Setup\n\nSetup text.\n\n### Sub\n\nSub text.\n\n"
        "## Other\n\nOther text."
    ),
    "host": "Before\n\n![[details#Setup]]\n\n![[intro]]\n\nAfter",
    "broken": "Text\n\n![[nowhere]]",
    "a": "A text\n\n![[b]]",
    "b": "B text\n\n![[a]]",
    "self": "Me\n\n![[self]]",
    "advanced": "---\ntitle: Advanced\naudience: expert\n---\nDeep stuff.",
    "draft": "---\ntitle: Draft\npublish: false\n---\nWork in progress.",
    "notes1": "---\ntitle: First\n---\nOne[^a].\n\n[^a]: Note one.",
    "notes2": "---\ntitle: Second\n---\n# Second\n\nTwo[^b].\n\n[^b]: Note two.",
    "links": "[[intro]] and [[ghost]]",
}

GUIDE = (
    "---\ntitle: Guide\naudience: beginner\n"
    "topics: [intro, advanced, draft, missing, notes1, notes2]\n---\n"
)


@pytest.fixture
def content_dir(tmp_path):
    topics = tmp_path / "topics"
    topics.mkdir()
    for name, source in TOPICS.items():
        (topics / f"{name}.md").write_text(source)
    (tmp_path / "maps").mkdir()
    (tmp_path / "maps" / "guide.md").write_text(GUIDE)
    return tmp_path


@pytest.fixture
def loader(content_dir):
    return ContentLoader(content_dir)


def embeds_of(tree):
    return [node for node in walk(tree) if node.type == NodeType.EMBED]


# ============================================================
# Loading and caching
# ============================================================


class TestLoad:
    @pytest.mark.asyncio
    async def test_load_topic(self, loader):
        doc = await loader.load("intro")
        assert doc.slug == "intro"
        assert doc.path == "topics/intro.md"
        assert doc.title == "Intro"
        assert '<h1 id="intro">Intro</h1>' in doc.html
        assert [entry.text for entry in doc.toc] == ["Intro"]
        assert doc.problems == []

    @pytest.mark.asyncio
    async def test_missing_reference_raises(self, loader):
        with pytest.raises(ContentNotFoundError):
            await loader.load("nowhere")

    @pytest.mark.asyncio
    async def test_empty_reference_raises(self, loader):
        with pytest.raises(ValueError):
            await loader.load("  ")

    def test_max_concurrent_must_be_positive(self, content_dir):
        with pytest.raises(ValueError):
            ContentLoader(content_dir, max_concurrent=0)

    @pytest.mark.asyncio
    async def test_cached_result_is_shared(self, loader):
        first = await loader.load("intro")
        assert await loader.load("topics/intro.md") is first

    @pytest.mark.asyncio
    async def test_clear_reloads_identically(self, loader):
        first = await loader.load("host")
        loader.clear()
        second = await loader.load("host")
        assert second is not first
        assert second.html == first.html

    @pytest.mark.asyncio
    async def test_read_failure_is_io_error(self, loader):
        with patch.object(Path, "read_bytes", side_effect=PermissionError("denied")):
            with pytest.raises(ContentIOError):
                await loader.load("intro")

    @pytest.mark.asyncio
    async def test_wikilink_existence(self, loader):
        doc = await loader.load("links")
        assert [(link.target, link.exists) for link in doc.wikilinks] == [
            ("intro", True),
            ("ghost", False),
        ]


# ============================================================
# Concurrency
# ============================================================


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_resolution(self, loader):
        with patch.object(loader.locator, "find", wraps=loader.locator.find) as find:
            first, second = await asyncio.gather(loader.load("intro"), loader.load("topics/intro.md"))
        assert first is second
        assert find.call_count == 1

    @pytest.mark.asyncio
    async def test_file_work_is_bounded(self, content_dir):
        loader = ContentLoader(content_dir, max_concurrent=2)
        active = 0
        peak = 0

        async def tracked_read(path):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return path.read_bytes()

        with patch.object(loader, "_read", new=tracked_read):
            names = ["intro", "details", "advanced", "draft", "notes1", "notes2"]
            docs = await asyncio.gather(*(loader.load(name) for name in names))
        assert [doc.slug for doc in docs] == names
        assert peak == 2

    @pytest.mark.asyncio
    async def test_lookups_run_off_the_event_loop(self, loader):
        loop_thread = threading.get_ident()
        threads = set()
        original = loader.locator.find

        def tracked_find(slug, base_dir=None):
            threads.add(threading.get_ident())
            return original(slug, base_dir)

        with patch.object(loader.locator, "find", side_effect=tracked_find):
            doc = await loader.load("links")
        assert [link.exists for link in doc.wikilinks] == [True, False]
        assert threads
        assert loop_thread not in threads

    @pytest.mark.asyncio
    async def test_slot_is_released_while_waiting_on_embeds(self, content_dir):
        loader = ContentLoader(content_dir, max_concurrent=1)
        doc = await asyncio.wait_for(loader.load("host"), timeout=5)
        assert all(node.get("resolved") for node in embeds_of(doc.tree))


# ============================================================
# Embeds
# ============================================================


class TestEmbeds:
    @pytest.mark.asyncio
    async def test_embeds_are_spliced_in_document_order(self, loader):
        original = loader._read

        async def slow_read(path):
            # The first embed finishes last
            if path.stem == "details":
                await asyncio.sleep(0.05)
            return await original(path)

        with patch.object(loader, "_read", new=slow_read):
            doc = await loader.load("host")
        embeds = embeds_of(doc.tree)
        assert [node.get("source") for node in embeds] == ["details", "intro"]
        assert all(node.get("resolved") for node in embeds)
        assert doc.html.index("Setup text.") < doc.html.index("Welcome text.")

    @pytest.mark.asyncio
    async def test_section_embed(self, loader):
        doc = await loader.load("host")
        section = embeds_of(doc.tree)[0]
        content = text_content(section)
        assert "Setup text." in content
        assert "Sub text." in content
        assert "Other text." not in content
        assert "Top text." not in content
        assert section.get("title") == "Details"

    @pytest.mark.asyncio
    async def test_missing_section_embeds_everything(self, loader, content_dir):
        (content_dir / "topics" / "wrong.md").write_text("![[details#Nope]]")
        doc = await loader.load("wrong")
        content = text_content(embeds_of(doc.tree)[0])
        assert "Top text." in content
        assert "Other text." in content

    @pytest.mark.asyncio
    async def test_embedded_headings_get_unique_ids(self, loader, content_dir):
        (content_dir / "topics" / "twice.md").write_text("# Intro\n\nOwn text.\n\n![[intro]]")
        doc = await loader.load("twice")
        assert [entry.id for entry in doc.toc] == ["intro", "intro_1"]
        assert doc.html.count('id="intro"') == 1
        assert 'id="intro_1"' in doc.html

    @pytest.mark.asyncio
    async def test_missing_embed_is_reported(self, loader):
        doc = await loader.load("broken")
        embed = embeds_of(doc.tree)[0]
        assert embed.get("error") == "Embedded content not found: nowhere"
        assert doc.problems == ["Content not found: nowhere"]
        assert "embed-error" in doc.html
        assert doc.has_cycle is False

    @pytest.mark.asyncio
    async def test_mutual_embeds_are_cut(self, loader):
        doc = await loader.load("a")
        errors = [node.get("error") for node in embeds_of(doc.tree) if node.get("error")]
        assert errors == ["Circular embed: a -> b -> a"]
        assert doc.has_cycle is True
        assert "B text" in text_content(doc.tree)

    @pytest.mark.asyncio
    async def test_cyclic_results_are_not_cached(self, loader):
        first = await loader.load("a")
        assert await loader.load("a") is not first

    @pytest.mark.asyncio
    async def test_self_embed(self, loader):
        doc = await loader.load("self")
        embed = embeds_of(doc.tree)[0]
        assert embed.get("error") == "Circular embed: self -> self"
        assert doc.has_cycle is True

    @pytest.mark.asyncio
    async def test_concurrent_loads_of_a_cycle_finish(self, loader):
        a, b = await asyncio.wait_for(
            asyncio.gather(loader.load("a"), loader.load("b")), timeout=5
        )
        assert a.has_cycle and b.has_cycle


class TestExtractSection:
    def test_by_heading_id(self):
        tree = transform(parse_markdown("# Top\n\n## Set Up\n\nBody\n\n## Next\n\nMore"))
        nodes = extract_section(tree, "set-up")
        assert [text_content(node) for node in nodes] == ["Body"]

    def test_anchor(self):
        tree = element(
            NodeType.ROOT,
            element(NodeType.PARAGRAPH, text("Intro")),
            Node(type=NodeType.HTML, value='<a name="here"></a>'),
            element(NodeType.PARAGRAPH, text("Anchored")),
            element(NodeType.HEADING, text("Next"), level=2),
            element(NodeType.PARAGRAPH, text("More")),
        )
        nodes = extract_section(tree, "here")
        assert [text_content(node) for node in nodes] == ["Anchored"]

    def test_missing_section(self):
        assert extract_section(parse_markdown("# A\n\ntext"), "B") is None

    def test_no_section_is_everything(self):
        tree = parse_markdown("a\n\nb")
        assert extract_section(tree, None) == tree.children


# ============================================================
# Articles
# ============================================================


class TestArticles:
    @pytest.mark.asyncio
    async def test_topics_in_map_order(self, loader):
        article = await loader.load_article("maps/guide")
        assert article.slug == "maps/guide"
        assert [topic.slug for topic in article.topics] == ["intro", "notes1", "notes2"]

    @pytest.mark.asyncio
    async def test_skipped_topics_have_reasons(self, loader):
        article = await loader.load_article("maps/guide")
        assert set(article.skipped) == {"advanced", "draft", "missing"}
        assert article.skipped["draft"] == "Topic is not published"
        assert "audience" in article.skipped["advanced"]
        assert article.skipped["missing"] == "Content not found: missing"

    @pytest.mark.asyncio
    async def test_headings_and_toc(self, loader):
        article = await loader.load_article("maps/guide")
        assert [entry.text for entry in article.toc] == ["Intro", "First", "Second"]

    @pytest.mark.asyncio
    async def test_footnotes_are_renumbered(self, loader):
        article = await loader.load_article("maps/guide")
        assert ">1</a></sup>" in article.html
        assert ">2</a></sup>" in article.html
        assert "Note one." in article.html
        assert "Note two." in article.html

    @pytest.mark.asyncio
    async def test_plain_topic_is_a_single_topic_article(self, loader):
        article = await loader.load_article("intro")
        assert [topic.slug for topic in article.topics] == ["intro"]
        assert article.skipped == {}


# ============================================================
# Listings and rendering
# ============================================================


class TestListings:
    def test_list_slugs(self, loader):
        slugs = loader.list_slugs()
        assert "intro" in slugs
        assert "maps/guide" in slugs
        assert len(slugs) == len(set(slugs)) == len(TOPICS) + 1

    @pytest.mark.asyncio
    async def test_published_slugs(self, loader):
        slugs = await loader.published_slugs()
        assert "intro" in slugs
        assert "draft" not in slugs

    @pytest.mark.asyncio
    async def test_by_tag_is_case_insensitive(self, loader):
        assert [doc.slug for doc in await loader.by_tag("start")] == ["intro"]

    @pytest.mark.asyncio
    async def test_by_audience(self, loader):
        assert [doc.slug for doc in await loader.by_audience("EXPERT")] == ["advanced"]


class TestRender:
    @pytest.mark.asyncio
    async def test_html(self, loader):
        doc = await loader.load("intro")
        assert await loader.render("intro") == doc.html

    @pytest.mark.asyncio
    async def test_topic_as_dita(self, loader):
        output = await loader.render("intro", "dita")
        assert output.startswith("<?xml")
        assert '<topic id="intro">' in output

    @pytest.mark.asyncio
    async def test_map_as_dita(self, loader):
        output = await loader.render("maps/guide", "dita")
        assert "<map" in output
        assert 'href="intro.dita"' in output
