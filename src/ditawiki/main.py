"""DitaWiki FastAPI application.

A thin JSON/XML API over the content loader; page rendering and styling
live in a separate front end.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response

from ditawiki.config import settings
from ditawiki.core.errors import CircularEmbedError, ContentNotFoundError
from ditawiki.core.loader import ContentLoader
from ditawiki.core.models import ResolvedDocument
from ditawiki.core.serializer import OutputFormat

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: configure logging, drop caches on shutdown."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Serving content from %s", settings.content_dir)
    yield
    loader.clear()


# Initialize app
app = FastAPI(
    title=settings.app_title,
    debug=settings.debug,
    lifespan=lifespan,
)

# Initialize loader
loader = ContentLoader(
    settings.content_dir,
    max_concurrent=settings.max_concurrent,
    asset_url_prefix=settings.asset_url_prefix,
    link_base_path=settings.link_base_path,
)


def document_summary(document: ResolvedDocument) -> dict:
    """JSON view of a resolved document without its tree."""
    data = document.model_dump(mode="json", exclude={"tree"})
    data["title"] = document.title
    return data


async def load_or_404(slug: str) -> ResolvedDocument:
    """Load a reference, mapping NotFound to 404 and a cycle to 409."""
    try:
        return await loader.load(slug)
    except ContentNotFoundError:
        raise HTTPException(status_code=404, detail="Content not found")
    except CircularEmbedError as e:
        raise HTTPException(status_code=409, detail=e.message)


# ========== Content ==========


@app.get("/api/content")
async def list_content():
    """List references of published content."""
    return {"slugs": await loader.published_slugs()}


@app.get("/api/content/{slug:path}/dita")
async def content_dita(slug: str):
    """Content as a DITA topic or map."""
    await load_or_404(slug)
    xml = await loader.render(slug, OutputFormat.DITA)
    return Response(content=xml, media_type="application/xml")


@app.get("/api/content/{slug:path}")
async def get_content(slug: str):
    """Resolved content as JSON."""
    return document_summary(await load_or_404(slug))


@app.get("/api/articles/{slug:path}")
async def get_article(slug: str):
    """A map together with its topics."""
    try:
        article = await loader.load_article(slug)
    except ContentNotFoundError:
        raise HTTPException(status_code=404, detail="Article not found")
    return {
        "slug": article.slug,
        "title": article.metadata.title,
        "metadata": article.metadata.model_dump(mode="json"),
        "topics": [topic.slug for topic in article.topics],
        "skipped": article.skipped,
        "toc": [entry.model_dump() for entry in article.toc],
        "html": article.html,
    }


# ========== Tags ==========


@app.get("/api/tags/{tag}")
async def content_by_tag(tag: str):
    """Published content carrying a tag."""
    documents = await loader.by_tag(tag)
    return {
        "tag": tag,
        "content": [{"slug": doc.slug, "title": doc.title} for doc in documents],
    }
