"""Data models for DitaWiki."""

from datetime import date, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ditawiki.core.nodes import Node


def _as_text(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(_as_text(item)) for item in value if item is not None]
    return value


class BaseMetadata(BaseModel):
    """Fields shared by every content item.

    Missing fields are ``None``/empty and mean "unknown"; consumers must not
    treat them as invalid.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str | None = None
    title: str | None = None
    author: str | None = None
    date: str | None = None
    tags: list[str] = Field(default_factory=list)
    category: str | None = None
    audience: str | None = None
    shortdesc: str | None = Field(default=None, alias="description")
    publish: bool = True
    access_level: str = "public"
    conditional: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _normalize(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("tags") and data.get("keywords"):
            data["tags"] = data["keywords"]
        conditional = data.get("conditional")
        if not data.get("access_level") and isinstance(conditional, dict):
            data["access_level"] = conditional.get("access_level")
        for key in ("access_level", "publish"):
            if data.get(key) is None:
                data.pop(key, None)
        if data.get("conditional") is None:
            data.pop("conditional", None)
        return data

    @field_validator("author", mode="before")
    @classmethod
    def _author_name(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return value.get("name")
        if isinstance(value, list):
            names = [a.get("name", "") if isinstance(a, dict) else str(a) for a in value]
            return ", ".join(n for n in names if n) or None
        return value

    @field_validator("id", "title", "date", "category", "audience", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Any:
        if isinstance(value, list):
            return ", ".join(str(_as_text(v)) for v in value)
        return _as_text(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> Any:
        return _as_list(value)


class TopicMetadata(BaseMetadata):
    """Metadata of an atomic content unit."""

    kind: Literal["topic"] = "topic"


class MapMetadata(BaseMetadata):
    """Metadata of a collection of topics."""

    kind: Literal["map"] = "map"
    topics: list[str] = Field(default_factory=list)
    publish_date: str | None = Field(default=None, alias="publication-date")
    last_edited: str | None = Field(default=None, alias="last-edited")
    editor: str | None = None
    reviewer: str | None = None
    version: str | None = None
    language: str | None = None
    featured: bool = False
    features: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _map_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "lastEdited" in data:
            data.setdefault("last-edited", data.pop("lastEdited"))
        if data.get("featured") is None:
            data.pop("featured", None)
            features = data.get("features")
            if isinstance(features, dict) and "featured" in features:
                data["featured"] = features["featured"]
        if data.get("features") is None:
            data.pop("features", None)
        return data

    @field_validator(
        "publish_date", "last_edited", "editor", "reviewer", "version", "language", mode="before"
    )
    @classmethod
    def _map_text(cls, value: Any) -> Any:
        return _as_text(value)

    @field_validator("topics", mode="before")
    @classmethod
    def _topics(cls, value: Any) -> Any:
        return _as_list(value)


Metadata = Annotated[Union[TopicMetadata, MapMetadata], Field(discriminator="kind")]


class TocEntry(BaseModel):
    """Table of contents entry derived from a heading."""

    model_config = ConfigDict(frozen=True)

    id: str
    text: str
    level: int


class Footnote(BaseModel):
    """A bound footnote definition."""

    identifier: str
    number: int
    content: str


class EmbedRef(BaseModel):
    """A transclusion found in a document."""

    source: str
    section: str | None = None
    alt: str = ""
    size: str = ""
    kind: str = "content"


class WikiLinkRef(BaseModel):
    """A wikilink found in a document."""

    target: str
    alias: str | None = None
    kind: str
    href: str
    exists: bool = True


class ResolvedDocument(BaseModel):
    """A fully resolved content item.

    Instances are owned by the loader cache and treated as read-only.
    """

    slug: str
    path: str
    metadata: Metadata
    tree: Node
    html: str
    toc: list[TocEntry] = Field(default_factory=list)
    embeds: list[EmbedRef] = Field(default_factory=list)
    wikilinks: list[WikiLinkRef] = Field(default_factory=list)
    footnotes: list[Footnote] = Field(default_factory=list)
    problems: list[str] = Field(default_factory=list)
    has_cycle: bool = False

    @property
    def title(self) -> str:
        """Return title from metadata or derive from slug."""
        name = self.slug.rsplit("/", 1)[-1]
        return self.metadata.title or name.replace("-", " ").replace("_", " ")


class Article(BaseModel):
    """A map rendered together with its topics."""

    slug: str
    metadata: Metadata
    topics: list[ResolvedDocument] = Field(default_factory=list)
    skipped: dict[str, str] = Field(default_factory=dict)
    toc: list[TocEntry] = Field(default_factory=list)
    html: str = ""
