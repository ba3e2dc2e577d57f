"""Locate content sources for logical references (slugs)."""

import logging
from pathlib import Path
from urllib.parse import unquote

logger = logging.getLogger(__name__)

# Probe order matters: the first existing file wins.
CATEGORY_DIRS = ("topics", "maps", "articles", "docs")
EXTENSIONS = (".ditamap", ".mdita", ".md", ".dita", ".xml")

# Prefixes that writers use to point into a category from another document.
_STRIPPED_PREFIXES = ("./", "../topics/", "topics/")


def _normalize_once(slug: str) -> str:
    if "%" in slug:
        slug = unquote(slug)
    slug = slug.replace("\\", "/").strip()
    slug = slug.split("|", 1)[0]
    slug = slug.split("#", 1)[0]
    slug = slug.strip().strip("/")
    for prefix in _STRIPPED_PREFIXES:
        if slug.startswith(prefix):
            slug = slug[len(prefix) :]
    for ext in EXTENSIONS:
        if slug.lower().endswith(ext):
            slug = slug[: -len(ext)]
            break
    return slug


def normalize_slug(slug: str) -> str:
    """Normalize a logical reference.

    Decodes URL escapes, drops alias (``|...``) and fragment (``#...``)
    suffixes, leading/trailing separators, category prefixes such as
    ``topics/`` and a trailing content extension. Steps are repeated until
    nothing changes, so ``normalize_slug`` is idempotent.
    """
    current = slug
    while True:
        normalized = _normalize_once(current)
        if normalized == current:
            return normalized
        current = normalized


class Locator:
    """Find the physical source file of a logical reference.

    Probes, in order: the reference under the base directory, every
    category directory with every extension, the bare file name when the
    reference is nested, and finally an index of file names under the content
    root. Hits, misses and the index are cached until ``clear()``. Missing
    references yield ``None``, never an exception.
    """

    def __init__(self, content_dir: Path):
        self.content_dir = Path(content_dir)
        self._path_cache: dict[tuple[str, Path], Path] = {}
        self._misses: set[tuple[str, Path]] = set()
        self._file_index: dict[str, list[Path]] | None = None

    def _is_inside(self, path: Path) -> bool:
        try:
            return path.resolve().is_relative_to(self.content_dir.resolve())
        except OSError:
            return False

    def _probe(self, path: Path) -> Path | None:
        if path.is_file() and self._is_inside(path):
            return path
        return None

    def _candidates(self, name: str, base_dir: Path) -> list[Path]:
        candidates = [base_dir / name]
        candidates.extend(base_dir / f"{name}{ext}" for ext in EXTENSIONS)
        for category in CATEGORY_DIRS:
            candidates.extend(self.content_dir / category / f"{name}{ext}" for ext in EXTENSIONS)
        return candidates

    def _index(self) -> dict[str, list[Path]]:
        """File name to paths anywhere under the content root, built on first use."""
        if self._file_index is None:
            index: dict[str, list[Path]] = {}
            if self.content_dir.is_dir():
                for path in sorted(self.content_dir.rglob("*")):
                    if path.suffix in EXTENSIONS and path.is_file():
                        index.setdefault(path.name, []).append(path)
            self._file_index = index
        return self._file_index

    def _search(self, name: str) -> Path | None:
        index = self._index()
        for ext in EXTENSIONS:
            for match in index.get(f"{name}{ext}", ()):
                if self._probe(match):
                    return match
        return None

    def find(self, slug: str, base_dir: Path | None = None) -> Path | None:
        """Return the source path for ``slug`` or ``None`` when it does not exist."""
        name = normalize_slug(slug)
        if not name:
            return None
        base = Path(base_dir) if base_dir is not None else self.content_dir

        cache_key = (name, base)
        cached = self._path_cache.get(cache_key)
        if cached is not None and cached.is_file():
            return cached
        if cache_key in self._misses:
            return None

        found = self._locate(name, base)
        if found is None:
            logger.debug("No file found for slug %r", slug)
            self._misses.add(cache_key)
            return None

        logger.debug("Found %r at %s", slug, found)
        self._path_cache[cache_key] = found
        return found

    def _locate(self, name: str, base: Path) -> Path | None:
        for candidate in self._candidates(name, base):
            if self._probe(candidate):
                return candidate

        basename = name.rsplit("/", 1)[-1]
        if basename != name:
            for candidate in self._candidates(basename, base):
                if self._probe(candidate):
                    return candidate

        return self._search(basename)

    def exists(self, slug: str) -> bool:
        """Check if a reference resolves to a file."""
        return self.find(slug) is not None

    def slug_for(self, path: Path) -> str:
        """Return the logical reference of a file inside the content root."""
        relative = Path(path).relative_to(self.content_dir)
        return normalize_slug(relative.with_suffix("").as_posix())

    def clear(self) -> None:
        """Forget cached lookups, misses and the file name index."""
        self._path_cache.clear()
        self._misses.clear()
        self._file_index = None
