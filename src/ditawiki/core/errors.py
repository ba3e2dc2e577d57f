"""Exception hierarchy for content resolution."""


class ContentError(Exception):
    """Base exception for all content engine errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ContentNotFoundError(ContentError):
    """A logical reference could not be located."""

    def __init__(self, slug: str) -> None:
        super().__init__(f"Content not found: {slug}")
        self.slug = slug


class CircularEmbedError(ContentError):
    """A reference was requested while already in its own resolution chain."""

    def __init__(self, slug: str, chain: tuple[str, ...]) -> None:
        self.slug = slug
        self.chain = tuple(chain)
        super().__init__(f"Circular embed detected: {self.path}")

    @property
    def path(self) -> str:
        """Human readable cycle, e.g. ``a -> b -> a``."""
        return " -> ".join((*self.chain, self.slug))


class MalformedPreambleError(ContentError):
    """The structured preamble could not be parsed."""


class UnsupportedNodeError(ContentError):
    """A tree node has no mapping in the target serialization vocabulary."""

    def __init__(self, node_type: str) -> None:
        super().__init__(f"Unsupported node: {node_type}")
        self.node_type = node_type


class ContentIOError(ContentError):
    """Reading a located source failed for a reason other than absence."""

    def __init__(self, path: str, cause: OSError) -> None:
        super().__init__(f"Could not read {path}: {cause}")
        self.path = path
        self.cause = cause
