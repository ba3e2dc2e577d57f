"""CLI for exporting a content tree as DITA topics and maps."""

import argparse
import asyncio
import json
import logging
from pathlib import Path

from ditawiki.config import settings
from ditawiki.core.errors import ContentError
from ditawiki.core.loader import ContentLoader
from ditawiki.core.models import MapMetadata
from ditawiki.core.serializer import serialize_map, to_dita_topic

logger = logging.getLogger(__name__)


async def export(loader: ContentLoader, out_dir: Path) -> dict:
    """Write one ``.dita`` per topic and one ``.ditamap`` per map.

    Files are written flat into ``out_dir`` under their base names, which is
    where map topic references point.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    written: list[str] = []
    failed: dict[str, str] = {}

    for slug in loader.list_slugs():
        try:
            document = await loader.load(slug)
        except ContentError as e:
            logger.error("Could not export %s: %s", slug, e.message)
            failed[slug] = e.message
            continue

        name = document.slug.rsplit("/", 1)[-1]
        if isinstance(document.metadata, MapMetadata):
            target = out_dir / f"{name}.ditamap"
            xml = serialize_map(document.metadata, map_id=document.slug)
        else:
            target = out_dir / f"{name}.dita"
            xml = to_dita_topic(document.tree, document.metadata, document.slug)
        if target.name in written:
            logger.warning("%s overwrites an earlier export with the same name", target.name)
        target.write_text(xml, encoding="utf-8")
        written.append(target.name)
        logger.info("Wrote %s", target)

    return {"written": written, "failed": failed}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Export content as DITA topics and maps"
    )
    parser.add_argument(
        "--content-dir",
        type=Path,
        default=settings.content_dir,
        help="Content root containing topics/, maps/, articles/ and docs/",
    )
    parser.add_argument(
        "--out",
        type=Path,
        default=Path("dita"),
        help="Output directory (default: dita)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log every file written",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    loader = ContentLoader(
        args.content_dir,
        max_concurrent=settings.max_concurrent,
        asset_url_prefix=settings.asset_url_prefix,
        link_base_path=settings.link_base_path,
    )
    result = asyncio.run(export(loader, args.out))
    print(json.dumps(result, ensure_ascii=False, indent=2))
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
