"""Import sources that seed the content store with notes."""

from pathlib import Path
from typing import Optional

from mempack.ingesters.folder_ingester import FolderIngester
from mempack.protocols import Ingester


def get_ingester(source: Path | str, prefix: Optional[str] = None) -> Optional[Ingester]:
    """Find an ingester that can handle the given source.

    Args:
        source: Path to the input source
        prefix: Virtual directory the imported notes land in

    Returns:
        An Ingester instance that can handle the source, or None
    """
    source_path = Path(source)
    ingesters: list[Ingester] = [FolderIngester() if prefix is None else FolderIngester(prefix)]
    for ingester in ingesters:
        if ingester.can_handle(source_path):
            return ingester
    return None


__all__ = ["FolderIngester", "get_ingester"]
