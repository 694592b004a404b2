"""Protocol for note import sources."""

from pathlib import Path
from typing import Iterator, Protocol, runtime_checkable

from mempack.models import Document


@runtime_checkable
class Ingester(Protocol):
    """Protocol for sources that can seed the content store with notes.

    Uses structural subtyping - no inheritance required.
    """

    @property
    def source_type(self) -> str:
        """Return identifier for this source type (e.g., 'folder')."""
        ...

    def can_handle(self, source: Path) -> bool:
        """Check if this ingester can process the given source."""
        ...

    def ingest(self, source: Path) -> Iterator[Document]:
        """Yield markdown documents from the source."""
        ...
