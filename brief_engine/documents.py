"""
Document store contract.

The pipeline never owns file storage; it asks a DocumentStore for the full
text of a source document by ID when it needs to chunk or read it.
"""

from typing import Dict, Optional, Protocol


class DocumentStore(Protocol):
    async def get_text(self, file_id: str) -> Optional[str]:
        ...


class InMemoryDocumentStore:
    """DocumentStore backed by a dict of file ID -> full text"""

    def __init__(self, texts: Optional[Dict[str, str]] = None):
        self._texts: Dict[str, str] = dict(texts or {})

    def put(self, file_id: str, text: str) -> None:
        self._texts[file_id] = text

    async def get_text(self, file_id: str) -> Optional[str]:
        return self._texts.get(file_id)

    def __len__(self) -> int:
        return len(self._texts)
