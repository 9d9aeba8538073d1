from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Union


@dataclass
class ObjectStream:
    """Readable body of a remote object plus its declared length, if known"""
    uri: str
    body: Any
    content_length: Optional[int] = None

    def close(self) -> None:
        close = getattr(self.body, "close", None)
        if close is not None:
            close()


class ObjectStoreProvider(ABC):
    """Abstract interface for object store operations"""

    @abstractmethod
    def get_object(self, uri: str) -> ObjectStream:
        """Open an object for streaming reads. Raises FetchError if missing or denied."""
        pass

    @abstractmethod
    def list_parts(self, uri_prefix: str) -> List[str]:
        """Ordered URIs of the data objects under a prefix (side files excluded)"""
        pass

    @abstractmethod
    def download(self, uri: str, output_dir: Union[str, Path]) -> Path:
        """Copy an object into output_dir, returning the local path"""
        pass
