"""
Source Connector Interface
==========================

Contract every tabular source implements: discover streams, then read
rows lazily from a resumable position.
"""

from abc import ABC, abstractmethod
from typing import Iterator, List, Optional

from ..cancellation import CancellationToken
from ..models import Checkpoint, SourceRecord, Stream


class SourceConnector(ABC):

    @abstractmethod
    def check(self):
        """Raise SourceConnectionError if the source cannot be reached."""

    @abstractmethod
    def discover(self) -> List[Stream]:
        """
        List the streams the source exposes.

        Returns:
            Streams with unique qualified names, each carrying its mapped Schema

        Raises:
            SourceConnectionError: source unreachable after retries
        """

    @abstractmethod
    def read(
        self,
        stream: Stream,
        from_checkpoint: Optional[Checkpoint] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Iterator[SourceRecord]:
        """
        Lazily read a stream in cursor order.

        Args:
            stream: Configured stream (schema captured at discovery)
            from_checkpoint: Resume strictly after this checkpoint's cursor
            cancel_token: Checked between rows

        Yields:
            SourceRecord per row, paired with the cursor reached after it

        Raises:
            SchemaDriftError: source shape differs from stream.schema
            SourceConnectionError: source unreachable after retries
        """

    def close(self):
        pass
