"""Ownership of the single extraction session (browser or HTTP client)."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from marketscan.errors import ExtractionUnavailableError, SessionBusyError
from marketscan.ingest.base import PageSource

logger = logging.getLogger(__name__)

IDLE = "idle"
STARTING = "starting"
ACTIVE = "active"
STOPPING = "stopping"


class ExtractionSessionManager:
    """Starts, lends and stops the one page source processors share.

    start() fails fast instead of waiting when a session is already active
    or starting; processors borrow the active source through current().
    """

    def __init__(self, source_factory: Callable[[], PageSource]):
        """
        Initialize session manager.

        Args:
            source_factory: Builds a fresh, unopened PageSource
        """
        self._source_factory = source_factory
        self._source: Optional[PageSource] = None
        self.state = IDLE

    @property
    def is_active(self) -> bool:
        return self.state == ACTIVE

    async def start(self) -> PageSource:
        """
        Open a new extraction session.

        Raises:
            SessionBusyError: If a session is active, starting or stopping
        """
        if self.state != IDLE:
            raise SessionBusyError(f"Extraction session is {self.state}")

        self.state = STARTING
        source = self._source_factory()
        try:
            await source.open()
        except BaseException:
            self.state = IDLE
            raise
        self._source = source
        self.state = ACTIVE
        logger.info(f"Extraction session started ({source.name})")
        return source

    async def stop(self) -> None:
        """Close the active session. No-op when idle."""
        if self.state != ACTIVE or self._source is None:
            return
        self.state = STOPPING
        source, self._source = self._source, None
        try:
            await source.close()
        finally:
            self.state = IDLE
            logger.info(f"Extraction session stopped ({source.name})")

    def current(self) -> PageSource:
        """
        The active page source.

        Raises:
            ExtractionUnavailableError: If no session is active
        """
        if self.state != ACTIVE or self._source is None:
            raise ExtractionUnavailableError("No active extraction session")
        return self._source

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PageSource]:
        source = await self.start()
        try:
            yield source
        finally:
            await self.stop()
