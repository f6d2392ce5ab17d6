"""
SQL-backed enrollment directory.

Implements the EnrollmentDirectory interface on top of EnrollmentRepository.
Change notifications come from polling a cheap signature of the table (row
count and newest ``updated_at``); the first poll always emits, so a
subscriber gets an initial event as soon as it starts listening.
"""
import asyncio
import logging
from typing import AsyncIterator, List, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker

from biomatch.config import DIRECTORY_POLL_INTERVAL
from biomatch.exceptions import DirectoryError
from biomatch.interfaces import EnrollmentRecord
from biomatch.repository import EnrollmentRepository

logger = logging.getLogger(__name__)


class SqlEnrollmentDirectory:
    """Enrollment directory stored in the ``enrollments`` table."""

    def __init__(
        self,
        session_maker: async_sessionmaker,
        poll_interval: float = DIRECTORY_POLL_INTERVAL
    ):
        self.session_maker = session_maker
        self.poll_interval = poll_interval

    async def list_enrollments(self) -> List[EnrollmentRecord]:
        """
        Raises:
            DirectoryError: If the table cannot be read
        """
        try:
            async with self.session_maker() as session:
                rows = await EnrollmentRepository.list_all(session)
        except Exception as e:
            raise DirectoryError(f"Failed to list enrollments: {e}") from e
        return [EnrollmentRepository.db_to_record(row) for row in rows]

    async def update_image_refs(self, subject_id: str, image_refs: Sequence[str]) -> None:
        """
        Raises:
            DirectoryError: If the update fails
        """
        try:
            async with self.session_maker() as session:
                updated = await EnrollmentRepository.update_image_refs(session, subject_id, image_refs)
        except Exception as e:
            raise DirectoryError(f"Failed to update images of {subject_id}: {e}") from e
        if not updated:
            logger.warning(f"Subject {subject_id} no longer exists; image list not updated")

    async def changes(self) -> AsyncIterator[None]:
        """Yield whenever the enrollments table changes."""
        last_signature: Optional[tuple] = None
        while True:
            try:
                async with self.session_maker() as session:
                    signature = await EnrollmentRepository.change_signature(session)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Directory poll failed: {e}")
            else:
                if signature != last_signature:
                    last_signature = signature
                    yield None
            await asyncio.sleep(self.poll_interval)
