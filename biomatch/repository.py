"""
Enrollment Repository

Database operations for the enrollments table using SQLAlchemy async.
"""
from datetime import datetime
from typing import List, Optional, Sequence, Tuple
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from biomatch.interfaces import EnrollmentRecord
from biomatch.models import EnrollmentDB
from biomatch.schemas import Enrollment

logger = logging.getLogger(__name__)


class EnrollmentRepository:
    """
    Repository class for enrollments database operations.

    All methods are async and require an AsyncSession.
    """

    @staticmethod
    async def list_all(session: AsyncSession) -> List[EnrollmentDB]:
        """Get all enrollments, oldest first (the index is built in this order)."""
        result = await session.execute(
            select(EnrollmentDB).order_by(EnrollmentDB.created_at, EnrollmentDB.subject_id)
        )
        return list(result.scalars().all())

    @staticmethod
    async def get(session: AsyncSession, subject_id: str) -> Optional[EnrollmentDB]:
        """Get an enrollment by subject id."""
        result = await session.execute(
            select(EnrollmentDB).where(EnrollmentDB.subject_id == subject_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def count(session: AsyncSession) -> int:
        """Get total count of enrollments."""
        result = await session.execute(select(func.count(EnrollmentDB.subject_id)))
        return result.scalar() or 0

    @staticmethod
    async def upsert(
        session: AsyncSession,
        subject_id: str,
        display_name: str,
        image_refs: Sequence[str]
    ) -> EnrollmentDB:
        """
        Create an enrollment or replace the name and images of an existing one.

        Returns:
            The stored EnrollmentDB instance
        """
        db_record = await EnrollmentRepository.get(session, subject_id)
        now = datetime.utcnow()

        if db_record is None:
            db_record = EnrollmentDB(
                subject_id=subject_id,
                display_name=display_name,
                image_refs=list(image_refs),
                created_at=now,
                updated_at=now
            )
            session.add(db_record)
            action = "Created"
        else:
            db_record.display_name = display_name
            db_record.image_refs = list(image_refs)
            db_record.updated_at = now
            action = "Updated"

        await session.commit()
        await session.refresh(db_record)

        logger.info(f"{action} enrollment {subject_id} with {len(image_refs)} image(s)")
        return db_record

    @staticmethod
    async def update_image_refs(session: AsyncSession, subject_id: str, image_refs: Sequence[str]) -> bool:
        """
        Replace the image references of a subject.

        Returns:
            True if updated, False if the subject does not exist
        """
        result = await session.execute(
            update(EnrollmentDB)
            .where(EnrollmentDB.subject_id == subject_id)
            .values(image_refs=list(image_refs), updated_at=datetime.utcnow())
        )
        await session.commit()
        return result.rowcount > 0

    @staticmethod
    async def delete(session: AsyncSession, subject_id: str) -> bool:
        """
        Permanently delete an enrollment.

        Returns:
            True if deleted, False if not found
        """
        result = await session.execute(
            delete(EnrollmentDB).where(EnrollmentDB.subject_id == subject_id)
        )
        await session.commit()

        if result.rowcount > 0:
            logger.info(f"Deleted enrollment {subject_id}")
            return True
        return False

    @staticmethod
    async def change_signature(session: AsyncSession) -> Tuple[int, Optional[datetime]]:
        """Row count and latest update time; moves whenever the table changes."""
        result = await session.execute(
            select(func.count(EnrollmentDB.subject_id), func.max(EnrollmentDB.updated_at))
        )
        count, latest = result.one()
        return count or 0, latest

    @staticmethod
    def db_to_schema(db_record: EnrollmentDB) -> Enrollment:
        """Convert database model to Pydantic schema."""
        return Enrollment(
            subject_id=db_record.subject_id,
            display_name=db_record.display_name,
            image_refs=list(db_record.image_refs or []),
            created_at=db_record.created_at,
            updated_at=db_record.updated_at
        )

    @staticmethod
    def db_to_record(db_record: EnrollmentDB) -> EnrollmentRecord:
        """Convert database model to the directory record the sync engine reads."""
        return EnrollmentRecord(
            subject_id=db_record.subject_id,
            display_name=db_record.display_name,
            image_refs=tuple(db_record.image_refs or ())
        )
