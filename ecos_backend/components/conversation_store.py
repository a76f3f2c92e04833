from typing import Dict, List
from datetime import datetime
import logging

from sqlalchemy import func, select

from ecos_backend.errors import InvalidStateError, NotFoundError
from .database import Database, ExamSession, Turn

logger = logging.getLogger(__name__)

STUDENT = "student"
PATIENT = "patient"


class ConversationStore:
    """Append-only conversation log of an exam session"""

    def __init__(self, database: Database):
        self.database = database

    async def get_turns(self, session_id: str) -> List[Turn]:
        """All turns of a session, oldest first"""
        async with self.database.session() as session:
            result = await session.execute(
                select(Turn)
                .where(Turn.session_id == session_id)
                .order_by(Turn.position)
            )
            return list(result.scalars().all())

    async def get_history(self, session_id: str) -> List[Dict[str, str]]:
        """Turns as [{"role": "student"|"patient", "text": "..."}]"""
        turns = await self.get_turns(session_id)
        return [{"role": t.role, "text": t.content} for t in turns]

    async def append_exchange(self, session_id: str, student_text: str, patient_text: str) -> List[Turn]:
        """
        Persist a student turn and the patient reply in one transaction.

        Positions are allocated inside the transaction; the (session_id, position)
        unique constraint rejects a concurrent writer instead of interleaving pairs.
        The session row is re-read (FOR UPDATE where the backend supports it) in
        the same transaction: a session completed while the reply was generated
        gets no new turns.
        """
        async with self.database.session() as session:
            async with session.begin():
                status = await session.scalar(
                    select(ExamSession.status)
                    .where(ExamSession.id == session_id)
                    .with_for_update()
                )
                if status is None:
                    raise NotFoundError("session", session_id)
                if status != "in_progress":
                    logger.warning(
                        "ConversationStore: Session %s is %s, exchange not stored", session_id, status
                    )
                    raise InvalidStateError(session_id, status, "post a message")

                last = await session.scalar(
                    select(func.max(Turn.position)).where(Turn.session_id == session_id)
                )
                position = (last or 0) + 1
                now = datetime.utcnow()
                student_turn = Turn(
                    session_id=session_id,
                    position=position,
                    role=STUDENT,
                    content=student_text,
                    timestamp=now,
                )
                patient_turn = Turn(
                    session_id=session_id,
                    position=position + 1,
                    role=PATIENT,
                    content=patient_text,
                    timestamp=datetime.utcnow(),
                )
                session.add_all([student_turn, patient_turn])

        logger.info(
            "ConversationStore: Appended turns %s-%s for session %s",
            position,
            position + 1,
            session_id,
        )
        return [student_turn, patient_turn]
