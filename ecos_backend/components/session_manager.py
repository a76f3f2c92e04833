from typing import Any, Dict, List, Optional
from datetime import datetime
import asyncio
import logging
import uuid

from sqlalchemy import select, update

from ecos_backend import config
from ecos_backend.errors import InvalidStateError, LanguageModelError, NotFoundError, QuotaExceededError
from .conversation_store import ConversationStore
from .database import Database, ExamSession, Scenario
from .evaluation_queue import EvaluationQueue
from .llm import LLM
from .patient_prompts import FALLBACK_REPLY, build_system_prompt, clean_reply, make_messages
from .quota import QuotaTracker
from .vector_search import VectorSearchClient

logger = logging.getLogger(__name__)

IN_PROGRESS = "in_progress"
COMPLETED = "completed"


class SessionManager:
    """Manages exam sessions: creation, patient exchange, completion"""

    def __init__(
        self,
        database: Database,
        llm: LLM,
        quota: QuotaTracker,
        conversation: Optional[ConversationStore] = None,
        vector_search: Optional[VectorSearchClient] = None,
        evaluation_queue: Optional[EvaluationQueue] = None,
        timeout_sec: Optional[float] = None,
    ):
        self.database = database
        self.llm = llm
        self.quota = quota
        self.conversation = conversation or ConversationStore(database)
        self.vector_search = vector_search
        self.evaluation_queue = evaluation_queue
        self.timeout_sec = config.LLM_TIMEOUT_SEC if timeout_sec is None else timeout_sec
        logger.info("SessionManager: Initialized")

    async def get_exam(self, session_id: str) -> ExamSession:
        async with self.database.session() as session:
            exam = await session.get(ExamSession, session_id)
        if exam is None:
            logger.warning(f"SessionManager: Session {session_id} not found")
            raise NotFoundError("session", session_id)
        return exam

    async def start_session(self, scenario_id: int, student_id: str) -> str:
        """Start a new exam session on an existing scenario"""
        async with self.database.session() as session:
            scenario = await session.get(Scenario, scenario_id)
            if scenario is None:
                logger.warning(f"SessionManager: Cannot start session - scenario {scenario_id} not found")
                raise NotFoundError("scenario", scenario_id)

            session_id = str(uuid.uuid4())
            session.add(ExamSession(
                id=session_id,
                scenario_id=scenario_id,
                student_id=student_id,
                status=IN_PROGRESS,
                start_time=datetime.utcnow(),
            ))
            await session.commit()

        logger.info(f"SessionManager: Session {session_id} started (scenario={scenario_id}, student={student_id})")
        return session_id

    async def _reference_passages(self, scenario: Scenario, text: str) -> List[str]:
        if self.vector_search is None or not self.vector_search.enabled:
            return []
        return await self.vector_search.retrieve(text, index=scenario.knowledge_index)

    async def post_student_turn(self, session_id: str, text: str, now: Optional[datetime] = None) -> str:
        """
        One exchange with the simulated patient.

        Order: state check -> quota reservation -> model call -> both turns
        persisted together. A failed model call stores nothing.
        """
        exam = await self.get_exam(session_id)
        if exam.status != IN_PROGRESS:
            raise InvalidStateError(session_id, exam.status, "post a message")

        status = await self.quota.check_and_reserve(exam.student_id, now or datetime.utcnow())
        if not status.granted:
            logger.info(f"SessionManager: Quota exceeded for {exam.student_id} (session {session_id})")
            raise QuotaExceededError(exam.student_id, status.used, status.limit)

        async with self.database.session() as session:
            scenario = await session.get(Scenario, exam.scenario_id)

        history = await self.conversation.get_history(session_id)
        passages = await self._reference_passages(scenario, text)
        system_prompt = build_system_prompt(
            scenario.title, scenario.description, scenario.patient_prompt, passages
        )
        messages = make_messages(system_prompt, history, text)

        try:
            raw = await asyncio.wait_for(
                self.llm.chat(messages, temperature=config.PATIENT_TEMPERATURE),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"SessionManager: Patient reply timed out after {self.timeout_sec}s (session {session_id})")
            raise LanguageModelError(f"Patient simulation timed out after {self.timeout_sec}s") from e
        except Exception as e:
            logger.error(f"SessionManager: Patient reply failed for session {session_id}: {e}", exc_info=True)
            raise LanguageModelError(f"Patient simulation failed: {e}") from e

        reply = clean_reply(raw) or FALLBACK_REPLY
        await self.conversation.append_exchange(session_id, text, reply)
        logger.info(f"SessionManager: Session {session_id} now has {len(history) + 2} turns")
        return reply

    async def complete_session(self, session_id: str):
        """
        Close the session with a single conditional UPDATE, then queue grading.
        A second call fails with InvalidStateError and changes nothing.
        """
        async with self.database.session() as session:
            result = await session.execute(
                update(ExamSession)
                .where(ExamSession.id == session_id, ExamSession.status == IN_PROGRESS)
                .values(status=COMPLETED, end_time=datetime.utcnow())
            )
            await session.commit()

        if result.rowcount == 0:
            exam = await self.get_exam(session_id)
            raise InvalidStateError(session_id, exam.status, "complete")

        logger.info(f"SessionManager: Session {session_id} completed")

        if self.evaluation_queue is not None:
            try:
                await self.evaluation_queue.enqueue(session_id)
            except Exception as e:
                # completion stays committed; grading can be retried manually
                logger.error(f"SessionManager: Could not queue evaluation of {session_id}: {e}", exc_info=True)

    async def get_session(self, session_id: str) -> Dict[str, Any]:
        """Session, its scenario summary and the ordered conversation"""
        exam = await self.get_exam(session_id)
        async with self.database.session() as session:
            scenario = await session.get(Scenario, exam.scenario_id)
        turns = await self.conversation.get_turns(session_id)
        logger.info(f"SessionManager: Retrieved session {session_id} (status: {exam.status})")
        return {
            "session": exam,
            "scenario": scenario,
            "turns": turns,
        }

    async def list_student_sessions(self, student_id: str) -> List[ExamSession]:
        """All sessions of a student, newest first"""
        async with self.database.session() as session:
            result = await session.execute(
                select(ExamSession)
                .where(ExamSession.student_id == student_id)
                .order_by(ExamSession.start_time.desc())
            )
            return list(result.scalars().all())
