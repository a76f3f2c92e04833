import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from ecos_backend import config
from ecos_backend.components.conversation_store import STUDENT, ConversationStore
from ecos_backend.components.database import Database, ExamSession, Report, Scenario
from ecos_backend.components.llm import LLM
from ecos_backend.components.scenarios import Criterion, rubric_for
from ecos_backend.errors import EvaluationFailedError, InvalidStateError, NotFoundError
from .parser import ScoreSet, parse_evaluation
from .prompt_builder import build_evaluate_messages
from .report import ReportGenerator

logger = logging.getLogger(__name__)

MIN_TURNS = 2


@dataclass
class EvaluationResult:
    """
    Outcome of one evaluation run.
    scores is None for the insufficient-content variant (no grader call was made).
    """
    session_id: str
    report: Report
    rubric: List[Criterion]
    scores: Optional[ScoreSet] = None

    @property
    def insufficient_content(self) -> bool:
        return self.scores is None


def has_enough_content(turns: List[Dict[str, str]]) -> bool:
    """At least two turns and at least one of them written by the student"""
    return len(turns) >= MIN_TURNS and any(t["role"] == STUDENT for t in turns)


class EvaluationEngine:
    """
    Grades a completed exam session with the language model.

    - scenario rubric + ordered transcript -> grading prompt
    - grader answer -> ParsedScores | ExtractedScores (never fails on format)
    - one CriterionScore per rubric criterion, stored with the report
    """

    def __init__(
        self,
        database: Database,
        llm: LLM,
        conversation: Optional[ConversationStore] = None,
        reports: Optional[ReportGenerator] = None,
        timeout_sec: Optional[float] = None,
    ):
        self.database = database
        self.llm = llm
        self.conversation = conversation or ConversationStore(database)
        self.reports = reports or ReportGenerator(database)
        self.timeout_sec = config.JUDGE_TIMEOUT_SEC if timeout_sec is None else timeout_sec

    async def _load(self, session_id: str):
        async with self.database.session() as session:
            exam = await session.get(ExamSession, session_id)
            if exam is None:
                raise NotFoundError("session", session_id)
            scenario = await session.get(Scenario, exam.scenario_id)
        if exam.status != "completed":
            raise InvalidStateError(session_id, exam.status, "evaluate")
        return exam, scenario

    async def _grade(self, session_id: str, scenario: Scenario, rubric: List[Criterion], turns) -> str:
        messages = build_evaluate_messages(scenario.title, scenario.description, rubric, turns)
        try:
            return await asyncio.wait_for(
                self.llm.chat(messages, temperature=config.GRADER_TEMPERATURE),
                timeout=self.timeout_sec,
            )
        except asyncio.TimeoutError as e:
            logger.error("EvaluationEngine: Grader timed out after %ss for session %s", self.timeout_sec, session_id)
            raise EvaluationFailedError(session_id, f"grader timed out after {self.timeout_sec}s") from e
        except Exception as e:
            logger.error(f"EvaluationEngine: Grader call failed for session {session_id}: {e}", exc_info=True)
            raise EvaluationFailedError(session_id, str(e) or e.__class__.__name__) from e

    async def evaluate(self, session_id: str) -> EvaluationResult:
        exam, scenario = await self._load(session_id)
        rubric = rubric_for(scenario)
        turns = await self.conversation.get_history(session_id)

        if not has_enough_content(turns):
            logger.info(
                "EvaluationEngine: Session %s has %s turn(s) without enough student content, skipping grader",
                session_id, len(turns),
            )
            report = await self.reports.build_insufficient(session_id)
            return EvaluationResult(session_id=session_id, report=report, rubric=rubric)

        logger.info(
            "EvaluationEngine: Grading session %s (scenario=%s, turns=%s, criteria=%s)",
            session_id, exam.scenario_id, len(turns), len(rubric),
        )
        raw = await self._grade(session_id, scenario, rubric, turns)
        result = parse_evaluation(raw, rubric)

        # score rows and report are written together
        report = await self.reports.build(session_id, result, rubric)
        return EvaluationResult(session_id=session_id, report=report, rubric=rubric, scores=result)
