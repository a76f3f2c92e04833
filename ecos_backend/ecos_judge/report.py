from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import delete, func, select

from ecos_backend.components.database import CriterionScore, Database, Report
from ecos_backend.components.scenarios import Criterion
from .parser import ScoreSet

logger = logging.getLogger(__name__)

# (threshold %, key, French label), checked top-down
BANDS: List[Tuple[int, str, str]] = [
    (80, "excellent", "excellente"),
    (70, "good", "bonne"),
    (60, "satisfactory", "satisfaisante"),
    (0, "needs improvement", "à améliorer"),
]

INSUFFICIENT_SUMMARY = (
    "Évaluation impossible : la session ne contient pas assez d'échanges entre "
    "l'étudiant et le patient pour être notée."
)


def percentage(total: int, max_total: int) -> int:
    if max_total <= 0:
        return 0
    return int(total * 100 / max_total + 0.5)


def band_for(percent: int) -> Tuple[str, str]:
    for threshold, key, label in BANDS:
        if percent >= threshold:
            return key, label
    return BANDS[-1][1], BANDS[-1][2]


def build_summary(total: int, max_total: int, defaulted: int = 0) -> str:
    percent = percentage(total, max_total)
    _, label = band_for(percent)
    summary = (
        f"Performance globale {label} avec un score de {total}/{max_total} ({percent}%). "
        "L'étudiant démontre des compétences cliniques en développement avec des points forts "
        "identifiés et des axes d'amélioration ciblés."
    )
    if defaulted:
        summary += (
            f" {defaulted} critère(s) n'ont pas pu être lus dans la réponse de l'évaluateur "
            "et ont reçu la note par défaut."
        )
    return summary


def report_to_dict(report: Report) -> Dict[str, Any]:
    """API view of a stored report; figures are the ones fixed at grading time"""
    data = {
        "sessionId": report.session_id,
        "summary": report.summary,
        "strengths": list(report.strengths or []),
        "weaknesses": list(report.weaknesses or []),
        "recommendations": list(report.recommendations or []),
        "insufficientContent": report.insufficient_content,
        "aggregateScore": report.aggregate_score,
        "totalScore": report.total_score,
        "maxScore": report.max_score,
        "parseStrategy": report.parse_strategy,
        "createdAt": report.created_at.isoformat() if report.created_at else None,
    }
    if not report.insufficient_content:
        data["percentage"] = report.aggregate_score
        data["band"] = band_for(report.aggregate_score)[0]
    return data


def score_rows(session_id: str, rubric: List[Criterion], result: ScoreSet) -> List[CriterionScore]:
    """One CriterionScore per rubric criterion; the batch shares created_at"""
    created_at = datetime.utcnow()
    return [
        CriterionScore(
            session_id=session_id,
            criterion_id=criterion.id,
            score=result.scores[criterion.id],
            feedback=result.comments.get(criterion.id),
            was_defaulted=criterion.id in result.defaulted,
            created_at=created_at,
        )
        for criterion in rubric
    ]


class ReportGenerator:
    """Reduces normalized scores into the persisted per-session report"""

    def __init__(self, database: Database):
        self.database = database

    async def _replace(self, report: Report, scores: Optional[List[CriterionScore]] = None) -> Report:
        """Swap the session report and add the new score batch in one transaction"""
        async with self.database.session() as session:
            async with session.begin():
                await session.execute(delete(Report).where(Report.session_id == report.session_id))
                if scores:
                    session.add_all(scores)
                session.add(report)
        return report

    async def build(self, session_id: str, result: ScoreSet, rubric: List[Criterion]) -> Report:
        total = sum(result.scores.get(c.id, 0) for c in rubric)
        max_total = sum(c.max_score for c in rubric)
        percent = percentage(total, max_total)

        report = Report(
            session_id=session_id,
            summary=build_summary(total, max_total, len(result.defaulted)),
            strengths=list(result.strengths),
            weaknesses=list(result.weaknesses),
            recommendations=list(result.recommendations),
            insufficient_content=False,
            aggregate_score=percent,
            total_score=total,
            max_score=max_total,
            parse_strategy=result.strategy,
        )
        await self._replace(report, score_rows(session_id, rubric, result))
        logger.info(
            "ReportGenerator: Report for session %s: %s/%s (%s%%, strategy=%s)",
            session_id, total, max_total, percent, result.strategy,
        )
        return report

    async def build_insufficient(self, session_id: str) -> Report:
        report = Report(
            session_id=session_id,
            summary=INSUFFICIENT_SUMMARY,
            strengths=[],
            weaknesses=[],
            recommendations=[],
            insufficient_content=True,
            aggregate_score=0,
            total_score=0,
            max_score=0,
            parse_strategy="none",
        )
        await self._replace(report)
        logger.info("ReportGenerator: Insufficient-content report for session %s", session_id)
        return report

    async def get_report(self, session_id: str) -> Optional[Report]:
        async with self.database.session() as session:
            return await session.scalar(select(Report).where(Report.session_id == session_id))

    async def get_scores(self, session_id: str) -> List[CriterionScore]:
        """Latest batch of criterion scores (re-evaluation inserts fresh rows sharing one created_at)"""
        async with self.database.session() as session:
            latest = await session.scalar(
                select(func.max(CriterionScore.created_at)).where(CriterionScore.session_id == session_id)
            )
            if latest is None:
                return []
            result = await session.execute(
                select(CriterionScore)
                .where(CriterionScore.session_id == session_id, CriterionScore.created_at == latest)
                .order_by(CriterionScore.id)
            )
            return list(result.scalars().all())
