import asyncio

import pytest
from sqlalchemy import func, select

from ecos_backend.components.database import ExamSession, Report
from ecos_backend.components.scenarios import Criterion, ScenarioCatalog
from ecos_backend.ecos_judge.parser import ParsedScores
from ecos_backend.ecos_judge.report import ReportGenerator, band_for, build_summary, percentage, report_to_dict

RUBRIC = [Criterion("communication", "Communication"), Criterion("anamnese", "Anamnèse")]


@pytest.mark.parametrize(
    "percent, key, label",
    [
        (100, "excellent", "excellente"),
        (80, "excellent", "excellente"),
        (79, "good", "bonne"),
        (70, "good", "bonne"),
        (60, "satisfactory", "satisfaisante"),
        (59, "needs improvement", "à améliorer"),
        (0, "needs improvement", "à améliorer"),
    ],
)
def test_band_for(percent, key, label):
    assert band_for(percent) == (key, label)


def test_percentage():
    assert percentage(7, 8) == 88
    assert percentage(3, 8) == 38
    assert percentage(0, 0) == 0


def test_summary_mentions_score_and_band():
    summary = build_summary(15, 20)
    assert "Performance globale bonne" in summary
    assert "15/20 (75%)" in summary
    assert "note par défaut" not in summary
    assert "note par défaut" in build_summary(8, 20, defaulted=2)


def _scores(communication, anamnese):
    return ParsedScores(
        scores={"communication": communication, "anamnese": anamnese},
        comments={},
        strengths=["Empathie"],
        weaknesses=["Examen incomplet"],
        recommendations=["Revoir l'auscultation"],
    )


def test_build_replaces_previous_report(make_database, seed_scenario):
    async def scenario_run():
        database = await make_database()
        scenario = await seed_scenario(database)
        async with database.session() as session:
            session.add(ExamSession(id="s-1", scenario_id=scenario.id, student_id="etu", status="completed"))
            await session.commit()

        reports = ReportGenerator(database)
        await reports.build("s-1", _scores(1, 1), RUBRIC)
        await reports.build("s-1", _scores(4, 3), RUBRIC)
        stored = await reports.get_report("s-1")
        async with database.session() as session:
            count = await session.scalar(select(func.count()).select_from(Report))
        await database.close()
        return stored, count

    stored, count = asyncio.run(scenario_run())
    assert count == 1
    assert stored.aggregate_score == 88
    assert (stored.total_score, stored.max_score) == (7, 8)
    assert stored.insufficient_content is False
    assert stored.strengths == ["Empathie"]

    data = report_to_dict(stored)
    assert data["aggregateScore"] == 88
    assert data["percentage"] == 88
    assert data["totalScore"] == 7 and data["maxScore"] == 8
    assert data["band"] == "excellent"
    assert data["recommendations"] == ["Revoir l'auscultation"]


def test_insufficient_report_shape(make_database, seed_scenario):
    async def scenario_run():
        database = await make_database()
        scenario = await seed_scenario(database)
        async with database.session() as session:
            session.add(ExamSession(id="s-2", scenario_id=scenario.id, student_id="etu", status="completed"))
            await session.commit()
        report = await ReportGenerator(database).build_insufficient("s-2")
        await database.close()
        return report

    report = asyncio.run(scenario_run())
    data = report_to_dict(report)
    assert data["insufficientContent"] is True
    assert data["aggregateScore"] == 0
    assert data["strengths"] == [] and data["weaknesses"] == [] and data["recommendations"] == []
    assert "band" not in data


def test_stored_figures_survive_rubric_change(make_database, seed_scenario):
    async def scenario_run():
        database = await make_database()
        scenario = await seed_scenario(database, evaluation_criteria={"communication": 4, "anamnese": 4})
        async with database.session() as session:
            session.add(ExamSession(id="s-3", scenario_id=scenario.id, student_id="etu", status="completed"))
            await session.commit()
        reports = ReportGenerator(database)
        await reports.build("s-3", _scores(3, 3), RUBRIC)

        # the scenario gains a criterion after grading
        catalog = ScenarioCatalog(database)
        await catalog.update_scenario(
            scenario.id, evaluation_criteria={"communication": 4, "anamnese": 4, "examen": 4}
        )
        stored = await reports.get_report("s-3")
        await database.close()
        return stored

    data = report_to_dict(asyncio.run(scenario_run()))
    assert data["aggregateScore"] == 75
    assert data["maxScore"] == 8
    assert data["band"] == "good"


def test_build_writes_scores_with_report(make_database, seed_scenario):
    async def scenario_run():
        database = await make_database()
        scenario = await seed_scenario(database)
        async with database.session() as session:
            session.add(ExamSession(id="s-4", scenario_id=scenario.id, student_id="etu", status="completed"))
            await session.commit()
        reports = ReportGenerator(database)
        await reports.build("s-4", _scores(2, 1), RUBRIC)
        scores = await reports.get_scores("s-4")
        await database.close()
        return scores

    scores = asyncio.run(scenario_run())
    assert {s.criterion_id: s.score for s in scores} == {"communication": 2, "anamnese": 1}
    assert len({s.created_at for s in scores}) == 1
