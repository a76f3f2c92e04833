import pytest

from ecos_backend.components.scenarios import Criterion
from ecos_backend.ecos_judge.parser import (
    DEFAULT_COMMENT,
    PLACEHOLDERS,
    ExtractedScores,
    ParsedScores,
    extract_json_object,
    extract_list_items,
    extract_score,
    normalize_score,
    parse_evaluation,
)

RUBRIC = [Criterion("communication", "communication"), Criterion("anamnese", "anamnese")]

FULL_RUBRIC = [
    Criterion("communication", "Communication"),
    Criterion("anamnese", "Anamnèse"),
    Criterion("raisonnement", "Raisonnement clinique"),
]


# ============ Normalisation ============

@pytest.mark.parametrize(
    "raw, expected",
    [
        (3, 3),
        (0, 0),
        (4, 4),
        (3.6, 4),
        (18, 4),
        (10, 2),
        (18.75, 4),
        (12.5, 3),
        (25, 4),
        (-1, 0),
        ("3", 3),
        ("3/4", 3),
        ("16/20", 3),
        ({"score": 2}, 2),
    ],
)
def test_normalize_score(raw, expected):
    assert normalize_score(raw) == expected


@pytest.mark.parametrize("raw", [None, "bien", True, [], {"comment": "ok"}])
def test_normalize_score_non_numeric(raw):
    assert normalize_score(raw) is None


# ============ JSON ============

def test_parse_valid_json():
    raw = '{"scores": {"communication": 3, "anamnese": 2}, "comments": {"communication": "Bonne écoute"}, "strengths": ["Empathie"], "weaknesses": [], "recommendations": ["Structurer"]}'
    result = parse_evaluation(raw, RUBRIC)
    assert isinstance(result, ParsedScores)
    assert result.strategy == "json"
    assert result.scores == {"communication": 3, "anamnese": 2}
    assert result.comments["communication"] == "Bonne écoute"
    assert result.comments["anamnese"] == DEFAULT_COMMENT
    assert result.strengths == ["Empathie"]
    assert result.weaknesses == [PLACEHOLDERS["weaknesses"]]
    assert result.fully_graded


def test_parse_json_in_backticks():
    raw = '```json\n{"scores": {"communication": 4, "anamnese": 1}}\n```'
    result = parse_evaluation(raw, RUBRIC)
    assert isinstance(result, ParsedScores)
    assert result.scores == {"communication": 4, "anamnese": 1}


def test_parse_json_with_leading_text_and_braces_in_strings():
    raw = (
        "Voici mon évaluation :\n"
        '{"scores": {"communication": 2, "anamnese": 3}, '
        '"comments": {"communication": "Utilise {souvent} des accolades"}}\n'
        "Bonne continuation."
    )
    result = parse_evaluation(raw, RUBRIC)
    assert result.scores == {"communication": 2, "anamnese": 3}
    assert result.comments["communication"] == "Utilise {souvent} des accolades"


def test_parse_json_rescales_twenty_point_scale():
    raw = '{"scores": {"communication": 18, "anamnese": 3}, "comments": {}, "strengths": [], "weaknesses": [], "recommendations": []}'
    result = parse_evaluation(raw, RUBRIC)
    assert result.scores == {"communication": 4, "anamnese": 3}


def test_parse_json_missing_criterion_is_defaulted():
    raw = '{"scores": {"communication": 3, "anamnese": "non évalué"}}'
    result = parse_evaluation(raw, RUBRIC)
    assert result.scores == {"communication": 3, "anamnese": 2}
    assert result.defaulted == {"anamnese"}
    assert not result.fully_graded


def test_parse_json_matches_display_names_and_accents():
    raw = '{"scores": {"Communication": 3, "Anamnèse": 4, "raisonnement_clinique": 1}}'
    result = parse_evaluation(raw, FULL_RUBRIC)
    assert result.scores == {"communication": 3, "anamnese": 4, "raisonnement": 1}
    assert not result.defaulted


def test_extract_json_object_skips_unparseable_block():
    raw = "Critère {a revoir}\n{\"scores\": {\"communication\": 1}}"
    assert extract_json_object(raw) == {"scores": {"communication": 1}}


def test_extract_json_object_none_for_prose():
    assert extract_json_object("Aucun JSON ici") is None
    assert extract_json_object("") is None


# ============ Fallback texte ============

def test_parse_prose_falls_back_to_text_extraction():
    raw = "L'étudiant a été correct.\ncommunication: 3/4"
    result = parse_evaluation(raw, RUBRIC)
    assert isinstance(result, ExtractedScores)
    assert result.strategy == "text"
    assert result.scores == {"communication": 3, "anamnese": 2}
    assert result.defaulted == {"anamnese"}
    assert result.strengths == [PLACEHOLDERS["strengths"]]
    assert result.weaknesses == [PLACEHOLDERS["weaknesses"]]
    assert result.recommendations == [PLACEHOLDERS["recommendations"]]


def test_parse_invalid_input_never_raises():
    for raw in (None, "", "{pas du json"):
        result = parse_evaluation(raw, RUBRIC)
        assert result.scores == {"communication": 2, "anamnese": 2}
        assert result.comments == {"communication": DEFAULT_COMMENT, "anamnese": DEFAULT_COMMENT}


def test_json_without_scores_uses_text_extraction():
    raw = '{"note": "voir ci-dessous"}\nCommunication : 4/4'
    result = parse_evaluation(raw, RUBRIC)
    assert isinstance(result, ExtractedScores)
    assert result.scores["communication"] == 4


def test_extract_score_is_accent_insensitive_and_scales():
    text = "Anamnese - 3 / 4\nRaisonnement clinique : 15/20\nCommunication (écoute) 9"
    assert extract_score(text, FULL_RUBRIC[1]) == 3
    assert extract_score(text, FULL_RUBRIC[2]) == 3
    assert extract_score(text, FULL_RUBRIC[0]) == 4
    assert extract_score("Rien à signaler", FULL_RUBRIC[0]) is None


def test_text_extraction_score_on_line_after_header():
    raw = "**Communication**\nNote : 3/4\n\n**Anamnèse** (critère 2) : 4/4\n"
    result = parse_evaluation(raw, RUBRIC)
    assert isinstance(result, ExtractedScores)
    assert result.scores == {"communication": 3, "anamnese": 4}
    assert result.defaulted == set()


def test_extract_score_prefers_scaled_value_over_stray_digit():
    assert extract_score("Anamnèse (2 questions oubliées) : 1/4", FULL_RUBRIC[1]) == 1
    assert extract_score("Raisonnement clinique, étape 3 :\n16/20", FULL_RUBRIC[2]) == 3
    # bare numbers are not looked for past the end of the line
    assert extract_score("Communication\n\nRemarques générales 3", FULL_RUBRIC[0]) is None


def test_extract_score_stops_at_next_criterion():
    text = "Communication : à revoir\nAnamnèse : 2/4"
    assert extract_score(text, FULL_RUBRIC[0], others=FULL_RUBRIC[1:]) is None
    assert extract_score(text, FULL_RUBRIC[1], others=FULL_RUBRIC[:1]) == 2


def test_text_extraction_comments_and_sections():
    raw = """Évaluation de la session

Communication : 3/4 - Bonne écoute active
Anamnèse : 2/4 - Antécédents non explorés
Raisonnement clinique : 1/4

**Points forts :**
- Se présente au patient
- Questions ouvertes

Points à améliorer :
- Antécédents familiaux oubliés

Recommandations : revoir la sémiologie cardiaque
"""
    result = parse_evaluation(raw, FULL_RUBRIC)
    assert result.scores == {"communication": 3, "anamnese": 2, "raisonnement": 1}
    assert result.comments["communication"] == "Bonne écoute active"
    assert result.comments["anamnese"] == "Antécédents non explorés"
    assert result.comments["raisonnement"] == DEFAULT_COMMENT
    assert result.strengths == ["Se présente au patient", "Questions ouvertes"]
    assert result.weaknesses == ["Antécédents familiaux oubliés"]
    assert result.recommendations == ["revoir la sémiologie cardiaque"]


def test_extract_list_items_english_headers_and_numbering():
    raw = "Strengths\n1. Good rapport\n2) Clear questions\n\nWeaknesses:\n* No physical exam\nRecommendations:\n- Practice"
    assert extract_list_items(raw, "strengths") == ["Good rapport", "Clear questions"]
    assert extract_list_items(raw, "weaknesses") == ["No physical exam"]
    assert extract_list_items(raw, "recommendations") == ["Practice"]
