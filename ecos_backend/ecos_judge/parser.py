import json
import logging
import math
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Set

from ecos_backend.components.scenarios import Criterion

logger = logging.getLogger(__name__)

DEFAULT_SCORE = 2
RAW_SCALE = 20
DEFAULT_COMMENT = "Aucun commentaire spécifique"

PLACEHOLDERS = {
    "strengths": "Points forts à identifier",
    "weaknesses": "Points à améliorer à identifier",
    "recommendations": "Recommandations à définir",
}

# Section headers of a free-form answer (matched on accent-free lowercase text)
SECTION_HEADERS = {
    "strengths": r"points?\s+forts?|forces|strengths",
    "weaknesses": r"points?\s+(?:a|d)\s*'?\s*amelior\w*|axes?\s+d\s*'?\s*amelioration|faiblesses|weaknesses|areas?\s+for\s+improvement",
    "recommendations": r"recommandations?|recommendations?",
}
_ANY_HEADER_RE = re.compile(
    r"^[\s#>*_\d.)-]*(?:" + "|".join(SECTION_HEADERS.values()) + r")\b", re.IGNORECASE
)
BULLET_RE = re.compile(r"^\s*(?:[-*•–]|\d+\s*[.)])\s+(.*\S)\s*$")
MARKDOWN_RE = re.compile(r"[*_`#]+")
NUMBER_RE = r"(\d+(?:[.,]\d+)?)"
SCALED_SCORE_RE = re.compile(NUMBER_RE + r"\s*/\s*(\d+)")
BARE_SCORE_RE = re.compile(r"[^\d\n]{0,80}?" + NUMBER_RE)
# chars after a criterion name searched for its score
SCORE_WINDOW = 150


@dataclass
class ScoreSet:
    """
    Structured grading recovered from the grader's raw text.
    - scores: criterion_id -> normalized score in [0, max]
    - defaulted: criteria whose score was not found and set to DEFAULT_SCORE
    """
    scores: Dict[str, int]
    comments: Dict[str, str]
    strengths: List[str]
    weaknesses: List[str]
    recommendations: List[str]
    defaulted: Set[str] = field(default_factory=set)

    strategy: ClassVar[str] = "none"

    @property
    def fully_graded(self) -> bool:
        return not self.defaulted


@dataclass
class ParsedScores(ScoreSet):
    """The answer contained a usable JSON object"""
    strategy: ClassVar[str] = "json"


@dataclass
class ExtractedScores(ScoreSet):
    """Free-form answer; values were pulled out with regexes"""
    strategy: ClassVar[str] = "text"


# ======== Helpers ========

def fold(text: str) -> str:
    """Lowercase and strip accents ("Anamnèse" -> "anamnese")"""
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in decomposed if not unicodedata.combining(c)).lower()


def _key(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", fold(text)).strip("_")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_score(value: Any, max_score: int = 4) -> Optional[int]:
    """
    Bring a raw grader score onto [0, max_score].

    Values above the cap are taken to be on a 0-20 scale and rescaled
    (18 -> round(18 / 20 * 4) = 4); the result is clamped.
    Returns None when the value is not numeric.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, dict):
        for name in ("score", "note", "value", "points"):
            if name in value:
                return normalize_score(value[name], max_score)
        return None
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:[.,]\d+)?", value)
        if not match:
            return None
        value = float(match.group(0).replace(",", "."))
    if not isinstance(value, (int, float)) or math.isnan(value):
        return None

    if value > max_score:
        value = _round_half_up(value / RAW_SCALE * max_score)
    else:
        value = _round_half_up(value)
    return max(0, min(max_score, int(value)))


def _strip_code_fences(text: str) -> str:
    """Drop a ```json ... ``` wrapper when the model answers in Markdown"""
    m = re.search(r"```(?:json)?\s*(\{.*\})\s*```", text, flags=re.DOTALL | re.IGNORECASE)
    if m:
        return m.group(1).strip()
    return text


def _balanced_end(text: str, start: int) -> Optional[int]:
    """Index of the brace closing text[start], ignoring braces inside JSON strings"""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def extract_json_object(raw: str) -> Optional[Dict[str, Any]]:
    """
    Return the first balanced {...} block of `raw` that parses as a JSON object.
    Handles prose before/after the object and markdown fences.
    """
    if not raw:
        return None
    text = _strip_code_fences(raw)
    start = text.find("{")
    while start != -1:
        end = _balanced_end(text, start)
        if end is None:
            break
        try:
            data = json.loads(text[start:end + 1])
        except ValueError:
            data = None
        if isinstance(data, dict):
            return data
        start = text.find("{", start + 1)
    return None


def _lookup(mapping: Any, criterion: Criterion) -> Any:
    """Find a criterion in a grader mapping keyed by id, name or a spelling variant"""
    if not isinstance(mapping, dict):
        return None
    if criterion.id in mapping:
        return mapping[criterion.id]
    wanted = {_key(criterion.id), _key(criterion.name)}
    for key, value in mapping.items():
        if _key(str(key)) in wanted:
            return value
    return None


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    elif isinstance(value, dict):
        value = list(value.values())
    elif not isinstance(value, (list, tuple)):
        value = [value]
    items = []
    for item in value:
        text = str(item).strip() if item is not None else ""
        if text:
            items.append(text)
    return items


def _or_placeholder(items: List[str], section: str) -> List[str]:
    return items if items else [PLACEHOLDERS[section]]


# ======== Strategy 1: JSON ========

def _from_json(data: Dict[str, Any], rubric: Iterable[Criterion]) -> ParsedScores:
    raw_scores = data.get("scores")
    raw_comments = data.get("comments") or {}

    scores: Dict[str, int] = {}
    comments: Dict[str, str] = {}
    defaulted: Set[str] = set()
    for criterion in rubric:
        raw_value = _lookup(raw_scores, criterion)
        score = normalize_score(raw_value, criterion.max_score)
        if score is None:
            logger.warning("Parser: no usable score for '%s' in JSON answer (%r), default %s",
                           criterion.id, raw_value, DEFAULT_SCORE)
            score = min(DEFAULT_SCORE, criterion.max_score)
            defaulted.add(criterion.id)
        scores[criterion.id] = score

        comment = _lookup(raw_comments, criterion)
        if comment is None and isinstance(raw_value, dict):
            comment = raw_value.get("comment") or raw_value.get("feedback")
        if isinstance(raw_comments, str) and comment is None:
            comment = raw_comments
        comment = str(comment).strip() if comment else ""
        comments[criterion.id] = comment or DEFAULT_COMMENT

    return ParsedScores(
        scores=scores,
        comments=comments,
        strengths=_or_placeholder(_as_list(data.get("strengths")), "strengths"),
        weaknesses=_or_placeholder(_as_list(data.get("weaknesses")), "weaknesses"),
        recommendations=_or_placeholder(_as_list(data.get("recommendations")), "recommendations"),
        defaulted=defaulted,
    )


# ======== Strategy 2: free text ========

def _aliases(criterion: Criterion) -> List[str]:
    aliases = {fold(criterion.name).strip(), fold(criterion.id).replace("_", " ").strip()}
    return sorted((a for a in aliases if a), key=len, reverse=True)


def _score_windows(folded: str, criterion: Criterion, others: Iterable[Criterion]) -> List[str]:
    """Text following each mention of the criterion, cut where another criterion is named"""
    other_aliases = [a for other in others for a in _aliases(other)]
    windows = []
    for alias in _aliases(criterion):
        # "communication" inside "communication non verbale" belongs to the other criterion
        longer = [a for a in other_aliases if alias in a and a != alias]
        for match in re.finditer(re.escape(alias), folded):
            start = match.start()
            if any(folded.startswith(a, start - a.index(alias)) for a in longer if start >= a.index(alias)):
                continue
            window = folded[match.end():match.end() + SCORE_WINDOW]
            cuts = [pos for pos in (window.find(a) for a in other_aliases) if pos != -1]
            windows.append(window[:min(cuts)] if cuts else window)
    return windows


def extract_score(text: str, criterion: Criterion, others: Iterable[Criterion] = ()) -> Optional[int]:
    """
    Score written after the criterion name, e.g. "Communication : 3/4",
    "**Anamnèse**\\nNote : 2 / 4", "Raisonnement clinique (3)". Returns None if absent.

    A "<n>/<scale>" score anywhere in the text that follows the name (up to the
    next criterion of `others`) wins over a bare number, so "Anamnèse
    (critère 2) : 4/4" reads 4. A bare number is only taken from the same line.
    """
    windows = _score_windows(fold(text), criterion, others)

    value = scale = None
    for window in windows:
        match = SCALED_SCORE_RE.search(window)
        if match:
            value, scale = float(match.group(1).replace(",", ".")), int(match.group(2))
            break
    else:
        for window in windows:
            match = BARE_SCORE_RE.match(window)
            if match:
                value = float(match.group(1).replace(",", "."))
                break
    if value is None:
        return None

    if scale and scale != criterion.max_score:
        value = value / scale * criterion.max_score
    return max(0, min(criterion.max_score, _round_half_up(value)))


def extract_comment(text: str, criterion: Criterion) -> str:
    lines = text.splitlines()
    for alias in _aliases(criterion):
        for line in lines:
            folded = fold(line)
            pos = folded.find(alias)
            if pos == -1:
                continue
            rest = line[pos + len(alias):]
            if ":" not in rest:
                continue
            comment = rest.split(":", 1)[1]
            # drop the score itself ("3/4 - bonne écoute" -> "bonne écoute")
            comment = re.sub(r"^\s*\d+(?:[.,]\d+)?\s*(?:/\s*\d+)?\s*(?:points?)?\s*[-–.,;:]?\s*", "", comment)
            comment = MARKDOWN_RE.sub("", comment).strip()
            if comment:
                return comment
    return DEFAULT_COMMENT


def extract_list_items(text: str, section: str) -> List[str]:
    """Items listed under a labeled header ("Points forts:", "Recommendations") of a free-form answer"""
    header_re = re.compile(r"^[\s#>*_\d.)-]*(?:" + SECTION_HEADERS[section] + r")\b", re.IGNORECASE)
    lines = text.splitlines()

    for index, line in enumerate(lines):
        if not header_re.search(fold(line)):
            continue

        items: List[str] = []
        # inline content: "Points forts : écoute active"
        if ":" in line:
            inline = MARKDOWN_RE.sub("", line.split(":", 1)[1]).strip()
            if inline:
                items.append(inline)

        for following in lines[index + 1:]:
            stripped = following.strip()
            if not stripped:
                if items:
                    break
                continue
            if _ANY_HEADER_RE.search(fold(stripped)) and not BULLET_RE.match(following):
                break
            bullet = BULLET_RE.match(following)
            if bullet:
                item = MARKDOWN_RE.sub("", bullet.group(1)).strip()
                if item:
                    items.append(item)
            elif not items:
                items.append(MARKDOWN_RE.sub("", stripped).strip())
            else:
                break
        if items:
            return items
    return []


def _from_text(raw: str, rubric: Iterable[Criterion]) -> ExtractedScores:
    scores: Dict[str, int] = {}
    comments: Dict[str, str] = {}
    defaulted: Set[str] = set()
    rubric = list(rubric)
    for criterion in rubric:
        others = [c for c in rubric if c.id != criterion.id]
        score = extract_score(raw, criterion, others)
        if score is None:
            score = min(DEFAULT_SCORE, criterion.max_score)
            defaulted.add(criterion.id)
        scores[criterion.id] = score
        comments[criterion.id] = extract_comment(raw, criterion)

    if defaulted:
        logger.warning("Parser: criteria defaulted to %s in free-text answer: %s",
                       DEFAULT_SCORE, ", ".join(sorted(defaulted)))

    return ExtractedScores(
        scores=scores,
        comments=comments,
        strengths=_or_placeholder(extract_list_items(raw, "strengths"), "strengths"),
        weaknesses=_or_placeholder(extract_list_items(raw, "weaknesses"), "weaknesses"),
        recommendations=_or_placeholder(extract_list_items(raw, "recommendations"), "recommendations"),
        defaulted=defaulted,
    )


def parse_evaluation(raw: Optional[str], rubric: List[Criterion]) -> ScoreSet:
    """
    Recover a structured score set from the grader's answer.

    1) first JSON object with a "scores" mapping -> ParsedScores
    2) otherwise regex extraction over the whole text -> ExtractedScores

    Never raises: criteria that cannot be found get DEFAULT_SCORE and list
    sections that yield nothing get a single placeholder item.
    """
    raw_text = "" if raw is None else str(raw)

    data = extract_json_object(raw_text)
    if data is not None and isinstance(data.get("scores"), dict):
        return _from_json(data, rubric)

    if data is None:
        logger.warning("Parser: grader answer is not JSON, falling back to text extraction")
    else:
        logger.warning("Parser: JSON answer has no 'scores' mapping, falling back to text extraction")
    return _from_text(raw_text, rubric)
