import logging
import re
from typing import Dict, Pattern, Protocol

from .schemas import ConversationTurn, RequirementVector


logger = logging.getLogger("uvicorn.error")

CODE_PATTERN = re.compile(
    r"\b(?:function|const|let|var|async|await|class|def|import|export|return|if|else|elif|for|while"
    r"|print|range|lambda|console\.log|public|static|void)\b|```|=>",
    re.IGNORECASE,
)
OPTIMIZATION_PATTERN = re.compile(
    r"\b(?:optimi[sz]\w*|performance|rendimiento|speed\w*|faster|velocidad|cach\w*|memory|memoria"
    r"|efficien\w*|eficien\w*|latency|latencia)\b",
    re.IGNORECASE,
)
REASONING_PATTERN = re.compile(
    r"\b(?:analy[sz]\w*|analiz\w*|reason\w*|razona\w*|think|piensa|explain\w*|expl[ií]ca\w*|why"
    r"|por qu[eé]|compare|compara\w*|evaluat\w*|eval[uú]a\w*)\b",
    re.IGNORECASE,
)
FAST_QUERY_PATTERN = re.compile(
    r"\b(?:hola|hello|hi|hey|gracias|thanks|thank you|ok|okay|buenos d[ií]as|buenas tardes"
    r"|good morning|qu[eé] tal|bye|adi[oó]s)\b",
    re.IGNORECASE,
)
TABULAR_PATTERN = re.compile(
    r"^\s*\|.*\|\s*$|\b(?:tables?|tablas?|columns?|columnas?|rows?|filas?|csv|json|spreadsheet)\b",
    re.IGNORECASE | re.MULTILINE,
)

CODE_THRESHOLD = 2
FAST_RESPONSE_MAX_CHARS = 200


def count_matches(pattern: Pattern[str], text: str) -> int:
    if not text:
        return 0
    return sum(1 for _ in pattern.finditer(text))


class RequirementAnalyzer(Protocol):
    def analyze(self, turn: ConversationTurn) -> RequirementVector: ...


class PatternRequirementAnalyzer:
    """Keyword-family counting over the whole turn text."""

    families: Dict[str, Pattern[str]] = {
        "code": CODE_PATTERN,
        "optimization": OPTIMIZATION_PATTERN,
        "reasoning": REASONING_PATTERN,
        "fast": FAST_QUERY_PATTERN,
    }

    def scores(self, text: str) -> Dict[str, int]:
        return {name: count_matches(pattern, text) for name, pattern in self.families.items()}

    def analyze(self, turn: ConversationTurn) -> RequirementVector:
        text = turn.text()
        scores = self.scores(text)
        vector = RequirementVector(
            needs_images=turn.has_images,
            needs_code=scores["code"] >= CODE_THRESHOLD,
            needs_optimization=scores["optimization"] >= 1,
            needs_reasoning=scores["reasoning"] >= 1,
            needs_fast_response=scores["fast"] >= 1 and len(text) < FAST_RESPONSE_MAX_CHARS,
            scores=scores,
            text_length=len(text),
        )
        logger.debug("Requirement vector: %s", vector.model_dump())
        return vector


def needs_structuring(text: str) -> bool:
    return count_matches(CODE_PATTERN, text) >= CODE_THRESHOLD or count_matches(TABULAR_PATTERN, text) >= 1


def needs_explanation(text: str) -> bool:
    return count_matches(REASONING_PATTERN, text) >= 1
