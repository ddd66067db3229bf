import logging
import re
from dataclasses import dataclass
from typing import Optional

from app.core.schemas import QuestionPath
from app.ai_feature import prompts
from app.ai_feature.llm import LLMClient, extract_json

logger = logging.getLogger(__name__)

KEYWORDS = {
    QuestionPath.PREDICTION: [
        "forecast", "predict", "prediction", "projection", "project",
        "next", "will", "expect", "expected", "future", "upcoming", "tomorrow",
    ],
    QuestionPath.EXACT: [
        "how many", "how much", "total", "sum", "average", "avg", "count",
        "list", "top", "per", "by", "highest", "lowest", "max", "min",
        "compare", "between", "last week", "last month", "yesterday",
    ],
    QuestionPath.INSIGHT: [
        "why", "explain", "policy", "document", "describe", "what is",
        "what does", "definition", "meaning", "procedure", "guideline",
        "how do", "how does",
    ],
}


@dataclass
class RouteDecision:
    path: QuestionPath
    confidence: float
    reason: str
    method: str  # llm / keyword / explicit


def keyword_route(question: str) -> RouteDecision:
    """
    Deterministic routing by keyword hits.

    Ties and questions with no hits go to the Exact path.
    """
    q = (question or "").lower()
    scores = {
        path: sum(1 for kw in words if re.search(rf"\b{re.escape(kw)}\b", q))
        for path, words in KEYWORDS.items()
    }
    best = max(scores.values())
    if best == 0:
        return RouteDecision(
            QuestionPath.EXACT, 0.34, "no routing keywords matched", "keyword"
        )

    # Dict order breaks ties: prediction, exact, insight. An exact tie
    # between any path and exact falls back to exact.
    winners = [path for path, score in scores.items() if score == best]
    path = QuestionPath.EXACT if QuestionPath.EXACT in winners else winners[0]
    total = sum(scores.values())
    return RouteDecision(
        path, round(best / total, 2), f"matched {best} {path.value} keyword(s)", "keyword"
    )


async def route_question(
    question: str,
    llm: LLMClient,
    explicit: Optional[QuestionPath] = None,
) -> RouteDecision:
    """
    Pick the path for a question.

    The model is asked first; an unusable reply falls back to keyword_route.
    LLMError from the model call propagates.
    """
    if explicit is not None:
        return RouteDecision(explicit, 1.0, "path requested by caller", "explicit")

    reply = await llm.complete(
        [
            {"role": "system", "content": prompts.ROUTER_PROMPT},
            {"role": "user", "content": question},
        ],
        json_mode=True,
    )
    data = extract_json(reply) or {}

    try:
        path = QuestionPath(str(data.get("path", "")).strip().lower())
    except ValueError:
        logger.warning(f"Router reply not usable, using keywords: {reply[:200]!r}")
        return keyword_route(question)

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    confidence = max(0.0, min(1.0, confidence))

    return RouteDecision(
        path, confidence, str(data.get("reason") or "chosen by model"), "llm"
    )
