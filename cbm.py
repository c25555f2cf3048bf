"""Reading-fluency check results: one row per completed text, plus per-learner stats."""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

import db
from errors import ValidationError

logger = logging.getLogger(__name__)

_TEXT_ID_MAX = 200
_TITLE_MAX = 500


def _count(value: Any, name: str, *, required: bool = False) -> int:
    if value is None or value == "":
        if required:
            raise ValidationError(f"{name} is required")
        return 0
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a whole number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a whole number") from exc
    if not number.is_integer() or number < 0:
        raise ValidationError(f"{name} must be a whole number")
    return int(number)


def _measure(value: Any, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a number") from exc
    if math.isnan(number) or math.isinf(number) or number < 0:
        raise ValidationError(f"{name} must be a non-negative number")
    return number


def compute_accuracy(correct: int, answered: int) -> float:
    """Percentage of answered questions that were right; 0 when nothing was answered."""
    if answered <= 0:
        return 0.0
    return float(round(correct / answered * 100))


def compute_wcpm(correct: int, seconds: float) -> float:
    """Correct answers per minute of reading time."""
    if seconds <= 0:
        return 0.0
    return float(round(correct / seconds * 60))


def save_result(
    user_id: Any,
    text_id: Any,
    *,
    total_questions: Any,
    correct_answers: Any,
    text_title: Any = None,
    total_answered: Any = None,
    accuracy: Any = None,
    time_spent: Any = None,
    wcpm: Any = None,
    answers: Any = None,
) -> Dict[str, Any]:
    """Store one finished check. Missing accuracy and wcpm are derived from the counts."""
    text = str(text_id or "").strip()[:_TEXT_ID_MAX]
    if not text:
        raise ValidationError("textId is required")
    questions = _count(total_questions, "totalQuestions", required=True)
    correct = _count(correct_answers, "correctAnswers", required=True)
    answered = _count(total_answered, "totalAnswered")
    if total_answered is None or total_answered == "":
        answered = correct
    if correct > answered or answered > questions:
        raise ValidationError("correctAnswers <= totalAnswered <= totalQuestions must hold")
    if answers is not None and not isinstance(answers, (dict, list)):
        raise ValidationError("answers must be an object")
    seconds = _measure(time_spent, "timeSpent") or 0.0
    score = _measure(accuracy, "accuracy")
    if score is None:
        score = compute_accuracy(correct, answered)
    elif score > 100:
        raise ValidationError("accuracy must be a percentage")
    fluency = _measure(wcpm, "wcpm")
    if fluency is None:
        fluency = compute_wcpm(correct, seconds)
    title = None if text_title is None else str(text_title).strip()[:_TITLE_MAX] or None

    user = db.ensure_user(user_id)
    stored = db.insert_cbm_result(
        user, text, title, questions, answered, correct, score, seconds, fluency, answers
    )
    logger.info("Stored reading check %s for %s (%s/%s correct)", text, user, correct, questions)
    return {"id": stored["id"], "completed_at": stored["completed_at"]}


def list_results(user_id: Any) -> List[Dict[str, Any]]:
    return db.list_cbm_results(db.sanitize_user_id(user_id))


def result_stats(user_id: Any) -> Dict[str, Any]:
    """Attempts, averages and bests; every figure is 0 for a learner without results."""
    raw = db.cbm_stats(db.sanitize_user_id(user_id))
    return {
        "total_attempts": int(raw.get("total_attempts") or 0),
        "avg_accuracy": round(float(raw.get("avg_accuracy") or 0), 2),
        "avg_wcpm": round(float(raw.get("avg_wcpm") or 0), 2),
        "best_wcpm": float(raw.get("best_wcpm") or 0),
        "best_accuracy": float(raw.get("best_accuracy") or 0),
    }
