"""Heuristic detector for "stop the interview now" utterances."""
import re
from typing import Optional

END_PHRASES = {
    "end interview",
    "stop interview",
    "finish interview",
    "end the interview",
    "stop the interview",
    "finish the interview",
    "wrap up",
    "that's all",
    "that is all",
    "we can stop",
    "we are done",
    "i am done",
    "i'm done",
    "cancel interview",
    "terminate interview",
    "end it",
    "stop it",
}

_END_THEN_TARGET_RE = re.compile(r"\b(end|stop|finish|wrap|cancel|terminate)\b.*\b(interview|this)\b")
_LEADING_END_RE = re.compile(r"^(end|stop|finish|cancel|terminate)\b")
_WE_STOP_RE = re.compile(r"\bwe(\s+can)?\s+stop\b")
_THATS_ALL_RE = re.compile(r"\b(that('| i)s)?\s*all\b")

_PATTERNS = (_END_THEN_TARGET_RE, _LEADING_END_RE, _WE_STOP_RE, _THATS_ALL_RE)


def is_end_intent(text: Optional[str]) -> bool:
    if not text:
        return False
    s = str(text).lower().strip()
    if not s:
        return False

    if s in END_PHRASES:
        return True
    return any(p.search(s) for p in _PATTERNS)
