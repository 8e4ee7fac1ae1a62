"""
tokenmeter - Token Estimation

Heuristic token counts for pre-flight admission checks.

The estimate only gates a request before any work happens; the recorder
always meters the real count afterwards.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Dict

_CJK = re.compile(r"[\u4e00-\u9fa5]")
_ALNUM = re.compile(r"[a-zA-Z0-9]")


@dataclass
class TokenEstimate:
    """Estimate with per-class character counts."""
    total_tokens: int
    cjk_chars: int = 0
    alnum_chars: int = 0
    other_chars: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "cjk_chars": self.cjk_chars,
            "alnum_chars": self.alnum_chars,
            "other_chars": self.other_chars,
        }


class TokenEstimator:
    """
    Character-class token heuristic.

    CJK ideographs weigh 2 tokens, ASCII letters and digits 0.25, anything
    else (punctuation, whitespace, other scripts) 0.5. The sum is rounded up.
    """

    CJK_WEIGHT = 2.0
    ALNUM_WEIGHT = 0.25
    OTHER_WEIGHT = 0.5

    def estimate(self, text: str) -> TokenEstimate:
        cjk = alnum = other = 0
        for char in text or "":
            if _CJK.match(char):
                cjk += 1
            elif _ALNUM.match(char):
                alnum += 1
            else:
                other += 1

        raw = cjk * self.CJK_WEIGHT + alnum * self.ALNUM_WEIGHT + other * self.OTHER_WEIGHT
        return TokenEstimate(
            total_tokens=math.ceil(raw),
            cjk_chars=cjk,
            alnum_chars=alnum,
            other_chars=other,
        )

    def estimate_text_tokens(self, text: str) -> int:
        return self.estimate(text).total_tokens


_default_estimator = TokenEstimator()


def estimate_tokens(text: str) -> int:
    """Estimate tokens for text."""
    return _default_estimator.estimate_text_tokens(text)
