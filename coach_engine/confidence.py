"""
Response Confidence Scoring
===========================

Heuristic confidence for provider output, based on finish reason and
length. Kept behind a small protocol so a calibrated model can replace it
without touching the orchestrator.
"""

from typing import Optional, Protocol


class ConfidenceScorer(Protocol):
    def score(self, content: str, finish_reason: Optional[str]) -> float:
        ...


class HeuristicConfidenceScorer:
    """
    - finished normally and > 50 chars: 0.9
    - truncated at the token limit but > 100 chars: 0.7
    - anything else over 20 chars: 0.6
    - very short: 0.4
    """

    def score(self, content: str, finish_reason: Optional[str]) -> float:
        length = len(content.strip())

        if finish_reason == "stop" and length > 50:
            return 0.9
        if finish_reason == "length" and length > 100:
            return 0.7
        if length > 20:
            return 0.6
        return 0.4
