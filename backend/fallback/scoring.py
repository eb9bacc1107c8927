"""
Fallback confidence scoring - Pure domain logic

Fixed tables mapping the evidence behind each fallback strategy to a
[0, 1] confidence. The decision engine uses these values verbatim.
"""

from typing import Optional, Sequence

from .models import FallbackStrategy, StopPassRecord


class FallbackScorer:
    """Pure functions for fallback strategy confidence."""

    # Last-known-position age bands (seconds) -> confidence
    LKP_BANDS = ((30.0, 0.8), (60.0, 0.6), (180.0, 0.4))
    LKP_FLOOR = 0.2

    # Stop-sequence inference looks at the most recent passes only
    RECENT_STOP_WINDOW = 3
    MANUAL_CONFIDENCE = 0.8
    SINGLE_SOURCE_BLEND = 0.5

    @staticmethod
    def last_known_confidence(age_seconds: float) -> float:
        """
        Confidence of a last-known position that is `age_seconds` old.

        Raises:
            ValueError: If age is negative
        """
        if age_seconds < 0:
            raise ValueError("age_seconds must be >= 0")
        for limit, confidence in FallbackScorer.LKP_BANDS:
            if age_seconds < limit:
                return confidence
        return FallbackScorer.LKP_FLOOR

    @staticmethod
    def stop_sequence_confidence(stop_history: Sequence[StopPassRecord]) -> float:
        """0.7 with 3+ recent stop passes, 0.5 with 2, else 0.3."""
        recent = len(stop_history[-FallbackScorer.RECENT_STOP_WINDOW:])
        if recent >= 3:
            return 0.7
        if recent == 2:
            return 0.5
        return 0.3

    @staticmethod
    def blended_confidence(
        last_known: Optional[float], stop_sequence: Optional[float]
    ) -> float:
        """Mean of both contributing confidences, or 0.5 if only one is available."""
        if last_known is not None and stop_sequence is not None:
            return (last_known + stop_sequence) / 2.0
        if last_known is None and stop_sequence is None:
            return 0.0
        return FallbackScorer.SINGLE_SOURCE_BLEND

    @staticmethod
    def confidence_for(
        strategy: Optional[FallbackStrategy],
        last_good_age_seconds: Optional[float],
        stop_history: Sequence[StopPassRecord],
    ) -> float:
        """Confidence of `strategy` given the evidence available now."""
        if strategy is None:
            return 0.0
        if strategy == FallbackStrategy.MANUAL_CONFIRMATION:
            return FallbackScorer.MANUAL_CONFIDENCE
        if strategy == FallbackStrategy.LAST_KNOWN_POSITION:
            if last_good_age_seconds is None:
                return 0.0
            return FallbackScorer.last_known_confidence(last_good_age_seconds)
        if strategy == FallbackStrategy.STOP_SEQUENCE_INFERENCE:
            if not stop_history:
                return 0.0
            return FallbackScorer.stop_sequence_confidence(stop_history)
        lkp = (
            FallbackScorer.last_known_confidence(last_good_age_seconds)
            if last_good_age_seconds is not None
            else None
        )
        ssi = FallbackScorer.stop_sequence_confidence(stop_history) if stop_history else None
        return FallbackScorer.blended_confidence(lkp, ssi)
