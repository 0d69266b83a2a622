"""Device fingerprint similarity scoring.

WHAT:
    Pure, table-driven scorer comparing two sparse fingerprint sets and
    mapping the additive score to a match-probability band.

WHY:
    - Session linking needs a reproducible "same physical device?" signal
    - No single signal is authoritative, so weights are additive and independent
    - Keeping weights in tables makes them tunable and testable without I/O

SCORING:
    canvas 30, device_signature 35, webgl 25, audio 20, fonts 15, screen 10,
    ip+timezone coincidence within the recency window 20.

    score >= 80 -> 0.95, >= 60 -> 0.85, >= 40 -> 0.70, >= 25 -> 0.50, else 0.30
    A score below 25 is not a candidate at all.

REFERENCES:
    - leadgraph/services/session_linker.py (consumer)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Optional, Tuple


# =============================================================================
# WEIGHT TABLES
# =============================================================================

SIGNAL_WEIGHTS: Dict[str, int] = {
    "canvas": 30,
    "device_signature": 35,
    "webgl": 25,
    "audio": 20,
    "fonts": 15,
    "screen": 10,
}

IP_TIMEZONE_SIGNAL = "ip_timezone"
IP_TIMEZONE_WEIGHT = 20
DEFAULT_IP_TIMEZONE_RECENCY = timedelta(hours=2)

# (minimum score, probability), highest band first
PROBABILITY_BANDS: Tuple[Tuple[int, float], ...] = (
    (80, 0.95),
    (60, 0.85),
    (40, 0.70),
    (25, 0.50),
)
FLOOR_PROBABILITY = 0.30

MIN_CANDIDATE_SCORE = 25

# Availability weights for quality analysis (not used in matching)
QUALITY_WEIGHTS: Dict[str, int] = {
    "canvas": 25,
    "webgl": 20,
    "audio": 20,
    "fonts": 15,
    "screen": 10,
    "device_signature": 10,
}


# =============================================================================
# TYPES
# =============================================================================

@dataclass(frozen=True)
class FingerprintSet:
    """Sparse bag of device signals observed on one session."""
    canvas: Optional[str] = None
    webgl: Optional[str] = None
    audio: Optional[str] = None
    fonts: Optional[str] = None
    screen: Optional[str] = None
    device_signature: Optional[str] = None
    ip: Optional[str] = None
    timezone: Optional[str] = None
    observed_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session) -> "FingerprintSet":
        """Build from a TrackingSession row (or anything with the same attributes)."""
        return cls(
            canvas=session.canvas_fingerprint,
            webgl=session.webgl_fingerprint,
            audio=session.audio_fingerprint,
            fonts=session.fonts_fingerprint,
            screen=session.screen_fingerprint,
            device_signature=session.device_signature,
            ip=session.ip,
            timezone=session.timezone,
            observed_at=session.started_at,
        )

    def signal(self, name: str) -> Optional[str]:
        value = getattr(self, name)
        return value or None

    def is_empty(self) -> bool:
        return not any(self.signal(name) for name in SIGNAL_WEIGHTS) and not (self.ip and self.timezone)


@dataclass(frozen=True)
class FingerprintScore:
    """Result of comparing a candidate fingerprint against a reference."""
    score: int
    probability: float
    matched_signals: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_candidate(self) -> bool:
        return self.score >= MIN_CANDIDATE_SCORE


# =============================================================================
# SCORING
# =============================================================================

def probability_for(score: int) -> float:
    """Step function from additive score to match probability."""
    for minimum, probability in PROBABILITY_BANDS:
        if score >= minimum:
            return probability
    return FLOOR_PROBABILITY


def _ip_timezone_coincide(
    candidate: FingerprintSet,
    reference: FingerprintSet,
    recency: timedelta,
) -> bool:
    if not (candidate.ip and candidate.timezone and reference.ip and reference.timezone):
        return False
    if candidate.ip != reference.ip or candidate.timezone != reference.timezone:
        return False
    if candidate.observed_at is None or reference.observed_at is None:
        return False
    return abs(reference.observed_at - candidate.observed_at) <= recency


def score(
    candidate: FingerprintSet,
    reference: FingerprintSet,
    recency: timedelta = DEFAULT_IP_TIMEZONE_RECENCY,
) -> FingerprintScore:
    """Score `candidate` against `reference`.

    A signal contributes its weight only when present on both sides and equal.
    The ip+timezone pair is measured against the reference's own observation
    time, so the result depends on the inputs alone.
    """
    total = 0
    matched = set()

    for name, weight in SIGNAL_WEIGHTS.items():
        value = candidate.signal(name)
        if value is not None and value == reference.signal(name):
            total += weight
            matched.add(name)

    if _ip_timezone_coincide(candidate, reference, recency):
        total += IP_TIMEZONE_WEIGHT
        matched.add(IP_TIMEZONE_SIGNAL)

    return FingerprintScore(
        score=total,
        probability=probability_for(total),
        matched_signals=frozenset(matched),
    )


def analyze_fingerprint_quality(fingerprints: FingerprintSet) -> dict:
    """How useful a session's fingerprint is for future matching.

    Returns:
        {"quality": 0-100, "available": [...], "missing": [...],
         "recommendation": "good" | "moderate" | "poor"}
    """
    quality = 0
    available = []
    missing = []

    for name, weight in QUALITY_WEIGHTS.items():
        if fingerprints.signal(name):
            quality += weight
            available.append(name)
        else:
            missing.append(name)

    quality = min(quality, 100)
    if quality >= 60:
        recommendation = "good"
    elif quality >= 40:
        recommendation = "moderate"
    else:
        recommendation = "poor"

    return {
        "quality": quality,
        "available": available,
        "missing": missing,
        "recommendation": recommendation,
    }
