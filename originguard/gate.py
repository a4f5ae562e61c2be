"""Fold whitelist, duplicate, face and risk signals into one registration decision."""

import logging
from dataclasses import dataclass, field
from enum import Enum

from .registry import DuplicateMatch
from .whitelist import MatchDecision

logger = logging.getLogger(__name__)

AI_CONFIDENCE_REVIEW = 0.7


class GateAction(str, Enum):
    PROCEED = "proceed"
    MANUAL_REVIEW = "manual_review"
    BLOCK = "block"


@dataclass(frozen=True)
class RiskAssessment:
    """Verdict of the external content-analysis classifier."""

    label: str = "low"
    confidence: float = 0.0
    ai_generated: bool = False

    @property
    def high(self) -> bool:
        return self.label.lower() == "high"


@dataclass(frozen=True)
class GateDecision:
    action: GateAction
    requires_identity: bool
    reasons: list[str] = field(default_factory=list)
    whitelist: MatchDecision | None = None
    duplicate: DuplicateMatch | None = None
    face_count: int | None = None


class RegistrationGate:
    def __init__(self, ai_confidence_review: float = AI_CONFIDENCE_REVIEW):
        self.ai_confidence_review = ai_confidence_review

    def evaluate(
        self,
        whitelist: MatchDecision | None,
        duplicate: DuplicateMatch | None,
        face_count: int | None,
        risk: RiskAssessment | None = None,
    ) -> GateDecision:
        reasons: list[str] = []

        if duplicate is not None and duplicate.found:
            reasons.append(f"Already registered as token {duplicate.token_id}")
            logger.info("[GATE] block: duplicate of token %s", duplicate.token_id)
            return GateDecision(GateAction.BLOCK, False, reasons, whitelist, duplicate, face_count)
        if duplicate is not None and duplicate.is_degraded:
            reasons.append(f"Duplicate scan incomplete ({duplicate.cause})")

        requires_identity = bool(face_count)
        if requires_identity:
            reasons.append(f"{face_count} face(s) detected: identity proof required")

        whitelisted = whitelist is not None and whitelist.matched
        if whitelisted:
            reasons.append(whitelist.reason)
            action = GateAction.PROCEED
        elif risk is not None and (risk.high or (risk.ai_generated and risk.confidence > self.ai_confidence_review)):
            reasons.append(f"Content risk {risk.label} (confidence {risk.confidence:.2f})")
            action = GateAction.MANUAL_REVIEW
        else:
            action = GateAction.PROCEED

        logger.info("[GATE] %s (identity required: %s)", action.value, requires_identity)
        return GateDecision(action, requires_identity, reasons, whitelist, duplicate, face_count)
