"""
Merchant Onboarding Model - seller onboarding progress with Finix
"""
from sqlalchemy import Column, Integer, String, DateTime

from app.db.database import Base, utcnow


# Finix merchant onboarding states. Merchant events can arrive late, so a
# state only moves forward; UPDATE_REQUESTED goes back to PROVISIONING when
# the seller resubmits.
ONBOARDING_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"PROVISIONING", "UPDATE_REQUESTED", "APPROVED", "REJECTED"},
    "PROVISIONING": {"UPDATE_REQUESTED", "APPROVED", "REJECTED"},
    "UPDATE_REQUESTED": {"PROVISIONING", "APPROVED", "REJECTED"},
    "APPROVED": {"REJECTED"},
    "REJECTED": set(),
}

# A failed verification may be retried; a successful one is final.
VERIFICATION_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"SUCCEEDED", "FAILED"},
    "FAILED": {"PENDING", "SUCCEEDED"},
    "SUCCEEDED": set(),
}


def can_advance(transitions: dict[str, set[str]], current: str | None, target: str) -> bool:
    """True if ``current`` may move to ``target``; an unset or unknown state accepts anything"""
    if current is None or current not in transitions:
        return True
    return target in transitions[current]


class MerchantOnboarding(Base):
    """Seller onboarding record, created when the onboarding form is issued"""

    __tablename__ = "merchant_onboardings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    form_id = Column(String(64), nullable=False, unique=True)

    identity_id = Column(String(64), nullable=True, index=True)
    merchant_id = Column(String(64), nullable=True)
    verification_id = Column(String(64), nullable=True)

    # Finix values, e.g. PROVISIONING, APPROVED, REJECTED
    onboarding_state = Column(String(32), nullable=False, default="PENDING")
    verification_state = Column(String(32), nullable=True)

    onboarded_at = Column(DateTime, nullable=True)
    verified_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
