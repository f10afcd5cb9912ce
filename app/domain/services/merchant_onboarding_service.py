"""
Merchant onboarding - links Finix identity, merchant and verification events
to the seller's onboarding row.

The identity id is the key every later Finix event carries, so it is stored
first (from the completed onboarding form). Merchant and verification events
that arrive before it raise PrerequisiteMissingError and are retried.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import PrerequisiteMissingError
from app.core.logging import get_logger
from app.db.database import utcnow
from app.db.models.merchant_onboarding import (
    ONBOARDING_TRANSITIONS,
    VERIFICATION_TRANSITIONS,
    MerchantOnboarding,
    can_advance,
)

logger = get_logger(__name__)

STATE_PROVISIONING = "PROVISIONING"
STATE_APPROVED = "APPROVED"
VERIFICATION_SUCCEEDED = "SUCCEEDED"
VERIFICATION_FAILED = "FAILED"


class MerchantOnboardingService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _by_form(self, form_id: str) -> MerchantOnboarding | None:
        result = await self.db.execute(
            select(MerchantOnboarding).where(MerchantOnboarding.form_id == form_id)
        )
        return result.scalar_one_or_none()

    async def _by_identity(self, identity_id: str) -> MerchantOnboarding:
        result = await self.db.execute(
            select(MerchantOnboarding).where(MerchantOnboarding.identity_id == identity_id)
        )
        onboarding = result.scalar_one_or_none()
        if onboarding is None:
            raise PrerequisiteMissingError("MerchantOnboarding", identity_id)
        return onboarding

    async def store_identity(self, form_id: str, user_id: str, identity_id: str) -> MerchantOnboarding:
        """
        Record the identity created by a completed onboarding form.

        The row normally exists (created when the form link was issued); if
        not, it is created here from the form's user tag.
        """
        onboarding = await self._by_form(form_id)
        if onboarding is None:
            onboarding = MerchantOnboarding(form_id=form_id, user_id=user_id)
            self.db.add(onboarding)
            logger.warning(
                "Onboarding row missing for form, creating it",
                extra_data={"form_id": form_id, "user_id": user_id},
            )

        onboarding.identity_id = identity_id
        # a merchant event may already have pushed the state further
        if onboarding.onboarding_state in (None, "PENDING"):
            onboarding.onboarding_state = STATE_PROVISIONING
        await self.db.flush()
        return onboarding

    async def update_merchant(
        self,
        identity_id: str,
        merchant_id: str,
        onboarding_state: str | None,
        verification_id: str | None = None,
    ) -> MerchantOnboarding:
        onboarding = await self._by_identity(identity_id)
        onboarding.merchant_id = merchant_id
        if verification_id:
            onboarding.verification_id = verification_id
        if not onboarding_state or onboarding_state == onboarding.onboarding_state:
            return onboarding

        if not can_advance(ONBOARDING_TRANSITIONS, onboarding.onboarding_state, onboarding_state):
            self._log_regression(onboarding, "onboarding_state", onboarding.onboarding_state, onboarding_state)
            return onboarding

        onboarding.onboarding_state = onboarding_state
        if onboarding_state == STATE_APPROVED and onboarding.onboarded_at is None:
            onboarding.onboarded_at = utcnow()
        return onboarding

    async def update_verification(
        self,
        identity_id: str,
        verification_id: str | None,
        verification_state: str | None,
    ) -> MerchantOnboarding:
        onboarding = await self._by_identity(identity_id)
        if not verification_state or verification_state == onboarding.verification_state:
            if verification_id:
                onboarding.verification_id = verification_id
            return onboarding

        if not can_advance(VERIFICATION_TRANSITIONS, onboarding.verification_state, verification_state):
            self._log_regression(
                onboarding, "verification_state", onboarding.verification_state, verification_state
            )
            return onboarding

        if verification_id:
            onboarding.verification_id = verification_id
        onboarding.verification_state = verification_state
        if verification_state == VERIFICATION_SUCCEEDED and onboarding.verified_at is None:
            onboarding.verified_at = utcnow()
        elif verification_state == VERIFICATION_FAILED:
            onboarding.verified_at = None
        return onboarding

    def _log_regression(self, onboarding: MerchantOnboarding, field: str, current: str | None, target: str) -> None:
        logger.info(
            "Ignoring onboarding status regression",
            extra_data={
                "identity_id": onboarding.identity_id,
                "field": field,
                "current_status": current,
                "target_status": target,
            },
        )
