"""
Payment requests and licensing.

Agents pay for the pro tier by relaying a payment descriptor to an external
payment channel and reporting the settlement reference back. A payment
request moves from pending to completed exactly once; each completed
payment grants or extends the wallet's license.

Settlement checking is pluggable. The default verifier only checks the
shape of the reference and does not look at any chain.
"""

import calendar
import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Protocol

from cost_governor.storage.models import (
    AgentLicense,
    PaymentRequest,
    PaymentStatus,
    PaymentTransaction,
)
from cost_governor.storage.repository import (
    DuplicateSettlementError,
    LedgerRepository,
    LicenseGrant,
)

logger = logging.getLogger(__name__)

PAYMENT_REQUEST_VALIDITY = timedelta(hours=24)
FREE_TIER = "free"


class PaymentError(Exception):
    """Base class for rejected payment operations."""


class InvalidTierError(PaymentError):
    pass


class MalformedRequestError(PaymentError):
    pass


class PaymentNotFoundError(PaymentError):
    pass


class AlreadyProcessedError(PaymentError):
    pass


class WalletMismatchError(PaymentError):
    pass


class VerificationFailedError(PaymentError):
    pass


@dataclass(frozen=True)
class TierPricing:
    """A purchasable subscription tier."""
    amount: float
    token: str
    chain: str
    duration_months: int
    license_tier: str = "pro"


DEFAULT_TIERS: Dict[str, TierPricing] = {
    "pro_monthly": TierPricing(amount=0.5, token="USDT", chain="base", duration_months=1),
}


@dataclass(frozen=True)
class PaymentDescriptor:
    protocol: str
    version: str
    request_id: str
    recipient: str
    amount: float
    token: str
    chain: str
    description: str
    callback_url: str
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "protocol": self.protocol,
            "version": self.version,
            "request_id": self.request_id,
            "recipient": self.recipient,
            "amount": self.amount,
            "token": self.token,
            "chain": self.chain,
            "description": self.description,
            "callback_url": self.callback_url,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class VerificationResult:
    success: bool
    tier: str
    valid_until: Optional[datetime]


@dataclass(frozen=True)
class LicenseStatus:
    valid: bool
    tier: str
    expires: Optional[datetime] = None
    days_remaining: Optional[int] = None
    expired: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "tier": self.tier,
            "expires": self.expires.isoformat() if self.expires else None,
            "days_remaining": self.days_remaining,
            "expired": self.expired,
        }


class SettlementVerifier(Protocol):
    def verify(self, settlement_ref: str, request: PaymentRequest) -> bool:
        ...


class FormatOnlyVerifier:
    """Accepts any settlement reference that looks like a transaction hash."""

    min_length = 32

    def verify(self, settlement_ref: str, request: PaymentRequest) -> bool:
        logger.info("Verifying settlement %s (format check only)", settlement_ref)
        return bool(settlement_ref) and len(settlement_ref) > self.min_length


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class LicenseManager:
    """Payment request issuance, verification and license grants."""

    def __init__(
        self,
        repository: LedgerRepository,
        recipient: str,
        callback_url: str,
        tiers: Optional[Dict[str, TierPricing]] = None,
        verifier: Optional[SettlementVerifier] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.repository = repository
        self.recipient = recipient
        self.callback_url = callback_url
        self.tiers = tiers if tiers is not None else dict(DEFAULT_TIERS)
        self.verifier = verifier or FormatOnlyVerifier()
        self.clock = clock

    def create_request(self, wallet: str, tier: str = "pro_monthly") -> PaymentDescriptor:
        """Persist a pending payment request and describe how to pay it.

        Raises:
            InvalidTierError: If the tier is not in the pricing table
            MalformedRequestError: If no wallet is given
        """
        pricing = self.tiers.get(tier)
        if pricing is None:
            raise InvalidTierError(f"Invalid tier: {tier}")
        if not wallet:
            raise MalformedRequestError("wallet is required")

        now = self.clock()
        request_id = str(uuid.uuid4())
        self.repository.insert_payment_request(PaymentRequest(
            request_id=request_id,
            wallet=wallet,
            amount=pricing.amount,
            token=pricing.token,
            tier=tier,
            status=PaymentStatus.PENDING,
            created_at=now,
        ))

        return PaymentDescriptor(
            protocol="x402",
            version="1.0",
            request_id=request_id,
            recipient=self.recipient,
            amount=pricing.amount,
            token=pricing.token,
            chain=pricing.chain,
            description=f"Cost Governor - {tier} subscription",
            callback_url=self.callback_url,
            expires_at=now + PAYMENT_REQUEST_VALIDITY,
        )

    def verify(self, request_id: str, settlement_ref: str, wallet: str) -> VerificationResult:
        """Verify a reported payment and grant the license it pays for.

        Completing the request, recording the transaction and granting the
        license commit together; a failure in any of them leaves the request
        pending so the payment can be verified again.

        Raises:
            MalformedRequestError: If any argument is missing
            PaymentNotFoundError: If the request id is unknown
            AlreadyProcessedError: If the request was already completed or
                the settlement reference was already used
            WalletMismatchError: If the wallet differs from the requester
            VerificationFailedError: If the settlement check rejects it
        """
        if not request_id or not settlement_ref or not wallet:
            raise MalformedRequestError("request_id, settlement_ref and wallet are required")

        request = self.repository.get_payment_request(request_id)
        if request is None:
            raise PaymentNotFoundError("Payment request not found")
        if request.status == PaymentStatus.COMPLETED:
            raise AlreadyProcessedError("Payment already processed")
        if request.wallet != wallet:
            raise WalletMismatchError("Wallet does not match the payment request")
        if self.repository.settlement_ref_exists(settlement_ref):
            raise AlreadyProcessedError("Settlement reference already used")

        if not self.verifier.verify(settlement_ref, request):
            raise VerificationFailedError("Transaction verification failed")

        pricing = self.tiers.get(request.tier)
        if pricing is None:
            raise InvalidTierError(f"Invalid tier: {request.tier}")

        now = self.clock()
        try:
            granted = self.repository.complete_payment(
                request_id,
                PaymentTransaction(
                    wallet=wallet,
                    settlement_ref=settlement_ref,
                    amount=request.amount,
                    token=request.token,
                    chain=pricing.chain,
                    timestamp=now,
                    tier_granted=pricing.license_tier,
                    duration_months=pricing.duration_months,
                ),
                completed_at=now,
                grant=self._extension(
                    wallet,
                    pricing.license_tier,
                    pricing.duration_months,
                    now,
                    payment_ref=settlement_ref,
                    payment_amount=request.amount,
                    payment_token=request.token,
                ),
            )
        except DuplicateSettlementError as e:
            # Another payment recorded the same reference after our check
            raise AlreadyProcessedError("Settlement reference already used") from e
        if granted is None:
            # Another verification won the race
            raise AlreadyProcessedError("Payment already processed")

        logger.info("Granted %s license to %s until %s", pricing.license_tier, wallet, granted.paid_until)
        return VerificationResult(success=True, tier=pricing.license_tier, valid_until=granted.paid_until)

    def grant_license(
        self,
        wallet: str,
        tier: str,
        duration_months: int,
        payment_ref: Optional[str] = None,
        payment_amount: Optional[float] = None,
        payment_token: Optional[str] = None,
    ) -> datetime:
        """Grant a license or extend it.

        A still-valid license is extended from its current expiry; an expired
        or missing one starts a new window from now.
        """
        now = self.clock()
        granted = self.repository.extend_license(
            wallet,
            self._extension(
                wallet,
                tier,
                duration_months,
                now,
                payment_ref=payment_ref,
                payment_amount=payment_amount,
                payment_token=payment_token,
            ),
            now,
        )
        return granted.paid_until

    @staticmethod
    def _extension(
        wallet: str,
        tier: str,
        duration_months: int,
        now: datetime,
        payment_ref: Optional[str] = None,
        payment_amount: Optional[float] = None,
        payment_token: Optional[str] = None,
    ) -> LicenseGrant:
        """Build the grant that adds ``duration_months`` to a wallet's license.

        Expiry is always computed from the period anchor and the total months
        bought, so a window opened on the 31st keeps ending on the last day
        of each month instead of drifting to the 28th after February.
        """
        def grant(existing: Optional[AgentLicense]) -> AgentLicense:
            if existing and existing.paid_until and existing.paid_until > now:
                if existing.period_start is not None:
                    period_start = existing.period_start
                    months = existing.months_purchased + duration_months
                else:
                    period_start = existing.paid_until
                    months = duration_months
            else:
                period_start = now
                months = duration_months

            return AgentLicense(
                wallet=wallet,
                tier=tier,
                paid_until=add_months(period_start, months),
                last_payment_ref=payment_ref,
                last_payment_amount=payment_amount,
                last_payment_token=payment_token,
                period_start=period_start,
                months_purchased=months,
            )

        return grant

    def has_valid_license(self, wallet: str) -> LicenseStatus:
        agent_license = self.repository.get_license(wallet) if wallet else None
        if agent_license is None or agent_license.paid_until is None:
            return LicenseStatus(valid=False, tier=FREE_TIER)

        now = self.clock()
        if agent_license.paid_until > now:
            remaining = (agent_license.paid_until - now).total_seconds() / 86400
            return LicenseStatus(
                valid=True,
                tier=agent_license.tier,
                expires=agent_license.paid_until,
                days_remaining=math.ceil(remaining),
            )
        return LicenseStatus(valid=False, tier=FREE_TIER, expires=agent_license.paid_until, expired=True)

    def payment_stats(self) -> Dict[str, float]:
        return self.repository.get_payment_stats(self.clock())
