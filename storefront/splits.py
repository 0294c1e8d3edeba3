"""
Split rule resolution.

Decides how a charge's proceeds are divided between recipients:

1. A product-scoped SplitConfiguration always wins and is emitted verbatim.
2. Otherwise an active affiliate referral yields a platform/affiliate pair.
3. Otherwise no split is sent and the platform keeps everything.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.models import Affiliate, Product, SplitConfiguration

logger = structlog.get_logger(component="splits")

_HUNDRED = Decimal("100")
_SUM_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class SplitRule:
    recipient_id: str
    percentage: Decimal
    liable: bool
    charge_processing_fee: bool
    charge_remainder_fee: bool

    def to_payload(self) -> dict:
        amount = self.percentage
        return {
            "amount": int(amount) if amount == amount.to_integral_value() else float(amount),
            "recipient_id": self.recipient_id,
            "type": "percentage",
            "options": {
                "liable": self.liable,
                "charge_processing_fee": self.charge_processing_fee,
                "charge_remainder_fee": self.charge_remainder_fee,
            },
        }


@dataclass(frozen=True)
class SplitDecision:
    rules: List[SplitRule]
    affiliate: Optional[Affiliate] = None  # set only when the affiliate pair was emitted

    @property
    def has_split(self) -> bool:
        return bool(self.rules)

    def affiliate_share(self, amount: int) -> Optional[int]:
        """The affiliate's cut of `amount`, in minor units."""
        if self.affiliate is None:
            return None
        share = Decimal(amount) * Decimal(self.affiliate.commission) / _HUNDRED
        return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def to_payload(self) -> Optional[List[dict]]:
        if not self.rules:
            return None
        return [rule.to_payload() for rule in self.rules]


NO_SPLIT = SplitDecision(rules=[])


def _is_configured(configuration: Optional[SplitConfiguration]) -> bool:
    return configuration is not None and bool(configuration.active) and bool(configuration.recipients)


def configuration_rules(configuration: Optional[SplitConfiguration]) -> List[SplitRule]:
    if not _is_configured(configuration):
        return []

    rules = [
        SplitRule(
            recipient_id=row.recipient_id,
            percentage=Decimal(row.percentage),
            liable=bool(row.is_liable),
            charge_processing_fee=bool(row.charge_processing_fee),
            charge_remainder_fee=bool(row.charge_remainder_fee),
        )
        for row in configuration.recipients
    ]

    total = sum((rule.percentage for rule in rules), Decimal("0"))
    if abs(total - _HUNDRED) > _SUM_TOLERANCE:
        # accepted as configured; the remainder policy is undecided
        logger.warning(
            "split_configuration_sum_mismatch",
            configuration_id=configuration.id,
            total=str(total),
        )
    return rules


def affiliate_rules(affiliate: Affiliate, platform_recipient_id: str) -> List[SplitRule]:
    commission = Decimal(affiliate.commission)
    return [
        SplitRule(
            recipient_id=platform_recipient_id,
            percentage=_HUNDRED - commission,
            liable=True,
            charge_processing_fee=True,
            charge_remainder_fee=True,
        ),
        SplitRule(
            recipient_id=affiliate.recipient_id,
            percentage=commission,
            liable=False,
            charge_processing_fee=False,
            charge_remainder_fee=False,
        ),
    ]


def find_active_affiliate(db: Session, recipient_ref: str) -> Optional[Affiliate]:
    stmt = select(Affiliate).where(
        Affiliate.recipient_id == recipient_ref, Affiliate.active.is_(True)
    )
    return db.execute(stmt).scalars().first()


def build_split(
    product: Product,
    affiliate: Optional[Affiliate],
    platform_recipient_id: Optional[str],
) -> SplitDecision:
    """Pure part of the resolution: no I/O, deterministic given its inputs."""
    rules = configuration_rules(product.split_configuration)
    if rules:
        return SplitDecision(rules=rules)

    if affiliate is None or not affiliate.active or not affiliate.recipient_id:
        return NO_SPLIT
    if not platform_recipient_id:
        logger.info("affiliate_split_skipped", reason="platform_recipient_not_configured")
        return NO_SPLIT

    return SplitDecision(
        rules=affiliate_rules(affiliate, platform_recipient_id),
        affiliate=affiliate,
    )


def resolve_split(
    db: Session,
    product: Product,
    affiliate_ref: Optional[str],
    platform_recipient_id: Optional[str],
) -> SplitDecision:
    affiliate = None
    if affiliate_ref and not _is_configured(product.split_configuration):
        affiliate = find_active_affiliate(db, affiliate_ref)
        if affiliate is None:
            logger.info("affiliate_not_found", affiliate_ref=affiliate_ref)

    decision = build_split(product, affiliate, platform_recipient_id)
    logger.info(
        "split_resolved",
        product_id=product.id,
        rules=len(decision.rules),
        affiliate_id=decision.affiliate.id if decision.affiliate else None,
    )
    return decision
