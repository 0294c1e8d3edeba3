"""
Authoritative pricing lookups.

The client submits the price it displayed; the server only charges when that
price equals the most recent active Price row of an active product.
"""

from datetime import datetime, timezone
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.errors import InvalidProduct
from storefront.models import Coupon, Price, Product

logger = structlog.get_logger(component="pricing")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None or value.utcoffset() is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_active_price(db: Session, product_id: str) -> Optional[Price]:
    """Return the single most recent active price of a product, if any."""
    stmt = (
        select(Price)
        .where(Price.product_id == product_id, Price.active.is_(True))
        .order_by(Price.created_at.desc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def resolve_product(db: Session, product_id: str, submitted_price: int) -> Tuple[Product, Price]:
    """
    Fetch an active product together with its authoritative price.

    Raises InvalidProduct when the product is unknown or inactive, has no
    active price, or the submitted price differs from the authoritative one.
    """
    product = db.get(Product, product_id)
    if product is None or not product.active:
        logger.warning("product_unavailable", product_id=product_id)
        raise InvalidProduct("Invalid product or price changed")

    price = get_active_price(db, product_id)
    if price is None or price.amount != submitted_price:
        logger.warning(
            "price_mismatch",
            product_id=product_id,
            submitted=submitted_price,
            authoritative=price.amount if price else None,
        )
        raise InvalidProduct("Invalid product or price changed")

    return product, price


def resolve_addons(db: Session, product_ids: List[str]) -> List[Tuple[Product, Price]]:
    """Resolve selected add-on products; every one must be active and priced."""
    addons = []
    for product_id in product_ids:
        product = db.get(Product, product_id)
        price = get_active_price(db, product_id) if product is not None else None
        if product is None or not product.active or price is None:
            logger.warning("addon_unavailable", product_id=product_id)
            raise InvalidProduct(f"Add-on product {product_id} is not available")
        addons.append((product, price))
    return addons


def coupon_is_applicable(coupon: Coupon, product_id: str, now: Optional[datetime] = None) -> bool:
    """Active, unexpired, under its use cap and attached to the product."""
    now = now or datetime.now(timezone.utc)
    if not coupon.active:
        return False
    if coupon.expires_at is not None and _as_utc(coupon.expires_at) <= now:
        return False
    if coupon.max_uses is not None and coupon.usage_count >= coupon.max_uses:
        return False
    return any(product.id == product_id for product in coupon.products)


def find_applicable_coupon(
    db: Session, code: str, product_id: str, now: Optional[datetime] = None
) -> Optional[Coupon]:
    coupon = db.execute(
        select(Coupon).where(Coupon.code == code.strip().upper())
    ).scalars().first()
    if coupon is None or not coupon_is_applicable(coupon, product_id, now):
        return None
    return coupon
