import logging
from decimal import Decimal

from sqlalchemy import update

from models import db, Product
from .errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STOCK_BUCKETS = {
    'good': 'good_qty',
    'bad': 'bad_qty',
    'damage': 'damage_qty',
    'repair': 'repair_qty',
}


def get_product_or_404(product_id):
    product = db.session.get(Product, product_id) if product_id is not None else None
    if product is None:
        raise NotFoundError(f'Product not found: {product_id}')
    return product


def apply_stock_delta(product_id, good=0, bad=0, damage=0, repair=0):
    """
    Move a product's stock buckets by the given amounts in one SQL UPDATE.

    Decrements carry a ``bucket >= amount`` guard, so the row is left untouched
    (and ValidationError raised) instead of going negative. Returns the product
    with the changed buckets reloaded.
    """
    requested = {'good': good, 'bad': bad, 'damage': damage, 'repair': repair}
    deltas = {STOCK_BUCKETS[k]: int(v) for k, v in requested.items() if v}
    product = get_product_or_404(product_id)
    if not deltas:
        return product

    stmt = update(Product).where(Product.id == product_id)
    for field, delta in deltas.items():
        column = getattr(Product, field)
        if delta < 0:
            stmt = stmt.where(column >= -delta)
    stmt = stmt.values(**{field: getattr(Product, field) + delta for field, delta in deltas.items()})

    result = db.session.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount == 0:
        db.session.refresh(product)
        short = ', '.join(
            f'{field} {getattr(product, field)} < {-delta}'
            for field, delta in deltas.items() if delta < 0 and getattr(product, field) < -delta
        )
        raise ValidationError(f'Insufficient stock for {product.model_name} ({short})')

    db.session.expire(product, list(deltas))
    logger.debug("Stock delta for product %s: %s", product_id, deltas)
    return product


def consume_good_stock(product_id, qty):
    """Take sellable units out of stock; raises ValidationError when short."""
    product = get_product_or_404(product_id)
    if qty <= 0:
        raise ValidationError('Quantity must be positive')
    try:
        return apply_stock_delta(product_id, good=-qty)
    except ValidationError:
        raise ValidationError(f'Insufficient stock for {product.model_name}. Available: {product.good_qty}')


def restore_good_stock(product_id, qty):
    return apply_stock_delta(product_id, good=qty)


def unit_price_for_credit(product):
    """Dealer price when set, else sales price, else zero."""
    for price in (product.dealer_price, product.sales_price):
        if price is not None and price > 0:
            return price
    return Decimal('0.00')


def unit_price_for_sale(product, price_type):
    if price_type == 'Dealer' and product.dealer_price and product.dealer_price > 0:
        return product.dealer_price
    return product.sales_price or Decimal('0.00')
