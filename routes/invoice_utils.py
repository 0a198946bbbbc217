"""
Invoice creation and voiding.

Creation takes stock with guarded decrements and books one Invoice entry
(debit grand total, credit amount paid). Voiding never deletes ledger history:
it books a Reversal entry with debit and credit swapped, restores stock and
backs the invoice out of the customer's totals.
"""
import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update

from models import db, Customer, Invoice, InvoiceItem, LedgerType
from .concurrency import serialized, atomic, ledger_key, sequence_key
from .errors import NotFoundError, StateError, ValidationError
from .ledger_utils import lock_customer, post_entry, previous_balance
from .sequence_utils import brand_prefix, next_invoice_no, invoice_sequence_name
from .stock_utils import consume_good_stock, get_product_or_404, restore_good_stock, unit_price_for_sale
from .utils import log_action, parse_amount, parse_id, parse_qty, to_decimal

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')
PRICE_TYPES = ('Retail', 'Dealer')
CONFIRMED = 'Confirmed'
CANCELLED = 'Cancelled'


def get_invoice_or_404(invoice_id, fresh=False):
    stmt = select(Invoice).where(Invoice.id == invoice_id)
    if fresh:
        stmt = stmt.execution_options(populate_existing=True)
    invoice = db.session.execute(stmt).scalar_one_or_none()
    if invoice is None:
        raise NotFoundError('Invoice not found')
    return invoice


def _parse_lines(items):
    if not isinstance(items, list) or not items:
        raise ValidationError('No items in invoice')
    lines = []
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError('Each invoice item must be an object')
        try:
            product = get_product_or_404(parse_id(raw.get('product_id'), 'product_id'))
        except NotFoundError as e:
            raise ValidationError(e.message)
        qty = parse_qty(raw.get('qty'), f'qty for {product.model_name}', minimum=1)
        price = raw.get('price')
        lines.append((product.id, qty, None if price in (None, '') else parse_amount(price, 'price')))
    return lines


def create_invoice(customer_id, brand, items, actor, price_type='Retail', discount=0, rebate=0,
                   paid=0, note=None):
    brand_prefix(brand)
    if price_type not in PRICE_TYPES:
        raise ValidationError(f'price_type must be one of: {", ".join(PRICE_TYPES)}')
    if db.session.get(Customer, customer_id) is None:
        raise ValidationError('Invalid customer')
    lines = _parse_lines(items)
    discount = parse_amount(discount, 'discount')
    rebate = parse_amount(rebate, 'rebate')
    paid = parse_amount(paid, 'paid_amount')

    with serialized(ledger_key(customer_id, brand), sequence_key(invoice_sequence_name(brand))), atomic():
        customer = lock_customer(customer_id)
        invoice = Invoice(
            invoice_no=next_invoice_no(brand),
            customer_id=customer.id,
            brand=brand,
            price_type=price_type,
            note=note,
            status=CONFIRMED,
            date=datetime.utcnow(),
            created_by_id=getattr(actor, 'id', None),
        )

        sub_total = ZERO
        total_qty = 0
        for product_id, qty, price in lines:
            product = consume_good_stock(product_id, qty)
            unit_price = to_decimal(price if price is not None else unit_price_for_sale(product, price_type))
            line_total = to_decimal(unit_price * qty)
            invoice.items.append(InvoiceItem(
                product_id=product.id,
                product_name=product.model_name,
                type=product.type,
                qty=qty,
                price=unit_price,
                total=line_total,
            ))
            sub_total += line_total
            total_qty += qty

        grand_total = sub_total - discount - rebate
        if grand_total < 0:
            raise ValidationError('Discount and rebate exceed the invoice subtotal')

        invoice.total_qty = total_qty
        invoice.sub_total = sub_total
        invoice.discount = discount
        invoice.rebate = rebate
        invoice.grand_total = grand_total
        invoice.paid_amount = paid
        invoice.dues = grand_total - paid
        invoice.previous_dues = previous_balance(customer, brand)
        db.session.add(invoice)
        db.session.flush()

        post_entry(customer, brand, LedgerType.INVOICE, debit=grand_total, credit=paid,
                   description=f'Invoice {invoice.invoice_no}', author=actor,
                   reference_id=invoice.id, reference_no=invoice.invoice_no,
                   sales_qty=total_qty, sales_amount=grand_total, payment=paid)
        customer.last_invoice_no = invoice.invoice_no
        customer.last_invoice_qty = total_qty
        customer.last_invoice_amount = grand_total
        customer.last_invoice_date = invoice.date
        log_action(f'Created invoice {invoice.invoice_no} for {customer.name}: {grand_total:,.2f}.', user=actor)

    logger.info("Invoice %s created (customer=%s total=%s paid=%s)",
                invoice.invoice_no, customer_id, grand_total, paid)
    return invoice


def void_invoice(invoice_id, actor, reason=None):
    invoice = get_invoice_or_404(invoice_id)
    customer_id, brand = invoice.customer_id, invoice.brand

    with serialized(ledger_key(customer_id, brand)), atomic():
        invoice = get_invoice_or_404(invoice_id, fresh=True)
        if invoice.status == CANCELLED:
            raise StateError(f'Invoice {invoice.invoice_no} is already cancelled')
        result = db.session.execute(
            update(Invoice)
            .where(Invoice.id == invoice_id, Invoice.status == CONFIRMED)
            .values(status=CANCELLED)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StateError(f'Invoice {invoice.invoice_no} is already cancelled')
        db.session.expire(invoice, ['status'])

        for item in invoice.items:
            restore_good_stock(item.product_id, item.qty)

        customer = lock_customer(customer_id)
        grand_total = to_decimal(invoice.grand_total)
        paid = to_decimal(invoice.paid_amount)
        # Swapped sides of the original Invoice entry
        post_entry(customer, brand, LedgerType.REVERSAL, debit=paid, credit=grand_total,
                   description=f'Reversal of invoice {invoice.invoice_no}'
                               + (f': {reason}' if reason else ''),
                   author=actor, reference_id=invoice.id, reference_no=invoice.invoice_no,
                   sales_qty=-invoice.total_qty, sales_amount=-grand_total, payment=-paid)

        invoice.voided_at = datetime.utcnow()
        invoice.voided_by = getattr(actor, 'id', None)
        invoice.void_reason = (reason or '')[:500] or None
        log_action(f'Voided invoice {invoice.invoice_no}.', user=actor)

    logger.info("Invoice %s voided", invoice.invoice_no)
    return invoice
