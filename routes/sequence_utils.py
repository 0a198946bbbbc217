"""
Document numbering (replacement cases, invoices) from per-brand counters.

Numbers come from a locked counter row, never from counting existing
documents, so concurrent creators cannot be handed the same number. The
increment belongs to the caller's transaction: a rollback gives the number back.
"""
import logging

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from models import db, SequenceCounter
from .errors import ValidationError

logger = logging.getLogger(__name__)


def brand_prefix(brand):
    """Return the configured number prefix for a brand or raise ValidationError."""
    brands = current_app.config.get('BRANDS', {})
    if not brand or brand not in brands:
        raise ValidationError(f'Unknown brand {brand!r}. Expected one of: {", ".join(brands)}')
    return brands[brand]


def next_sequence(name):
    """Increment and return the counter called ``name`` (first value is 1)."""
    result = db.session.execute(
        update(SequenceCounter)
        .where(SequenceCounter.name == name)
        .values(current_value=SequenceCounter.current_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        try:
            with db.session.begin_nested():
                db.session.add(SequenceCounter(name=name, current_value=1))
            logger.info("Created sequence counter %s", name)
            return 1
        except IntegrityError:
            # Another writer created the row first; increment theirs instead
            db.session.execute(
                update(SequenceCounter)
                .where(SequenceCounter.name == name)
                .values(current_value=SequenceCounter.current_value + 1)
                .execution_options(synchronize_session=False)
            )

    value = db.session.execute(
        select(SequenceCounter.current_value).where(SequenceCounter.name == name)
    ).scalar_one()
    logger.debug("Allocated %s=%s", name, value)
    return value


def replacement_sequence_name(brand):
    return f'replacement:{brand_prefix(brand)}'


def invoice_sequence_name(brand):
    return f'invoice:{brand_prefix(brand)}'


def next_replacement_no(brand):
    prefix = brand_prefix(brand)
    return f'{prefix}-RPL-{next_sequence(replacement_sequence_name(brand)):05d}'


def next_invoice_no(brand):
    prefix = brand_prefix(brand)
    return f'{prefix}-{next_sequence(invoice_sequence_name(brand)):06d}'
