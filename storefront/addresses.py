"""
Address resolution for checkout.

Turns an address selection (existing id or inline payload) into a persisted
address row owned by the user. Never returns another user's address.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import models, schemas
from .errors import InvalidAddressError

logger = logging.getLogger(__name__)

SHIPPING = "shipping"
BILLING = "billing"

ADDRESS_MODELS = {
    SHIPPING: models.ShippingAddress,
    BILLING: models.BillingAddress,
}


def get_address(db: Session, address_id: int, user_id: int, kind: str = SHIPPING):
    """Return the address if it exists and belongs to ``user_id``, else None."""
    model = ADDRESS_MODELS[kind]
    return db.query(model).filter(model.id == address_id, model.user_id == user_id).first()


def get_default_address(db: Session, user_id: int, kind: str = SHIPPING):
    model = ADDRESS_MODELS[kind]
    return (
        db.query(model)
        .filter(model.user_id == user_id, model.is_default.is_(True))
        .order_by(model.created_at.desc())
        .first()
    )


def create_address(db: Session, user_id: int, fields: schemas.AddressFields, is_default: bool = False, kind: str = SHIPPING):
    """
    Create an address for ``user_id``.

    When it becomes the default, the previous default is cleared first so the
    user never has two defaults at once.
    """
    model = ADDRESS_MODELS[kind]
    if is_default:
        (
            db.query(model)
            .filter(model.user_id == user_id, model.is_default.is_(True))
            .update({model.is_default: False}, synchronize_session="fetch")
        )
    address = model(user_id=user_id, is_default=is_default, **fields.model_dump())
    db.add(address)
    db.flush()
    logger.info(f"Created {kind} address {address.id} for user {user_id}")
    return address


def resolve(db: Session, user_id: int, selection: schemas.AddressSelection, kind: str = SHIPPING):
    """
    Resolve ``selection`` to an address row owned by ``user_id``.

    Raises:
        InvalidAddressError: if a referenced address does not belong to the user
    """
    if selection.address_id is not None:
        address = get_address(db, selection.address_id, user_id, kind)
        if address is None:
            raise InvalidAddressError(f"Invalid {kind} address")
        return address
    return create_address(db, user_id, selection.address, selection.is_default, kind)


def snapshot(address) -> Optional[schemas.AddressSnapshot]:
    if address is None:
        return None
    return schemas.AddressSnapshot.model_validate(address)
