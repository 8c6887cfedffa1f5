"""Keeps baskets within the weight cap by splitting overflow into new baskets."""

import logging
from collections.abc import Iterable, Sequence
from decimal import Decimal

from src.api.middleware.error_handler import ValidationError
from src.models.order import BasketDraft, evolve

logger = logging.getLogger(__name__)


def next_basket_number(baskets: Sequence[BasketDraft], reserved: Iterable[int] = ()) -> int:
    """Next basket number not used by ``baskets`` or listed in ``reserved``."""
    return max((*(basket.basket_number for basket in baskets), *reserved), default=0) + 1


def ensure_unique_numbers(baskets: Sequence[BasketDraft]) -> None:
    """Raise ValidationError if two baskets share a number."""
    seen: set[int] = set()
    for basket in baskets:
        if basket.basket_number in seen:
            raise ValidationError(
                message=f"Basket number {basket.basket_number} is used more than once",
                details=[{"loc": ["baskets", str(basket.basket_number)], "msg": "duplicate basket number", "type": "value_error"}],
            )
        seen.add(basket.basket_number)


def add_basket(baskets: Sequence[BasketDraft]) -> list[BasketDraft]:
    """Append an empty basket with no services selected."""
    return [*baskets, BasketDraft(basket_number=next_basket_number(baskets))]


def apply_weight(
    baskets: Sequence[BasketDraft],
    basket_number: int,
    new_weight: Decimal,
    max_weight: Decimal,
    reserved: Iterable[int] = (),
) -> list[BasketDraft]:
    """Set a basket's weight, splitting once if it goes over the cap.

    Within the cap the basket is updated in place. Over the cap, the basket
    is held at ``max_weight`` and a new basket numbered after the current
    highest (``reserved`` included) takes the excess along with a copy of
    the selection and notes.
    Only one split happens per call, so an excess that is itself over the cap
    needs another call (see ``normalize_baskets``).

    Args:
        baskets: Current baskets.
        basket_number: Basket being weighed.
        new_weight: Weight entered for it, in kg.
        max_weight: Per-basket cap, in kg.
        reserved: Numbers a new basket must not take, such as baskets an
            earlier version of the order had.

    Returns:
        list[BasketDraft]: The updated baskets.

    Raises:
        ValidationError: If the weight is negative, the basket is unknown or
            its number is not unique.
    """
    ensure_unique_numbers(baskets)
    if new_weight < 0:
        raise ValidationError(
            message="Basket weight cannot be negative",
            details=[{"loc": ["baskets", str(basket_number), "weight_kg"], "msg": "negative weight", "type": "value_error"}],
        )

    index = next(
        (i for i, basket in enumerate(baskets) if basket.basket_number == basket_number),
        None,
    )
    if index is None:
        raise ValidationError(message=f"Basket {basket_number} does not exist")

    result = list(baskets)
    current = result[index]

    if new_weight <= max_weight:
        result[index] = evolve(current, weight_kg=new_weight)
        return result

    excess = new_weight - max_weight
    result[index] = evolve(current, weight_kg=max_weight)
    overflow = BasketDraft(
        basket_number=next_basket_number(result, reserved),
        weight_kg=excess,
        notes=current.notes,
        selection=current.selection,
    )
    result.append(overflow)
    logger.debug(
        "Split basket %d at %s kg; basket %d carries %s kg",
        basket_number,
        max_weight,
        overflow.basket_number,
        excess,
    )
    return result


def normalize_baskets(
    baskets: Sequence[BasketDraft],
    max_weight: Decimal,
    reserved: Iterable[int] = (),
) -> list[BasketDraft]:
    """Split every over-cap basket until all of them fit.

    Total weight is preserved and every resulting basket is within the cap.
    New baskets are numbered above every number in ``baskets`` and
    ``reserved``.

    Raises:
        ValidationError: If two baskets share a number.
    """
    ensure_unique_numbers(baskets)
    reserved = tuple(reserved)
    result = list(baskets)
    while True:
        heavy = next((basket for basket in result if basket.weight_kg > max_weight), None)
        if heavy is None:
            return result
        result = apply_weight(result, heavy.basket_number, heavy.weight_kg, max_weight, reserved)
