from typing import Optional, Sequence, Tuple

from ..core.schemas import CartItem, EligibilityResult


def strip_free(cart: Sequence[CartItem]) -> Tuple[CartItem, ...]:
    return tuple(ln for ln in cart if not ln.is_free)


def reconcile(
    cart: Sequence[CartItem],
    eligibility: Optional[EligibilityResult],
    offer_id: Optional[int] = None,
) -> Tuple[CartItem, ...]:
    """Reemplaza de golpe el grupo de líneas gratis del carrito.

    Quita todas las líneas ``is_free`` y, si la oferta otorga productos, agrega
    el nuevo grupo ligado a ``offer_id``.
    """
    base = strip_free(cart)
    if eligibility is None or not eligibility.is_eligible or not eligibility.free_items:
        return base
    granted = tuple(
        ln.model_copy(update={"is_free": True, "linked_offer_id": offer_id if offer_id is not None else ln.linked_offer_id})
        for ln in eligibility.free_items
    )
    return base + granted
