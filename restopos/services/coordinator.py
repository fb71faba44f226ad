"""Selección de oferta para un carrito.

El coordinador re-evalúa todo el catálogo en cada evento (carrito, teléfono,
catálogo, código promocional), guarda los resultados por oferta y mantiene la
oferta seleccionada junto con sus líneas gratis. Cada ``recompute`` produce un
``CoordinatorState`` nuevo; el anterior nunca se modifica.
"""
import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from ..core.config import settings
from ..core.offer_types import OfferDefinition, OfferType
from ..core.schemas import CartItem, EligibilityResult, SessionOfferLock, cart_total
from .catalog import MenuIndex
from .customers import best_effort, normalize_phone, per_pass
from .discounts import apply_free_item_choice, money_text
from .eligibility import EvaluationContext, VisitLookup, evaluate, local_now
from .free_items import reconcile, strip_free
from .session_lock import SessionLockStore, offer_from_snapshot

logger = logging.getLogger("restopos.coordinator")

ZERO = Decimal("0")
USAGE_RECORDED_MSG = "An offer has already been applied to this session"
BENEFIT_USED_MSG = "Offer already applied to an earlier order in this session"
BILLED_AT_CLOSE_MSG = "Discount will be applied to the final bill"


# ---------- eventos ----------
class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class CartChanged(_Event):
    items: Tuple[CartItem, ...] = ()


class PhoneChanged(_Event):
    phone: Optional[str] = None


class CatalogChanged(_Event):
    offers: Tuple[OfferDefinition, ...] = ()
    menu: Optional[MenuIndex] = None


class PromoCodeChanged(_Event):
    code: Optional[str] = None


Event = Union[CartChanged, PhoneChanged, CatalogChanged, PromoCodeChanged]


class OfferSuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str  # almost_there | unlocked
    offer_id: int
    name: str
    message: str
    amount_needed: Decimal = ZERO
    savings: Decimal = ZERO


class CoordinatorState(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    cart: Tuple[CartItem, ...] = ()
    customer_phone: Optional[str] = None
    offers: Tuple[OfferDefinition, ...] = ()
    menu: MenuIndex = Field(default_factory=MenuIndex)
    results: Dict[int, EligibilityResult] = Field(default_factory=dict)
    selected_offer_id: Optional[int] = None
    applied: Optional[EligibilityResult] = None
    session_lock: Optional[SessionOfferLock] = None
    usage_recorded: bool = False
    # la oferta ligada no descuenta en esta orden (ya usada o se cobra al cierre)
    withheld: Optional[str] = None
    message: Optional[str] = None
    generation: int = 0

    @property
    def cart_total(self) -> Decimal:
        return cart_total(self.cart)

    @property
    def discount(self) -> Decimal:
        if self.applied is None or not self.applied.is_eligible:
            return ZERO
        return self.applied.discount

    @property
    def final_total(self) -> Decimal:
        return max(ZERO, self.cart_total - self.discount)

    @property
    def selected_offer(self) -> Optional[OfferDefinition]:
        return next((o for o in self.offers if o.id == self.selected_offer_id), None)

    @property
    def selection_enabled(self) -> bool:
        return self.session_lock is None and not self.usage_recorded


def _threshold(offer: OfferDefinition) -> Optional[Decimal]:
    if offer.kind in (OfferType.MIN_ORDER_DISCOUNT, OfferType.CART_THRESHOLD_ITEM):
        return offer.conditions.threshold_amount
    return getattr(offer.conditions, "min_amount", None)


class OfferSelectionCoordinator:
    def __init__(
        self,
        offers: Sequence[OfferDefinition] = (),
        menu: Optional[MenuIndex] = None,
        *,
        session_id: Optional[int] = None,
        lock_store: Optional[SessionLockStore] = None,
        usage_check: Optional[Callable[[int], bool]] = None,
        visit_lookup: Optional[VisitLookup] = None,
        offer_loader: Optional[Callable[[int], Optional[OfferDefinition]]] = None,
        clock: Callable[[], datetime] = local_now,
        by_guest: bool = True,
    ):
        self.session_id = session_id
        self.by_guest = by_guest
        self._lock_store = lock_store
        self._usage_check = usage_check
        self._lookup = visit_lookup
        self._offer_loader = offer_loader
        self._clock = clock
        self._generation = 0
        self._choices: Dict[int, int] = {}
        # entradas pendientes; el estado publicado sólo cambia al terminar una pasada
        self._cart: Tuple[CartItem, ...] = ()
        self._phone: Optional[str] = None
        self._promo: Optional[str] = None
        self._offers: Tuple[OfferDefinition, ...] = tuple(offers)
        self._menu = menu or MenuIndex()
        self._state = CoordinatorState(offers=self._offers, menu=self._menu)

    @property
    def state(self) -> CoordinatorState:
        return self._state

    # ---------- reducer ----------
    def _apply(self, event: Event) -> None:
        if isinstance(event, CartChanged):
            self._cart = strip_free(event.items)
        elif isinstance(event, PhoneChanged):
            self._phone = normalize_phone(event.phone)
        elif isinstance(event, CatalogChanged):
            self._offers = tuple(event.offers)
            if event.menu is not None:
                self._menu = event.menu
        elif isinstance(event, PromoCodeChanged):
            self._promo = (event.code or "").strip() or None
        else:
            raise TypeError(f"unsupported event: {type(event).__name__}")

    # lecturas de BD fuera del event loop
    async def _read_lock(self) -> Optional[SessionOfferLock]:
        if self._lock_store is None or self.session_id is None:
            return self._state.session_lock
        return await run_in_threadpool(self._lock_store.read, self.session_id)

    async def _read_usage(self) -> bool:
        if self._usage_check is None or self.session_id is None:
            return self._state.usage_recorded
        return bool(await run_in_threadpool(self._usage_check, self.session_id))

    @staticmethod
    def _missing_lock(offers: Sequence[OfferDefinition], lock: Optional[SessionOfferLock]) -> bool:
        return lock is not None and not any(o.id == lock.locked_offer_id for o in offers)

    def _with_locked(
        self,
        offers: Tuple[OfferDefinition, ...],
        lock: Optional[SessionOfferLock],
        loaded: Optional[OfferDefinition] = None,
    ) -> Tuple[OfferDefinition, ...]:
        """Agrega la oferta ligada aunque ya no esté activa o no aplique al canal."""
        if not self._missing_lock(offers, lock):
            return offers
        logger.info(
            "locked offer %s missing from catalog for session %s; using %s definition",
            lock.locked_offer_id,
            self.session_id,
            "stored" if loaded is not None else "snapshot",
        )
        return offers + (loaded or offer_from_snapshot(lock.locked_offer_snapshot),)

    async def recompute(self, *events: Event) -> CoordinatorState:
        """Aplica los eventos y re-evalúa todas las ofertas.

        Si otra pasada arranca antes de que ésta termine, su resultado se
        descarta y se devuelve el estado vigente.
        """
        for event in events:
            self._apply(event)
        self._generation += 1
        gen = self._generation

        cart, phone, offers, menu = self._cart, self._phone, self._offers, self._menu
        lock = await self._read_lock()
        usage = await self._read_usage()
        if self._missing_lock(offers, lock):
            loaded = None
            if self._offer_loader is not None:
                loaded = await run_in_threadpool(self._offer_loader, lock.locked_offer_id)
            offers = self._with_locked(offers, lock, loaded)

        total = cart_total(cart)
        lookup = per_pass(best_effort(self._lookup)) if self._lookup is not None else None
        ctx = EvaluationContext(
            now=self._clock(),
            menu=menu,
            visit_lookup=lookup,
            promo_code=self._promo,
            locked_offer_id=lock.locked_offer_id if lock is not None else None,
        )

        evaluated = await asyncio.gather(
            *(evaluate(offer, cart, total, phone, context=ctx) for offer in offers)
        )
        if gen != self._generation:
            logger.debug("recompute pass %d superseded by %d", gen, self._generation)
            return self._state

        results = {offer.id: res for offer, res in zip(offers, evaluated)}

        selected = self._state.selected_offer_id
        if lock is not None:
            selected = lock.locked_offer_id
        elif selected is not None:
            res = results.get(selected)
            if res is None or not res.is_eligible:
                logger.info(
                    "auto-deselected offer %s: %s", selected, res.reason if res else "no longer in catalog"
                )
                self._choices.pop(selected, None)
                selected = None

        base = CoordinatorState(
            cart=cart,
            customer_phone=phone,
            offers=offers,
            menu=menu,
            results=results,
            session_lock=lock,
            usage_recorded=usage,
            message=USAGE_RECORDED_MSG if usage and lock is None else None,
            generation=gen,
        )
        self._state = self._resolve(base, selected)
        return self._state

    def _resolve(self, st: CoordinatorState, selected: Optional[int]) -> CoordinatorState:
        """Fija la selección y reconcilia las líneas gratis en un solo paso."""
        result = st.results.get(selected) if selected is not None else None
        applied = result if result is not None and result.is_eligible else None
        offer = next((o for o in st.offers if o.id == selected), None) if selected is not None else None

        withheld = None
        lock = st.session_lock
        if lock is not None and selected == lock.locked_offer_id:
            if offer is not None and offer.application_type == "session_level":
                withheld = BILLED_AT_CLOSE_MSG
            elif st.usage_recorded:
                withheld = BENEFIT_USED_MSG
        if withheld is not None:
            applied = None

        if applied is not None and applied.requires_user_action and selected in self._choices:
            chosen = apply_free_item_choice(offer, applied, self._choices[selected], st.cart_total) if offer else None
            if chosen is None:
                self._choices.pop(selected, None)
            else:
                applied = chosen
        return st.model_copy(
            update={
                "selected_offer_id": selected,
                "applied": applied,
                "withheld": withheld,
                "message": st.message or withheld,
                "cart": reconcile(st.cart, applied, selected),
            }
        )

    def withhold(self, reason: str) -> CoordinatorState:
        """Quita el beneficio de la orden en curso conservando la oferta ligada."""
        st = self._state
        logger.info("offer %s withheld on session %s: %s", st.selected_offer_id, self.session_id, reason)
        self._state = st.model_copy(
            update={"applied": None, "withheld": reason, "message": reason, "cart": reconcile(st.cart, None)}
        )
        return self._state

    # ---------- acciones ----------
    def _blocked(self, action: str, reason: str) -> CoordinatorState:
        logger.info("blocked %s on session %s: %s", action, self.session_id, reason)
        self._state = self._state.model_copy(update={"message": reason})
        return self._state

    def select_offer(self, offer_id: int) -> CoordinatorState:
        st = self._state
        lock = st.session_lock
        if lock is not None:
            if lock.locked_offer_id == offer_id:
                return st
            return self._blocked(
                f"select offer {offer_id}",
                f"Offer '{lock.locked_offer_snapshot.name}' is locked for this session",
            )
        if st.usage_recorded:
            return self._blocked(f"select offer {offer_id}", USAGE_RECORDED_MSG)
        result = st.results.get(offer_id)
        if result is None:
            return self._blocked(f"select offer {offer_id}", "Offer not available")
        if not result.is_eligible:
            return self._blocked(f"select offer {offer_id}", result.reason or "Offer not eligible")
        if st.selected_offer_id != offer_id:
            self._choices.pop(st.selected_offer_id, None)
        self._state = self._resolve(st.model_copy(update={"message": None}), offer_id)
        return self._state

    def deselect(self) -> CoordinatorState:
        st = self._state
        if st.session_lock is not None:
            return self._blocked("deselect", f"Offer '{st.session_lock.locked_offer_snapshot.name}' is locked for this session")
        self._choices.pop(st.selected_offer_id, None)
        self._state = self._resolve(st, None)
        return self._state

    def select_free_item(self, item_id: int) -> CoordinatorState:
        st = self._state
        result = st.results.get(st.selected_offer_id) if st.selected_offer_id is not None else None
        if result is None or not result.is_eligible or not result.requires_user_action:
            return self._blocked(f"select free item {item_id}", "No free item choice pending")
        if not any(o.id == item_id for o in result.available_free_items or []):
            return self._blocked(f"select free item {item_id}", "Item is not available as a free item")
        self._choices[st.selected_offer_id] = item_id
        self._state = self._resolve(st.model_copy(update={"message": None}), st.selected_offer_id)
        return self._state

    def bind_on_finalize(self) -> CoordinatorState:
        """Liga la oferta seleccionada a la sesión (compare-and-set).

        Si otro terminal ligó primero, se adopta su oferta sin error. Hace I/O
        síncrona: se llama desde el threadpool al finalizar la orden.
        """
        st = self._state
        if self._lock_store is None or self.session_id is None:
            return st
        current = self._lock_store.read(self.session_id)
        if current is None:
            offer = st.selected_offer
            if offer is None:
                return st
            won = self._lock_store.bind_if_unset(self.session_id, offer, self.by_guest)
            current = self._lock_store.read(self.session_id)
            if not won and current is not None:
                logger.info(
                    "session %s already bound to offer %s; adopting it instead of %s",
                    self.session_id,
                    current.locked_offer_id,
                    offer.id,
                )
        if current is None:
            return st
        if current.locked_offer_id != st.selected_offer_id:
            logger.info(
                "session %s selection %s replaced by locked offer %s",
                self.session_id,
                st.selected_offer_id,
                current.locked_offer_id,
            )
        offers = st.offers
        if self._missing_lock(offers, current):
            loaded = self._offer_loader(current.locked_offer_id) if self._offer_loader is not None else None
            offers = self._with_locked(offers, current, loaded)
        self._state = self._resolve(
            st.model_copy(update={"session_lock": current, "offers": offers}), current.locked_offer_id
        )
        return self._state

    # ---------- sugerencias ----------
    def suggestion(self) -> Optional[OfferSuggestion]:
        st = self._state
        total = st.cart_total
        ratio = settings.almost_there_ratio

        near: List[Tuple[Decimal, int, OfferDefinition]] = []
        for pos, offer in enumerate(st.offers):
            res = st.results.get(offer.id)
            if res is None or res.is_eligible or offer.config_error:
                continue
            threshold = _threshold(offer)
            if not threshold or total >= threshold or total < threshold * ratio:
                continue
            if not (res.reason or "").startswith(("Add ", "Spend ")):
                continue
            near.append((threshold - total, pos, offer))
        if near:
            short, _, offer = min(near, key=lambda t: (t[0], t[1]))
            return OfferSuggestion(
                type="almost_there",
                offer_id=offer.id,
                name=offer.name,
                amount_needed=short,
                message=f"Add {money_text(short)} more to unlock {offer.name}",
            )

        unlocked = [
            (res.discount, -pos, offer)
            for pos, offer in enumerate(st.offers)
            for res in [st.results.get(offer.id)]
            if res is not None and res.is_eligible
        ]
        if not unlocked:
            return None
        savings, _, offer = max(unlocked, key=lambda t: (t[0], t[1]))
        if savings > ZERO:
            message = f"You've unlocked {offer.name}: save {money_text(savings)}"
        else:
            message = f"You've unlocked {offer.name}"
        return OfferSuggestion(type="unlocked", offer_id=offer.id, name=offer.name, message=message, savings=savings)
