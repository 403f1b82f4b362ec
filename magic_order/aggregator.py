"""
Order Aggregator - owns the draft order cards of the current analysis.

ingest(results) replaces the card set; update/delete/add_item are the only
ways the UI changes it. Completeness and totals are recomputed after every
change.

Grouping:
- client id present (and known to the catalog) -> one card per id, items
  appended in original order
- no id -> one card per position, never merged

Complete card:
- client id set AND matchConfidence == high
- at least one item (zero-item groups are kept but cannot be saved)
- every item has a product id, a quantity > 0 and status != ambiguous
"""

import logging
from threading import RLock
from typing import Dict, List, Optional

from magic_order.error_handler import DraftNotFoundError, IncompleteDraftsError
from magic_order.models import (
    CardState,
    CatalogProduct,
    CatalogSnapshot,
    DraftOrderCard,
    DraftPatch,
    ExtractedClientMatch,
    ExtractedLineItem,
    ItemPatch,
    ItemStatus,
    MatchConfidence,
    MessageAnalysis,
)


logger = logging.getLogger(__name__)


CONFIDENCE_RANK = {
    MatchConfidence.UNKNOWN: 0,
    MatchConfidence.LOW: 1,
    MatchConfidence.MEDIUM: 2,
    MatchConfidence.HIGH: 3,
}

NOTE_VARIANT_MISSING = "Variant not specified"
NOTE_VARIANT_UNKNOWN = "Variant not found for this product"
NOTE_PRODUCT_UNKNOWN = "Product not found in catalog"
RECONCILIATION_NOTES = (NOTE_VARIANT_MISSING, NOTE_VARIANT_UNKNOWN, NOTE_PRODUCT_UNKNOWN)


class CardLockedError(ValueError):
    """Edit attempted on a card that has already been saved"""


def _append_note(notes: Optional[str], note: str) -> str:
    if not notes:
        return note
    if note in notes:
        return notes
    return f"{notes}. {note}"


def _strip_reconciliation_notes(notes: Optional[str]) -> Optional[str]:
    if not notes:
        return notes
    kept = [part for part in notes.split(". ") if part not in RECONCILIATION_NOTES]
    return ". ".join(kept) or None


def grouping_key(client: ExtractedClientMatch, position: int) -> str:
    if client.id is not None:
        return f"client:{client.id}"
    return f"pos:{position}"


def is_card_complete(card: DraftOrderCard) -> bool:
    if card.client.id is None or card.client.match_confidence != MatchConfidence.HIGH:
        return False
    # An order needs at least one line; empty groups stay for manual entry
    if not card.items:
        return False
    return all(
        item.product.id is not None
        and item.quantity > 0
        and item.status != ItemStatus.AMBIGUOUS
        for item in card.items
    )


class OrderAggregator:
    """Draft cards for one analysis, reconciled against one catalog snapshot"""

    def __init__(self, catalog: Optional[CatalogSnapshot] = None):
        self.catalog = catalog or CatalogSnapshot()
        self._cards: List[DraftOrderCard] = []
        self._lock = RLock()

    # ============================================
    # CATALOG RECONCILIATION
    # ============================================

    def _reconcile_client(self, client: ExtractedClientMatch) -> ExtractedClientMatch:
        # Without catalog data ids cannot be checked
        if self.catalog.is_empty or client.id is None:
            return client
        if self.catalog.get_client(client.id) is not None:
            return client

        logger.warning(f"[AGGREGATOR] Client id {client.id!r} not in catalog, dropping it")
        confidence = client.match_confidence
        if CONFIDENCE_RANK[confidence] > CONFIDENCE_RANK[MatchConfidence.LOW]:
            confidence = MatchConfidence.LOW
        return client.model_copy(update={"id": None, "match_confidence": confidence})

    def _reconcile_item(self, item: ExtractedLineItem) -> ExtractedLineItem:
        if self.catalog.is_empty or item.product.id is None:
            return item

        product = self.catalog.get_product(item.product.id)
        if product is None:
            logger.warning(f"[AGGREGATOR] Product id {item.product.id!r} not in catalog")
            return item.model_copy(update={
                "product": item.product.model_copy(update={"id": None}),
                "status": ItemStatus.AMBIGUOUS,
                "notes": _append_note(item.notes, NOTE_PRODUCT_UNKNOWN),
            })

        if not product.variants:
            return self._resolved(item)

        variant_id = item.variant.id if item.variant is not None else None
        if variant_id is None:
            return item.model_copy(update={
                "status": ItemStatus.AMBIGUOUS,
                "notes": _append_note(item.notes, NOTE_VARIANT_MISSING),
            })

        catalog_variant = product.get_variant(variant_id)
        if catalog_variant is None:
            return item.model_copy(update={
                "variant": item.variant.model_copy(update={"id": None}),
                "status": ItemStatus.AMBIGUOUS,
                "notes": _append_note(item.notes, NOTE_VARIANT_UNKNOWN),
            })

        if not item.variant.name:
            return self._resolved(item, variant=item.variant.model_copy(update={"name": catalog_variant.name}))
        return self._resolved(item)

    @staticmethod
    def _resolved(item: ExtractedLineItem, **update) -> ExtractedLineItem:
        """Drop notes left by an earlier reconciliation once the item resolves."""
        notes = _strip_reconciliation_notes(item.notes)
        if notes != item.notes:
            update["notes"] = notes
        return item.model_copy(update=update) if update else item

    # ============================================
    # PRICING
    # ============================================

    def unit_price(self, item: ExtractedLineItem) -> float:
        product: Optional[CatalogProduct] = self.catalog.get_product(item.product.id)
        if product is None:
            return 0.0
        if item.variant is not None:
            variant = product.get_variant(item.variant.id)
            if variant is not None and variant.price:
                return variant.price
        return product.price

    def card_total(self, card: DraftOrderCard) -> float:
        return round(sum(self.unit_price(item) * item.quantity for item in card.items), 2)

    def _refresh(self, card: DraftOrderCard) -> None:
        card.complete = is_card_complete(card)
        card.total = self.card_total(card)

    # ============================================
    # INGEST
    # ============================================

    def ingest(
        self,
        results: List[MessageAnalysis],
        catalog: Optional[CatalogSnapshot] = None,
    ) -> List[DraftOrderCard]:
        """Replace the card set with the groups of a finished analysis."""
        with self._lock:
            if catalog is not None:
                self.catalog = catalog

            cards: List[DraftOrderCard] = []
            by_key: Dict[str, DraftOrderCard] = {}

            for position, result in enumerate(results):
                client = self._reconcile_client(result.client)
                items = [self._reconcile_item(item) for item in result.items]
                key = grouping_key(client, position)

                card = by_key.get(key)
                if card is None:
                    card = DraftOrderCard(
                        group_key=key,
                        client=client,
                        items=items,
                        unmatched_text=result.unmatched_text or None,
                    )
                    by_key[key] = card
                    cards.append(card)
                    continue

                card.items = card.items + items
                if CONFIDENCE_RANK[client.match_confidence] > CONFIDENCE_RANK[card.client.match_confidence]:
                    card.client = client
                if result.unmatched_text:
                    card.unmatched_text = (
                        f"{card.unmatched_text} {result.unmatched_text}"
                        if card.unmatched_text else result.unmatched_text
                    )

            for card in cards:
                self._refresh(card)
            self._cards = cards

            logger.info(
                f"[AGGREGATOR] {len(results)} groups -> {len(cards)} cards, "
                f"{sum(1 for c in cards if c.complete)} complete"
            )
            return self.cards()

    # ============================================
    # USER EDITS
    # ============================================

    def _get(self, index: int) -> DraftOrderCard:
        if index < 0 or index >= len(self._cards):
            raise DraftNotFoundError(f"No draft card at index {index}", details={"index": index})
        return self._cards[index]

    def _get_editable(self, index: int) -> DraftOrderCard:
        card = self._get(index)
        if card.state == CardState.SAVED:
            raise CardLockedError(f"Draft card {index} has already been saved")
        return card

    def _apply_item_patch(self, item: ExtractedLineItem, patch: ItemPatch) -> ExtractedLineItem:
        update = {}
        if patch.quantity is not None:
            update["quantity"] = patch.quantity
        if patch.product is not None:
            update["product"] = patch.product
            if patch.product.id != item.product.id:
                update["variant"] = None
            if patch.status is None and patch.product.id is not None:
                # Picking a catalog product resolves the doubt; reconciliation
                # re-flags it when a variant is still missing
                update["status"] = ItemStatus.CONFIRMED
        if patch.variant is not None:
            update["variant"] = patch.variant
            if patch.status is None and patch.variant.id is not None:
                update["status"] = ItemStatus.CONFIRMED
        if patch.clear_variant:
            update["variant"] = None
        if patch.status is not None:
            update["status"] = patch.status
        return item.model_copy(update=update)

    def update(self, index: int, patch: DraftPatch) -> DraftOrderCard:
        """Apply a user edit to one card."""
        with self._lock:
            card = self._get_editable(index)

            for item_patch in patch.items:
                if item_patch.index >= len(card.items):
                    raise DraftNotFoundError(
                        f"No item {item_patch.index} in draft card {index}",
                        details={"index": index, "item_index": item_patch.index},
                    )
            for item_index in patch.remove_items:
                if item_index < 0 or item_index >= len(card.items):
                    raise DraftNotFoundError(
                        f"No item {item_index} in draft card {index}",
                        details={"index": index, "item_index": item_index},
                    )

            if patch.client is not None:
                card.client = self._reconcile_client(patch.client)
            if patch.is_paid is not None:
                card.is_paid = patch.is_paid

            items = list(card.items)
            for item_patch in patch.items:
                items[item_patch.index] = self._reconcile_item(
                    self._apply_item_patch(items[item_patch.index], item_patch)
                )
            for item_index in sorted(set(patch.remove_items), reverse=True):
                del items[item_index]
            card.items = items

            self._refresh(card)
            logger.info(f"[AGGREGATOR] Updated card {index} (complete={card.complete})")
            return card.model_copy(deep=True)

    def delete(self, index: int) -> None:
        with self._lock:
            self._get(index)
            del self._cards[index]
            logger.info(f"[AGGREGATOR] Deleted card {index}")

    def add_item(self, index: int, item: ExtractedLineItem) -> DraftOrderCard:
        """Add a line item by hand, e.g. to a card that came back empty."""
        with self._lock:
            card = self._get_editable(index)
            card.items = card.items + [self._reconcile_item(item)]
            self._refresh(card)
            return card.model_copy(deep=True)

    def discard(self) -> None:
        with self._lock:
            self._cards = []
            logger.info("[AGGREGATOR] Draft set discarded")

    # ============================================
    # QUERIES
    # ============================================

    def cards(self) -> List[DraftOrderCard]:
        with self._lock:
            return [card.model_copy(deep=True) for card in self._cards]

    def is_complete(self, index: int) -> bool:
        with self._lock:
            return self._get(index).complete

    def can_save_all(self) -> bool:
        with self._lock:
            pending = [card for card in self._cards if card.state == CardState.PENDING]
            return bool(pending) and all(card.complete for card in self._cards)

    def incomplete_indexes(self) -> List[int]:
        with self._lock:
            return [i for i, card in enumerate(self._cards) if not card.complete]

    # ============================================
    # PERSISTENCE
    # ============================================

    def save_card(self, index: int, store) -> str:
        """
        Persist one complete card and mark it saved.

        A StoreError propagates and leaves the card untouched.
        """
        with self._lock:
            card = self._get(index)
            if card.state == CardState.SAVED and card.id:
                return card.id
            if not card.complete:
                raise IncompleteDraftsError(
                    f"Draft card {index} is not complete", details={"incomplete": [index]}
                )

            order_id = store.save_order(card)
            card.id = order_id
            card.state = CardState.SAVED
            logger.info(f"[AGGREGATOR] Card {index} saved as order {order_id}")
            return order_id

    def save_all(self, store) -> List[str]:
        """
        Persist every pending card. Only allowed when all cards are complete.

        Cards saved before a StoreError stay saved; the failing card and the
        ones after it stay pending so the user can retry.
        """
        with self._lock:
            incomplete = self.incomplete_indexes()
            if incomplete:
                raise IncompleteDraftsError(
                    f"{len(incomplete)} draft cards are not complete",
                    details={"incomplete": incomplete},
                )

            saved: List[str] = []
            for index, card in enumerate(self._cards):
                if card.state == CardState.SAVED:
                    continue
                saved.append(self.save_card(index, store))
            return saved
