"""Pattern memory - learned vendor behaviour backed by the store"""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from recon_gateway.domain.exceptions import PatternNotFoundError
from recon_gateway.domain.models import ConfirmedMatch, VendorPattern
from recon_gateway.domain.patterns import (
    add_alias,
    apply_learning,
    build_history,
    describe_pattern,
    new_pattern,
    select_patterns,
)
from recon_gateway.infrastructure.database.store import SqlReconciliationStore
from recon_gateway.utils.date_utils import utc_now

logger = logging.getLogger(__name__)

# Fields a user may edit through the admin API
EDITABLE_FIELDS = frozenset({
    "vendor_aliases", "transaction_keywords", "typical_payment_delay", "payment_processor", "confidence",
})


class PatternMemory:
    """Lookup, learning and administration of vendor patterns for one store"""

    def __init__(self, store: SqlReconciliationStore, clock=utc_now):
        self.store = store
        self.clock = clock

    def lookup(self, owner_id: str, vendor_name: str) -> List[VendorPattern]:
        """Exact match first, then fuzzy >= 0.7 on name and aliases, best first"""
        return select_patterns(self.store.list_patterns(owner_id), vendor_name)

    def learn(self, match: ConfirmedMatch) -> VendorPattern:
        """
        Fold a confirmed match into pattern memory.

        Callers de-duplicate by match id; calling twice counts twice.
        """
        matched_at = self.clock()
        history = build_history(match, matched_at)
        existing = self.lookup(match.owner_id, match.vendor_name)

        if existing:
            pattern = apply_learning(existing[0], match, matched_at)
        else:
            pattern = new_pattern(match, matched_at)

        saved = self.store.save_learning(history, pattern)
        logger.info(
            "Pattern learned",
            extra={
                "owner_id": match.owner_id,
                "vendor_name": saved.vendor_name,
                "match_count": saved.match_count,
                "confidence": saved.confidence,
            },
        )
        return saved

    def context_for(self, owner_id: str, vendor_names: Iterable[str]) -> Dict[str, str]:
        """Readable learned context per vendor, for prompts and suggestions"""
        patterns = self.store.list_patterns(owner_id)
        context: Dict[str, str] = {}
        for vendor_name in vendor_names:
            if not vendor_name or vendor_name in context:
                continue
            matches = select_patterns(patterns, vendor_name)
            if not matches:
                continue
            best = matches[0]
            history = self.store.recent_history(owner_id, best.vendor_name)
            context[vendor_name] = describe_pattern(best, history)
        return context

    def list_patterns(self, owner_id: str) -> List[VendorPattern]:
        return self.store.list_patterns(owner_id)

    def add_alias(self, owner_id: str, vendor_name: str, alias: str) -> VendorPattern:
        """Attach an alias, creating a bare pattern when the vendor is new"""
        wanted = vendor_name.lower()
        pattern = next((p for p in self.store.list_patterns(owner_id) if p.vendor_name.lower() == wanted), None)
        if pattern is None:
            pattern = VendorPattern(owner_id=owner_id, vendor_name=vendor_name)
        return self.store.save_pattern(add_alias(pattern, alias))

    def update(self, owner_id: str, pattern_id: str, fields: Dict[str, Any], notes: Optional[str] = None) -> VendorPattern:
        pattern = self.store.get_pattern(owner_id, pattern_id)
        if pattern is None:
            raise PatternNotFoundError(f"Pattern {pattern_id} not found")
        changes = {key: value for key, value in fields.items() if key in EDITABLE_FIELDS}
        return self.store.save_pattern(replace(pattern, **changes), notes=notes)