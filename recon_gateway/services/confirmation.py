"""Manual match operations: confirm, unmatch, categorize, suggestions"""

import logging
from typing import Optional

from recon_gateway.config import Settings, settings as default_settings
from recon_gateway.domain.matching import calculate_match, find_matches_for_transaction
from recon_gateway.domain.models import PaymentAllocation, Suggestion, Transaction
from recon_gateway.infrastructure.database.store import ConfirmReceipt, SqlReconciliationStore
from recon_gateway.infrastructure.observability.metrics import learning_failure_counter
from recon_gateway.services.pattern_memory import PatternMemory

logger = logging.getLogger(__name__)

MANUAL_CONFIDENCE = 100


class MatchConfirmationService:
    """User-driven counterpart to the engine's auto-confirm"""

    def __init__(self, store: SqlReconciliationStore, pattern_memory: PatternMemory, config: Settings = default_settings):
        self.store = store
        self.pattern_memory = pattern_memory
        self.config = config

    def confirm(
        self,
        owner_id: str,
        transaction_id: str,
        document_id: str,
        user_id: str,
        allocation_amount: Optional[float] = None,
    ) -> ConfirmReceipt:
        """
        Commit a user-chosen pairing, then learn from it.

        A learning failure is logged and counted; the confirmation stands.
        """
        transaction = self.store.get_transaction(owner_id, transaction_id)
        document = self.store.get_document(owner_id, document_id)
        match_type = calculate_match(transaction, document).match_type
        if allocation_amount is not None and allocation_amount < document.amount_remaining - 0.01:
            match_type = "partial"

        receipt = self.store.confirm_match(
            owner_id,
            transaction_id,
            document_id,
            confidence=MANUAL_CONFIDENCE,
            match_type=match_type,
            method="manual",
            confirmed_by=user_id,
            allocation_amount=allocation_amount,
        )

        if not receipt.already_matched:
            try:
                self.pattern_memory.learn(receipt.match)
            except Exception as e:
                learning_failure_counter.inc()
                logger.error(
                    f"Pattern learning failed: {e}",
                    extra={"owner_id": owner_id, "transaction_id": transaction_id, "document_id": document_id},
                )

        return receipt

    def unmatch(self, owner_id: str, transaction_id: str, user_id: str) -> Optional[PaymentAllocation]:
        return self.store.unmatch(owner_id, transaction_id, user_id)

    def categorize(self, owner_id: str, transaction_id: str, category: str, user_id: str) -> Transaction:
        return self.store.categorize(owner_id, transaction_id, category, user_id)

    def suggestions(self, owner_id: str, transaction_id: str, limit: Optional[int] = None) -> Suggestion:
        """Rule candidates for one transaction plus the top vendor's learned context"""
        transaction = self.store.get_transaction(owner_id, transaction_id)
        documents = self.store.fetch_open_documents(owner_id, self.config.open_document_limit)
        open_transactions = self.store.fetch_transactions(owner_id, None, self.config.max_transactions)

        all_amounts = [tx.amount for tx in open_transactions if tx.direction == transaction.direction]
        candidates = find_matches_for_transaction(
            transaction, documents, all_amounts, min_confidence=self.config.min_candidate_confidence
        )
        candidates = candidates[: limit or self.config.candidates_per_transaction]

        context = {}
        if candidates:
            context = self.pattern_memory.context_for(owner_id, [candidates[0].document.counterparty_name])

        return Suggestion(transaction=transaction, candidates=candidates, pattern_context=context)
