"""
Tiered reconciliation engine.

FETCH -> QUICK_SCAN -> AI_MATCH -> DEEP_INVESTIGATION -> LEARNING -> COMPLETE

Tier 1 QUICK_SCAN: rule-based scoring, auto-confirms at or above the threshold
Tier 2 AI_MATCH: low-effort reasoning in batches, bounded concurrency per wave
Tier 3 DEEP_INVESTIGATION: high-effort reasoning, one item per call, capped
Tier 4 LEARNING: pattern memory updates from every committed match

Tiers run strictly in sequence; only AI_MATCH fans out. The wall-clock
budget is checked before each AI wave and never interrupts one in flight.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from recon_gateway.config import Settings, settings as default_settings
from recon_gateway.domain.exceptions import (
    ConcurrentModificationError,
    ConfigurationError,
    DocumentNotFoundError,
    InvalidMatchError,
    InvalidReconcileRequestError,
    ReasoningServiceError,
    TransactionNotFoundError,
)
from recon_gateway.domain.matching import find_matches_for_transaction
from recon_gateway.domain.models import (
    AnalysisItem,
    ConfirmedMatch,
    Document,
    FxDetails,
    MatchCandidate,
    ReasoningVerdict,
    ReconcileResult,
    ReconcileStats,
    ReconcileStep,
    Transaction,
    TransactionMatch,
)
from recon_gateway.infrastructure.clients.reasoning import ReasoningClient
from recon_gateway.infrastructure.database.store import SqlReconciliationStore
from recon_gateway.infrastructure.observability.logging import log_reconciliation
from recon_gateway.infrastructure.observability.metrics import (
    learning_failure_counter,
    reconcile_run_counter,
    record_run,
)
from recon_gateway.services.pattern_memory import PatternMemory
from recon_gateway.services.progress import ProgressStream
from recon_gateway.utils.date_utils import days_between

logger = logging.getLogger(__name__)

AI_ACCEPT_CONFIDENCE = 60
ENGINE_USER = "reconcile_engine"
MAX_RUN_ID_LENGTH = 64

FALLBACK_REASON = "AI analysis failed — needs manual review"
DEEP_OVERFLOW_REASON = "Skipped — too many items for deep analysis"
BUDGET_REASON = "Skipped — time budget exhausted"

# Store rejections that turn an intended auto-confirm into a review item
CONFIRM_REJECTIONS = (
    ConcurrentModificationError,
    DocumentNotFoundError,
    InvalidMatchError,
    TransactionNotFoundError,
)


@dataclass
class QuickScanOutcome:
    matches: List[TransactionMatch] = field(default_factory=list)
    deferred: List[AnalysisItem] = field(default_factory=list)
    committed: List[ConfirmedMatch] = field(default_factory=list)
    step: Optional[ReconcileStep] = None


@dataclass
class AiOutcome:
    matches: List[TransactionMatch] = field(default_factory=list)
    escalated: List[AnalysisItem] = field(default_factory=list)
    abandoned: List[TransactionMatch] = field(default_factory=list)
    step: Optional[ReconcileStep] = None


@dataclass
class DeepOutcome:
    matches: List[TransactionMatch] = field(default_factory=list)
    step: Optional[ReconcileStep] = None


def _money(amount: float, currency: str) -> str:
    return f"{currency} {amount:,.2f}"


def _short(text: str, length: int = 50) -> str:
    return (text or "")[:length]


def _chunk(items: Sequence, size: int) -> List[list]:
    return [list(items[start:start + size]) for start in range(0, len(items), size)]


def _fx_details(candidate: Optional[MatchCandidate]) -> Optional[FxDetails]:
    if candidate is None or not candidate.signals.cross_currency or not candidate.signals.fx_rate_used:
        return None
    signals = candidate.signals
    return FxDetails(
        from_currency=signals.transaction_currency,
        to_currency=signals.document_currency,
        rate=signals.fx_rate_used,
        converted_amount=signals.converted_amount or candidate.transaction.absolute_amount,
    )


def fallback_match(item: AnalysisItem, effort: str, detail: str) -> TransactionMatch:
    """needs_review result standing in for a failed or missing reasoning verdict"""
    return TransactionMatch(
        transaction_id=item.transaction.id,
        classification="needs_review",
        confidence=0,
        reasoning=[FALLBACK_REASON, detail],
        thinking_level=effort,
        rule_based_score=item.candidates[0].confidence if item.candidates else None,
    )


def build_stats(matches: Sequence[TransactionMatch], total: int, quick_matches: int) -> ReconcileStats:
    """Aggregate per-run counters from the resolved matches"""
    payments = [m for m in matches if m.classification == "payment_match"]
    fees = sum(1 for m in matches if m.classification == "bank_fee")
    transfers = sum(1 for m in matches if m.classification == "transfer")
    no_match = sum(1 for m in matches if m.classification == "no_match")
    review = sum(1 for m in matches if m.classification == "needs_review")
    unconfirmed = sum(1 for m in payments if not m.auto_confirmed)

    return ReconcileStats(
        total_transactions=total,
        quick_matches=quick_matches,
        ai_matches=len(payments) - quick_matches,
        deep_matches=sum(1 for m in payments if m.thinking_level == "high"),
        bank_fees=fees,
        no_match=no_match + transfers,
        auto_confirmed=sum(1 for m in matches if m.auto_confirmed),
        needs_review=review + unconfirmed,
        match_rate=round((len(payments) + fees + transfers) / total * 100) if total else 100,
    )


class ReconciliationEngine:
    """Runs one owner's open transactions through the matching tiers"""

    def __init__(
        self,
        store: SqlReconciliationStore,
        reasoning_client: ReasoningClient,
        progress_sink=None,
        config: Settings = default_settings,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable = asyncio.sleep,
    ):
        if config.ai_batch_size < 1:
            raise ConfigurationError("ai_batch_size must be at least 1")
        if config.ai_concurrency < 1:
            raise ConfigurationError("ai_concurrency must be at least 1")
        if config.deep_investigation_limit < 0:
            raise ConfigurationError("deep_investigation_limit cannot be negative")
        if config.run_budget_seconds <= 0:
            raise ConfigurationError("run_budget_seconds must be positive")
        if config.max_transactions < 1:
            raise ConfigurationError("max_transactions must be at least 1")
        if not 0 <= config.auto_confirm_threshold <= 100:
            raise ConfigurationError("auto_confirm_threshold must be within 0-100")

        self.store = store
        self.reasoning_client = reasoning_client
        self.progress_sink = progress_sink
        self.config = config
        self.clock = clock
        self.sleep = sleep
        self.pattern_memory = PatternMemory(store)

    # ============================================
    # ENTRY POINT
    # ============================================

    async def run(
        self,
        owner_id: str,
        transaction_ids: Optional[Sequence[str]] = None,
        max_transactions: Optional[int] = None,
        auto_confirm_threshold: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> ReconcileResult:
        """
        Reconcile open transactions against open bills and invoices.

        Raises:
            InvalidReconcileRequestError: Before any work, on bad identifiers or limits
        """
        limit, threshold = self._validate(owner_id, transaction_ids, max_transactions, auto_confirm_threshold, run_id)
        started = self.clock()

        transactions = self.store.fetch_transactions(owner_id, transaction_ids, limit)
        documents = self.store.fetch_open_documents(owner_id, self.config.open_document_limit)
        bills = sum(1 for doc in documents if doc.document_type == "bill")

        progress = ProgressStream(run_id, owner_id, self.progress_sink)
        await progress.start({"transactions": len(transactions), "bills": bills, "invoices": len(documents) - bills})

        try:
            result = await self._execute(owner_id, transactions, documents, threshold, progress, started)
        except Exception as e:
            reconcile_run_counter.labels(outcome="error").inc()
            logger.error(f"Reconciliation failed: {e}", extra={"owner_id": owner_id, "run_id": run_id})
            await progress.error(str(e))
            raise

        result.run_id = run_id
        result.events = list(progress.events)
        return result

    def _validate(
        self,
        owner_id: str,
        transaction_ids: Optional[Sequence[str]],
        max_transactions: Optional[int],
        auto_confirm_threshold: Optional[int],
        run_id: Optional[str],
    ) -> Tuple[int, int]:
        if not isinstance(owner_id, str) or not owner_id.strip():
            raise InvalidReconcileRequestError("owner_id is required")
        if transaction_ids is not None:
            if isinstance(transaction_ids, str) or any(not isinstance(i, str) or not i.strip() for i in transaction_ids):
                raise InvalidReconcileRequestError("transaction_ids must be a list of non-empty ids")
        if max_transactions is not None and (isinstance(max_transactions, bool) or not isinstance(max_transactions, int) or max_transactions < 1):
            raise InvalidReconcileRequestError("max_transactions must be a positive integer")
        if auto_confirm_threshold is not None and (
            isinstance(auto_confirm_threshold, bool)
            or not isinstance(auto_confirm_threshold, int)
            or not 0 <= auto_confirm_threshold <= 100
        ):
            raise InvalidReconcileRequestError("auto_confirm_threshold must be an integer within 0-100")
        if run_id is not None and (not run_id.strip() or len(run_id) > MAX_RUN_ID_LENGTH):
            raise InvalidReconcileRequestError(f"run_id must be 1-{MAX_RUN_ID_LENGTH} characters")

        limit = min(max_transactions or self.config.max_transactions, self.config.max_transactions)
        threshold = self.config.auto_confirm_threshold if auto_confirm_threshold is None else auto_confirm_threshold
        return limit, threshold

    async def _execute(
        self,
        owner_id: str,
        transactions: List[Transaction],
        documents: List[Document],
        threshold: int,
        progress: ProgressStream,
        started: float,
    ) -> ReconcileResult:
        model = self.reasoning_client.model

        if not transactions:
            await progress.emit("info", "No unmatched transactions found")
            stats = ReconcileStats()
            await progress.complete(asdict(stats))
            return ReconcileResult(steps=[], matches=[], stats=stats, patterns_learned=[], elapsed_ms=0, model=model)

        documents_by_id = {doc.id: doc for doc in documents}

        quick = await self._quick_scan(transactions, documents, threshold, progress)
        steps = [quick.step]
        matches = list(quick.matches)
        committed = list(quick.committed)
        stopped_early = False
        remaining_estimate = 0

        if not quick.deferred:
            steps.append(ReconcileStep("ai_matching", "skipped", 0, ["All matched by rules"], 0))
            steps.append(ReconcileStep("deep_investigation", "skipped", 0, ["Not needed"], 0))
            await progress.emit("info", "All transactions matched by rules, AI not needed")
        else:
            context = self._pattern_context(owner_id, quick.deferred)

            ai = await self._ai_match(quick.deferred, documents_by_id, context, progress, started)
            committed.extend(self._commit_ai_matches(owner_id, ai.matches, documents_by_id, threshold))
            steps.append(ai.step)
            matches.extend(ai.matches)

            deep = await self._deep_investigation(ai.escalated, documents_by_id, context, progress)
            committed.extend(self._commit_ai_matches(owner_id, deep.matches, documents_by_id, threshold))
            steps.append(deep.step)
            matches.extend(deep.matches)

            if ai.abandoned:
                stopped_early = True
                remaining_estimate = len(ai.abandoned)
                matches.extend(ai.abandoned)

        learning_step, patterns_learned = await self._learn(committed, progress)
        steps.append(learning_step)

        stats = build_stats(matches, len(transactions), quick_matches=sum(1 for m in quick.matches if m.auto_confirmed))
        elapsed_seconds = self.clock() - started

        await progress.emit("info", f"Reconciliation complete in {elapsed_seconds:.1f}s, {stats.match_rate}% match rate")
        await progress.complete({**asdict(stats), "stopped_early": stopped_early, "remaining_estimate": remaining_estimate})

        record_run(matches, stopped_early, elapsed_seconds)
        log_reconciliation(
            owner_id=owner_id,
            run_id=progress.run_id,
            model=model,
            total_transactions=stats.total_transactions,
            auto_confirmed=stats.auto_confirmed,
            needs_review=stats.needs_review,
            match_rate=stats.match_rate,
            stopped_early=stopped_early,
            duration_ms=elapsed_seconds * 1000,
        )

        return ReconcileResult(
            steps=steps,
            matches=matches,
            stats=stats,
            patterns_learned=patterns_learned,
            elapsed_ms=int(elapsed_seconds * 1000),
            model=model,
            stopped_early=stopped_early,
            remaining_estimate=remaining_estimate,
        )

    # ============================================
    # STEP 1: QUICK SCAN
    # ============================================

    async def _quick_scan(
        self,
        transactions: List[Transaction],
        documents: List[Document],
        threshold: int,
        progress: ProgressStream,
    ) -> QuickScanOutcome:
        progress.set_step("quick_scan")
        await progress.emit(
            "step", f"Step 1: Quick Scan, rule-based matching on {len(transactions)} transactions against {len(documents)} open documents"
        )
        step_start = self.clock()
        outcome = QuickScanOutcome()
        details: List[str] = []

        # Duplicate-amount signal needs one snapshot taken before any scoring
        amounts: Dict[str, List[float]] = {}
        for tx in transactions:
            amounts.setdefault(tx.direction, []).append(tx.amount)

        decisions: List[MatchCandidate] = []
        for tx in transactions:
            candidates = find_matches_for_transaction(
                tx, documents, amounts.get(tx.direction, []), min_confidence=self.config.quick_scan_candidate_floor
            )
            top = candidates[0] if candidates else None
            if top is not None and top.confidence >= threshold:
                decisions.append(top)
                continue

            if top is not None:
                await progress.emit("analyze", f"\"{_short(tx.description)}\": best rule score {top.confidence}%, needs AI")
            else:
                await progress.emit("analyze", f"\"{_short(tx.description)}\": no rule-based candidates, needs AI")
            outcome.deferred.append(AnalysisItem(transaction=tx, candidates=candidates[: self.config.candidates_per_transaction]))

        for candidate in decisions:
            await progress.emit_batch(self._quick_scan_events(candidate))
            match = self._confirm_candidate(candidate, outcome.committed)
            outcome.matches.append(match)
            if match.auto_confirmed:
                details.append(f"{_short(candidate.transaction.description, 40)}... -> {match.document_number} ({match.confidence}%)")
                await progress.emit("confirm", f"MATCH: {match.confidence}% confidence, auto-confirmed")
            else:
                await progress.emit("escalate", f"{match.document_number}: {match.reasoning[-1]}")

        auto = sum(1 for m in outcome.matches if m.auto_confirmed)
        outcome.step = ReconcileStep("quick_scan", "completed", auto, details, int((self.clock() - step_start) * 1000))
        await progress.emit("info", f"Quick scan complete: {auto} auto-confirmed, {len(outcome.deferred)} need AI analysis")
        return outcome

    def _quick_scan_events(self, candidate: MatchCandidate) -> List[Tuple[str, str]]:
        tx = candidate.transaction
        doc = candidate.document
        signals = candidate.signals
        events = [("analyze", f"Analyzing \"{tx.description}\"")]

        if signals.reference_found:
            events.append(("search", f"Found reference '{signals.reference_found}' in description"))
        events.append(("search", f"Searching {doc.document_type}s... found {doc.document_number} from {doc.counterparty_name}"))

        if signals.cross_currency and signals.fx_rate_used:
            converted = signals.converted_amount or tx.absolute_amount * signals.fx_rate_used
            verdict = "exact match" if signals.amount_difference_percent < 1 else f"{signals.amount_difference_percent:.1f}% difference"
            events.append((
                "fx",
                f"{_money(tx.absolute_amount, tx.currency)} x {signals.fx_rate_used:.4f} = {_money(converted, doc.currency)}, {verdict}",
            ))
        else:
            diff = signals.amount_difference_percent
            verdict = "exact match" if diff < 0.5 else f"{diff:.1f}% difference"
            events.append((
                "match",
                f"Amount {_money(tx.absolute_amount, tx.currency)} vs {doc.document_type} "
                f"{_money(doc.amount_remaining, doc.currency)}, {verdict}",
            ))

        days = days_between(tx.date, doc.document_date)
        if days > 0:
            events.append(("info", f"Payment {days} days after {doc.document_type} date"))
        return events

    def _confirm_candidate(self, candidate: MatchCandidate, committed: List[ConfirmedMatch]) -> TransactionMatch:
        tx = candidate.transaction
        doc = candidate.document
        match = TransactionMatch(
            transaction_id=tx.id,
            classification="payment_match",
            confidence=candidate.confidence,
            reasoning=list(candidate.reasons),
            match_type=candidate.match_type,
            document_id=doc.id,
            document_type=doc.document_type,
            document_number=doc.document_number,
            counterparty_name=doc.counterparty_name,
            fx_details=_fx_details(candidate),
            thinking_level="none",
            rule_based_score=candidate.confidence,
        )
        try:
            receipt = self.store.confirm_match(
                tx.owner_id,
                tx.id,
                doc.id,
                confidence=candidate.confidence,
                match_type=candidate.match_type,
                method="auto_rule",
                confirmed_by=ENGINE_USER,
                thinking_level="none",
                reasoning=candidate.reasons,
            )
        except CONFIRM_REJECTIONS as e:
            logger.warning(f"Auto-confirm rejected: {e}", extra={"transaction_id": tx.id, "document_id": doc.id})
            match.classification = "needs_review"
            match.reasoning.append(f"Auto-confirm rejected: {e}")
            return match

        match.auto_confirmed = True
        if not receipt.already_matched:
            committed.append(receipt.match)
        return match

    # ============================================
    # STEP 2: AI MATCHING (low effort)
    # ============================================

    async def _ai_match(
        self,
        deferred: List[AnalysisItem],
        documents_by_id: Dict[str, Document],
        context: Dict[str, str],
        progress: ProgressStream,
        started: float,
    ) -> AiOutcome:
        progress.set_step("ai_matching")
        await progress.emit("step", f"Step 2: AI Matching, sending {len(deferred)} transactions for fast analysis")
        step_start = self.clock()
        outcome = AiOutcome()
        details: List[str] = []

        batches = _chunk(deferred, self.config.ai_batch_size)
        concurrency = self.config.ai_concurrency
        total_waves = (len(batches) + concurrency - 1) // concurrency

        for wave_start in range(0, len(batches), concurrency):
            if self.clock() - started >= self.config.run_budget_seconds:
                for batch in batches[wave_start:]:
                    for item in batch:
                        outcome.abandoned.append(
                            TransactionMatch(
                                transaction_id=item.transaction.id,
                                classification="needs_review",
                                confidence=0,
                                reasoning=[BUDGET_REASON],
                                rule_based_score=item.candidates[0].confidence if item.candidates else None,
                            )
                        )
                await progress.emit("info", f"Time budget exhausted, {len(outcome.abandoned)} transactions left for review")
                break

            wave = batches[wave_start:wave_start + concurrency]
            await progress.emit("info", f"Sending batch {wave_start // concurrency + 1}/{total_waves} for low-effort analysis...")

            results = await asyncio.gather(
                *(self._analyze(batch, "low", documents_by_id, context) for batch in wave)
            )

            for batch, batch_results in zip(wave, results):
                for item in batch:
                    result = batch_results[item.transaction.id]
                    await self._route_ai_result(item, result, outcome, details, progress)

            if wave_start + concurrency < len(batches):
                await self.sleep(self.config.ai_wave_delay_seconds)

        payments = sum(1 for m in outcome.matches if m.classification == "payment_match")
        fees = sum(1 for m in outcome.matches if m.classification == "bank_fee")
        outcome.step = ReconcileStep("ai_matching", "completed", payments, details, int((self.clock() - step_start) * 1000))
        await progress.emit(
            "info", f"AI matching complete: {payments} matches, {fees} bank fees, {len(outcome.escalated)} need deep investigation"
        )
        return outcome

    async def _route_ai_result(
        self,
        item: AnalysisItem,
        result: TransactionMatch,
        outcome: AiOutcome,
        details: List[str],
        progress: ProgressStream,
    ) -> None:
        desc = _short(item.transaction.description) or item.transaction.id

        if result.classification == "payment_match" and result.confidence >= AI_ACCEPT_CONFIDENCE:
            events = [("analyze", f"\"{desc}\"")]
            events.extend(("match", reason) for reason in result.reasoning)
            events.append((
                "confirm",
                f"AI MATCH: {result.confidence}% -> {result.document_number or 'document'} ({result.counterparty_name or 'vendor'})",
            ))
            await progress.emit_batch(events)
            outcome.matches.append(result)
            details.append(f"{result.reasoning[0] if result.reasoning else 'AI match'} ({result.confidence}%)")
        elif result.classification == "bank_fee":
            reason = result.reasoning[0] if result.reasoning else "fee pattern detected"
            await progress.emit("classify", f"\"{desc}\" -> Bank fee: {reason}")
            outcome.matches.append(result)
            details.append(f"Bank fee: {reason}")
        elif result.classification == "transfer":
            reason = result.reasoning[0] if result.reasoning else "transfer pattern"
            await progress.emit("classify", f"\"{desc}\" -> Internal transfer: {reason}")
            outcome.matches.append(result)
            details.append(f"Transfer: {reason}")
        elif 0 < result.confidence < AI_ACCEPT_CONFIDENCE:
            await progress.emit("escalate", f"\"{desc}\" -> uncertain ({result.confidence}%), escalating to deep analysis")
            outcome.escalated.append(item)
        else:
            if result.classification == "payment_match":
                result.classification = "no_match"
            label = "needs review" if result.classification == "needs_review" else "no match found"
            await progress.emit("classify", f"\"{desc}\" -> {label}")
            outcome.matches.append(result)

    # ============================================
    # STEP 3: DEEP INVESTIGATION (high effort)
    # ============================================

    async def _deep_investigation(
        self,
        escalated: List[AnalysisItem],
        documents_by_id: Dict[str, Document],
        context: Dict[str, str],
        progress: ProgressStream,
    ) -> DeepOutcome:
        outcome = DeepOutcome()
        if not escalated:
            outcome.step = ReconcileStep("deep_investigation", "skipped", 0, ["Not needed"], 0)
            return outcome

        progress.set_step("deep_investigation")
        await progress.emit("step", f"Step 3: Deep Investigation, {len(escalated)} complex cases")
        step_start = self.clock()
        details: List[str] = []
        limit = self.config.deep_investigation_limit

        for item in escalated[:limit]:
            tx = item.transaction
            await progress.emit(
                "analyze", f"Deep analysis: \"{_short(tx.description, 60)}\", {_money(tx.absolute_amount, tx.currency)}"
            )
            result = (await self._analyze([item], "high", documents_by_id, context))[tx.id]
            outcome.matches.append(result)

            await progress.emit_batch([("match", reason) for reason in result.reasoning])
            if result.classification == "payment_match":
                await progress.emit("confirm", f"DEEP MATCH: {result.confidence}% -> {result.document_number or 'document'}")
                details.append(f"Deep: {' -> '.join(result.reasoning)} ({result.confidence}%)")
            else:
                first = result.reasoning[0] if result.reasoning else "no match"
                await progress.emit("classify", f"Deep analysis: {result.classification}, {first}")
                details.append(f"Deep: {first}")

        for item in escalated[limit:]:
            outcome.matches.append(
                TransactionMatch(
                    transaction_id=item.transaction.id,
                    classification="needs_review",
                    confidence=0,
                    reasoning=[DEEP_OVERFLOW_REASON],
                    rule_based_score=item.candidates[0].confidence if item.candidates else None,
                )
            )
        if len(escalated) > limit:
            await progress.emit("info", f"{len(escalated) - limit} items skipped, too many for deep analysis")

        payments = sum(1 for m in outcome.matches if m.classification == "payment_match")
        outcome.step = ReconcileStep("deep_investigation", "completed", payments, details, int((self.clock() - step_start) * 1000))
        return outcome

    # ============================================
    # REASONING CALLS
    # ============================================

    async def _analyze(
        self,
        items: List[AnalysisItem],
        effort: str,
        documents_by_id: Dict[str, Document],
        context: Dict[str, str],
    ) -> Dict[str, TransactionMatch]:
        """One reasoning call; every item gets a result, failures become needs_review"""
        vendors = {candidate.document.counterparty_name for item in items for candidate in item.candidates}
        batch_context = {name: text for name, text in context.items() if name in vendors}

        try:
            verdicts = await self.reasoning_client.match(items, effort, batch_context)
        except ReasoningServiceError as e:
            logger.error(f"Reasoning batch failed: {e}", extra={"effort": effort, "batch_size": len(items)})
            return {item.transaction.id: fallback_match(item, effort, str(e)) for item in items}

        by_transaction = {verdict.transaction_id: verdict for verdict in verdicts}
        results = {}
        for item in items:
            verdict = by_transaction.get(item.transaction.id)
            if verdict is None:
                results[item.transaction.id] = fallback_match(item, effort, "No verdict returned for this transaction")
                continue
            try:
                results[item.transaction.id] = self._verdict_to_match(item, verdict, effort, documents_by_id)
            except (TypeError, ValueError, AttributeError) as e:
                logger.error(
                    f"Unusable verdict: {e}",
                    extra={"effort": effort, "transaction_id": item.transaction.id},
                )
                results[item.transaction.id] = fallback_match(item, effort, f"Unusable verdict: {e}")
        return results

    @staticmethod
    def _verdict_to_match(
        item: AnalysisItem,
        verdict: ReasoningVerdict,
        effort: str,
        documents_by_id: Dict[str, Document],
    ) -> TransactionMatch:
        document = documents_by_id.get(verdict.document_id) if verdict.document_id else None
        candidate = next((c for c in item.candidates if c.document.id == verdict.document_id), None)
        return TransactionMatch(
            transaction_id=item.transaction.id,
            classification=verdict.classification,
            confidence=verdict.confidence,
            reasoning=list(verdict.reasoning),
            match_type=verdict.match_type,
            document_id=verdict.document_id,
            document_type=document.document_type if document else verdict.document_type,
            document_number=document.document_number if document else None,
            counterparty_name=document.counterparty_name if document else None,
            fx_details=_fx_details(candidate),
            thinking_level=effort,
            rule_based_score=item.candidates[0].confidence if item.candidates else None,
        )

    def _commit_ai_matches(
        self,
        owner_id: str,
        matches: List[TransactionMatch],
        documents_by_id: Dict[str, Document],
        threshold: int,
    ) -> List[ConfirmedMatch]:
        """Auto-confirm confident AI payment matches; mark the rest suggested"""
        committed: List[ConfirmedMatch] = []
        for match in matches:
            if match.classification != "payment_match" or match.document_id not in documents_by_id:
                continue
            document = documents_by_id[match.document_id]
            method = f"auto_{match.thinking_level}"

            if match.confidence < threshold:
                try:
                    self.store.mark_suggested(owner_id, match.transaction_id, document, match.confidence, method)
                except TransactionNotFoundError as e:
                    logger.warning(f"Could not mark suggestion: {e}", extra={"transaction_id": match.transaction_id})
                continue

            try:
                receipt = self.store.confirm_match(
                    owner_id,
                    match.transaction_id,
                    document.id,
                    confidence=match.confidence,
                    match_type=match.match_type if match.match_type != "none" else "partial",
                    method=method,
                    confirmed_by=ENGINE_USER,
                    thinking_level=match.thinking_level,
                    reasoning=match.reasoning,
                )
            except CONFIRM_REJECTIONS as e:
                logger.warning(f"Auto-confirm rejected: {e}", extra={"transaction_id": match.transaction_id})
                match.reasoning.append(f"Auto-confirm rejected: {e}")
                continue

            match.auto_confirmed = True
            if not receipt.already_matched:
                committed.append(receipt.match)
        return committed

    def _pattern_context(self, owner_id: str, deferred: List[AnalysisItem]) -> Dict[str, str]:
        vendors = [candidate.document.counterparty_name for item in deferred for candidate in item.candidates]
        try:
            return self.pattern_memory.context_for(owner_id, vendors)
        except Exception as e:
            logger.warning(f"Pattern context unavailable: {e}", extra={"owner_id": owner_id})
            return {}

    # ============================================
    # STEP 4: LEARNING
    # ============================================

    async def _learn(self, committed: List[ConfirmedMatch], progress: ProgressStream) -> Tuple[ReconcileStep, List[str]]:
        progress.set_step("learning")
        step_start = self.clock()
        learned: List[str] = []
        seen: Set[Tuple[str, str]] = set()

        if committed:
            await progress.emit("step", f"Step 4: Pattern Memory, learning from {len(committed)} confirmed matches")

        for match in committed:
            key = (match.transaction_id, match.document_id)
            if key in seen:
                continue
            seen.add(key)
            try:
                pattern = self.pattern_memory.learn(match)
            except Exception as e:
                learning_failure_counter.inc()
                logger.error(
                    f"Pattern learning failed: {e}",
                    extra={"transaction_id": match.transaction_id, "document_id": match.document_id},
                )
                continue
            if pattern.vendor_name not in learned:
                learned.append(pattern.vendor_name)
                await progress.emit("learn", f"Updated pattern for {pattern.vendor_name}")

        step = ReconcileStep(
            "learning",
            "completed" if learned else "skipped",
            len(learned),
            [f"Updated pattern for {vendor}" for vendor in learned],
            int((self.clock() - step_start) * 1000),
        )
        return step, learned
