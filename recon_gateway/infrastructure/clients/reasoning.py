"""Reasoning API HTTP client for AI-assisted match classification"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from recon_gateway.config import settings
from recon_gateway.domain.exceptions import ReasoningServiceError
from recon_gateway.domain.models import CLASSIFICATIONS, EFFORT_LEVELS, AnalysisItem, ReasoningVerdict
from recon_gateway.infrastructure.observability.metrics import reasoning_failure_counter, reasoning_latency_histogram

logger = logging.getLogger(__name__)

LOW_EFFORT_GUIDANCE = """FAST ANALYSIS MODE: Quickly classify each transaction. Focus on:
- Obvious matches from the pre-analysis
- Bank fees (small recurring debits like "Monthly Fee", "SWIFT Charges")
- Internal transfers between accounts"""

HIGH_EFFORT_GUIDANCE = """DEEP ANALYSIS MODE: Think carefully about each transaction. Consider:
- FX conversions between the transaction and document currencies
- Combined payments (one transaction paying multiple bills)
- Partial payments and installments
- Payment processor fees (Stripe 2.9% + 0.30, PayPal 2.9% + 0.30)
- Reference numbers that may be abbreviated or reformatted
- Vendor name variations and aliases"""

RESPONSE_INSTRUCTIONS = """For each transaction, provide:
- transactionId: the TRANSACTION id above
- classification: "payment_match", "bank_fee", "transfer", "no_match" or "needs_review"
- documentId: the matched bill/invoice id (null if not a payment_match)
- documentIds: list of ids when one transaction pays several documents
- documentType: "bill" or "invoice" (null if not a payment_match)
- confidence: 0-100
- reasoning: array of 2-4 short strings showing the step-by-step logic
- matchType: "exact", "fx_converted", "partial", "combined" or "fee_adjusted"

Return JSON with a "matches" array."""


def _describe_item(item: AnalysisItem) -> str:
    tx = item.transaction
    if item.candidates:
        lines = []
        for index, candidate in enumerate(item.candidates, start=1):
            doc = candidate.document
            line = (
                f"    {index}. {doc.document_type} {doc.document_number} ({doc.counterparty_name}, "
                f"{doc.currency} {doc.amount_remaining:.2f}) id={doc.id} -> Rule score: {candidate.confidence}% "
                f"[{', '.join(candidate.reasons)}]"
            )
            if candidate.warnings:
                line += f" WARNING: {', '.join(candidate.warnings)}"
            lines.append(line)
        candidate_info = "\n".join(lines)
    else:
        candidate_info = "    No rule-based candidates found."

    flow = "money out -> match to bills" if tx.direction == "debit" else "money in -> match to invoices"
    return (
        f"TRANSACTION: {tx.id}\n"
        f"  Description: \"{tx.description or 'N/A'}\"\n"
        f"  Amount: {tx.currency} {tx.absolute_amount:.2f}\n"
        f"  Type: {tx.direction} ({flow})\n"
        f"  Date: {tx.date.isoformat()}\n"
        f"  Reference: {tx.reference or 'none'}\n"
        f"  Pre-analyzed candidates:\n{candidate_info}"
    )


def build_prompt(items: Sequence[AnalysisItem], effort: str, pattern_context: Optional[Dict[str, str]] = None) -> str:
    """Render the instruction prompt for one batch"""
    sections = [
        "You are an expert financial reconciliation AI. For each bank transaction below, determine the correct match.",
        HIGH_EFFORT_GUIDANCE if effort == "high" else LOW_EFFORT_GUIDANCE,
        "Each transaction has been pre-analyzed with rule-based scoring. Review the analysis and either confirm "
        "the top candidate, override with a better match, or classify as a bank fee / transfer / no match.",
    ]
    if pattern_context:
        sections.append("LEARNED VENDOR PATTERNS:\n\n" + "\n\n".join(pattern_context.values()))
    sections.append("\n\n".join(_describe_item(item) for item in items))
    sections.append(RESPONSE_INSTRUCTIONS)
    return "\n\n".join(sections)


def _transaction_context(item: AnalysisItem) -> Dict[str, Any]:
    tx = item.transaction
    return {
        "id": tx.id,
        "date": tx.date.isoformat(),
        "description": tx.description,
        "amount": tx.absolute_amount,
        "currency": tx.currency,
        "direction": tx.direction,
        "reference": tx.reference,
        "candidate_ids": [candidate.document.id for candidate in item.candidates],
    }


def _candidate_contexts(items: Sequence[AnalysisItem]) -> List[Dict[str, Any]]:
    seen = {}
    for item in items:
        for candidate in item.candidates:
            doc = candidate.document
            if doc.id in seen:
                continue
            seen[doc.id] = {
                "id": doc.id,
                "document_type": doc.document_type,
                "document_number": doc.document_number,
                "counterparty_name": doc.counterparty_name,
                "document_date": doc.document_date.isoformat(),
                "due_date": doc.due_date.isoformat() if doc.due_date else None,
                "amount_remaining": doc.amount_remaining,
                "currency": doc.currency,
            }
    return list(seen.values())


def _coerce_confidence(value: Any) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return 0


def _coerce_id(value: Any) -> Optional[str]:
    """Ids must be scalar; lists, objects and booleans are rejected"""
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        return None
    return str(value) or None


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text


def parse_verdicts(data: Any) -> List[ReasoningVerdict]:
    """
    Parse a reasoning payload into verdicts.

    Accepts {"matches": [...]} or {"text": "<json>"}; entries without a
    transaction id are dropped. Unknown classifications become needs_review.

    Raises:
        ReasoningServiceError: If the payload is not the expected shape
    """
    if isinstance(data, dict) and "matches" not in data and isinstance(data.get("text"), str):
        try:
            data = json.loads(_strip_fences(data["text"]))
        except ValueError as e:
            raise ReasoningServiceError(f"Malformed reasoning response: {e}") from e

    if not isinstance(data, dict):
        raise ReasoningServiceError("Malformed reasoning response: expected a JSON object")

    entries = data.get("matches", data.get("analysis"))
    if not isinstance(entries, list):
        raise ReasoningServiceError("Malformed reasoning response: missing 'matches' array")

    verdicts = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        transaction_id = _coerce_id(entry.get("transactionId") or entry.get("transaction_id"))
        if not transaction_id:
            continue

        classification = entry.get("classification") or "no_match"
        if not isinstance(classification, str) or classification not in CLASSIFICATIONS:
            classification = "needs_review"

        reasoning = entry.get("reasoning")
        if isinstance(reasoning, list):
            reasoning = [str(reason) for reason in reasoning]
        else:
            reasoning = [str(reasoning or entry.get("explanation") or "No explanation")]

        raw_ids = entry.get("documentIds") or entry.get("document_ids") or []
        if not isinstance(raw_ids, list):
            raw_ids = [raw_ids]
        document_ids = [doc_id for doc_id in (_coerce_id(raw) for raw in raw_ids) if doc_id]
        match_type = entry.get("matchType") or entry.get("match_type")

        raw_document_id = entry.get("documentId") or entry.get("document_id")
        document_id = _coerce_id(raw_document_id)
        if raw_document_id is not None and document_id is None:
            classification = "needs_review"
            reasoning.append(f"Malformed document id: {raw_document_id!r}")

        verdicts.append(
            ReasoningVerdict(
                transaction_id=transaction_id,
                classification=classification,
                confidence=_coerce_confidence(entry.get("confidence")),
                reasoning=reasoning,
                match_type=match_type if isinstance(match_type, str) else "none",
                document_id=document_id or (document_ids[0] if document_ids and raw_document_id is None else None),
                document_ids=document_ids,
                document_type=_coerce_id(entry.get("documentType") or entry.get("document_type")),
            )
        )
    return verdicts


class ReasoningClient:
    """Client for the external reasoning service"""

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.reasoning_api_base
        self.model = model or settings.reasoning_model
        self.timeout = timeout or settings.http_timeout_seconds
        self.max_retries = max_retries or settings.reasoning_max_retries
        self.backoff_base = settings.reasoning_backoff_base if backoff_base is None else backoff_base
        self.transport = transport

    async def match(
        self,
        items: Sequence[AnalysisItem],
        effort: str,
        pattern_context: Optional[Dict[str, str]] = None,
    ) -> List[ReasoningVerdict]:
        """
        Classify a batch of transactions against their candidate documents.

        Retry strategy mirrors the webhook client:
        - Exponential backoff: base * 2^(attempt-1)
        - Retries on 5xx errors and network failures (timeouts included)
        - 4xx responses fail immediately

        Raises:
            ReasoningServiceError: On timeout, HTTP errors, or malformed response
        """
        if effort not in EFFORT_LEVELS:
            raise ValueError(f"Unknown effort level: {effort}")

        payload = {
            "model": self.model,
            "effort": effort,
            "prompt": build_prompt(items, effort, pattern_context),
            "transactions": [_transaction_context(item) for item in items],
            "candidates": _candidate_contexts(items),
        }

        attempt = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            while True:
                try:
                    with reasoning_latency_histogram.labels(effort=effort).time():
                        response = await client.post(f"{self.base_url}/v1/reasoning/match", json=payload)
                        response.raise_for_status()
                    data = response.json()
                    break

                except httpx.HTTPStatusError as e:
                    attempt += 1
                    reasoning_failure_counter.inc()
                    if e.response.status_code < 500 or attempt >= self.max_retries:
                        raise ReasoningServiceError(f"Reasoning API error: {e.response.status_code}") from e

                except httpx.TimeoutException as e:
                    attempt += 1
                    reasoning_failure_counter.inc()
                    if attempt >= self.max_retries:
                        raise ReasoningServiceError(f"Reasoning API timeout after {self.timeout}s") from e

                except httpx.RequestError as e:
                    attempt += 1
                    reasoning_failure_counter.inc()
                    if attempt >= self.max_retries:
                        raise ReasoningServiceError(f"Reasoning API unreachable: {e}") from e

                except ValueError as e:
                    reasoning_failure_counter.inc()
                    raise ReasoningServiceError(f"Malformed reasoning response: {e}") from e

                backoff = self.backoff_base * (2 ** (attempt - 1))
                logger.warning(
                    "Reasoning call failed, retrying",
                    extra={"attempt": attempt, "effort": effort, "backoff_seconds": backoff},
                )
                await asyncio.sleep(backoff)

        return parse_verdicts(data)
