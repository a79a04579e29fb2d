"""
HITL threshold gate.

Decides whether a quote may be auto-approved from its analysis rows and the
active hitl_thresholds configuration. Worst case governs: the minimum of each
confidence dimension and the sum of pages/value are compared.

Reads fail open (a customer is never blocked on missing or unreadable data);
a failed gate opens one review and moves the quote to hitl_pending in a
single commit.
"""

import uuid
from decimal import Decimal
from typing import Iterable, Mapping, Optional

import structlog
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from quotedesk.config import settings
from quotedesk.errors import InvalidStateError
from quotedesk.models.enums import QuoteStatus, TriggerReason
from quotedesk.models.tables import AIAnalysisResult, HITLThreshold, utcnow
from quotedesk.observability.metrics import hitl_gate_decisions_total
from quotedesk.quotes.state_machine import apply_transition, get_quote
from quotedesk.review.queue import open_review

logger = structlog.get_logger(__name__)

ONE = Decimal("1")

# threshold key -> (metric name, trigger reason, kind)
THRESHOLD_RULES: dict[str, tuple[str, TriggerReason, str]] = {
    "ocr_confidence_min": ("ocr_confidence", TriggerReason.LOW_OCR_CONFIDENCE, "min"),
    "language_confidence_min": ("language_confidence", TriggerReason.LOW_LANGUAGE_CONFIDENCE, "min"),
    "classification_confidence_min": (
        "document_type_confidence", TriggerReason.LOW_CLASSIFICATION_CONFIDENCE, "min",
    ),
    "complexity_confidence_min": ("complexity_confidence", TriggerReason.LOW_COMPLEXITY_CONFIDENCE, "min"),
    "max_auto_approve_pages": ("total_pages", TriggerReason.HIGH_PAGE_COUNT, "max"),
    "max_auto_approve_value": ("total_value", TriggerReason.HIGH_ORDER_VALUE, "max"),
}

# Gate may move a quote to hitl_pending from these states
GATE_SOURCE_STATES = frozenset({
    QuoteStatus.PROCESSING.value,
    QuoteStatus.REVIEW_REQUIRED.value,
    QuoteStatus.QUOTE_READY.value,
})

ALREADY_IN_HITL_STATES = frozenset({
    QuoteStatus.HITL_PENDING.value,
    QuoteStatus.HITL_IN_REVIEW.value,
})


class AggregateMetrics(BaseModel):
    ocr_confidence: Decimal = ONE
    language_confidence: Decimal = ONE
    document_type_confidence: Decimal = ONE
    complexity_confidence: Decimal = ONE
    total_pages: Decimal = Decimal("0")
    total_value: Decimal = Decimal("0")
    analysis_count: int = 0


class ThresholdCheck(BaseModel):
    value: Decimal
    threshold: Decimal
    passed: bool


class GateDecision(BaseModel):
    passed: bool
    trigger_reasons: list[str] = []
    checks: dict[str, ThresholdCheck] = {}
    priority: Optional[int] = None


class GateOutcome(BaseModel):
    success: bool = True
    passed: bool
    trigger_reasons: list[str] = []
    review_id: Optional[str] = None
    already_in_hitl: bool = False
    priority: Optional[int] = None
    checks: dict[str, ThresholdCheck] = {}
    fail_open_reason: Optional[str] = None


# ── Pure evaluation ──────────────────────────────────────────

def aggregate_analyses(
    rows: Iterable[AIAnalysisResult],
    quote_total: Optional[Decimal] = None,
) -> AggregateMetrics:
    """Minimum per confidence dimension (nulls ignored), sums for pages and value."""
    metrics = AggregateMetrics()
    line_sum = Decimal("0")
    for row in rows:
        metrics.analysis_count += 1
        for name in ("ocr_confidence", "language_confidence", "document_type_confidence", "complexity_confidence"):
            value = getattr(row, name)
            if value is not None:
                setattr(metrics, name, min(getattr(metrics, name), Decimal(str(value))))
        metrics.total_pages += Decimal(str(row.page_count or 0))
        line_sum += Decimal(str(row.line_total or 0))

    quote_total = Decimal(str(quote_total)) if quote_total is not None else Decimal("0")
    metrics.total_value = max(line_sum, quote_total)
    return metrics


def compute_priority(trigger_reasons: list[str]) -> int:
    """Base 5; more reasons and high value make it more urgent (lower). Clamped to 1..10."""
    priority = settings.HITL_DEFAULT_PRIORITY
    if len(trigger_reasons) >= 3:
        priority = 3
    elif len(trigger_reasons) >= 2:
        priority = 4
    if TriggerReason.HIGH_ORDER_VALUE.value in trigger_reasons:
        priority -= 1
    return max(1, min(10, priority))


def evaluate_thresholds(metrics: AggregateMetrics, thresholds: Mapping[str, Decimal]) -> GateDecision:
    """
    Compare aggregate metrics against whatever thresholds are configured.
    Keys that are absent impose no constraint.
    """
    reasons: list[str] = []
    checks: dict[str, ThresholdCheck] = {}

    for key, (metric, reason, kind) in THRESHOLD_RULES.items():
        if key not in thresholds or thresholds[key] is None:
            continue
        threshold = Decimal(str(thresholds[key]))
        value = getattr(metrics, metric)
        passed = value >= threshold if kind == "min" else value <= threshold
        checks[key] = ThresholdCheck(value=value, threshold=threshold, passed=passed)
        if not passed:
            reasons.append(reason.value)

    if not reasons:
        return GateDecision(passed=True, checks=checks)
    return GateDecision(passed=False, trigger_reasons=reasons, checks=checks, priority=compute_priority(reasons))


# ── Database-backed check ────────────────────────────────────

async def load_thresholds(session: AsyncSession) -> dict[str, Decimal]:
    result = await session.execute(
        select(HITLThreshold.threshold_key, HITLThreshold.threshold_value)
        .where(HITLThreshold.is_active.is_(True))
    )
    return {key: Decimal(str(value)) for key, value in result.all()}


async def check_thresholds(session: AsyncSession, quote_id: uuid.UUID) -> GateOutcome:
    """
    Run the gate for a quote. Safe to call repeatedly: a quote already in HITL
    short-circuits, and concurrent callers converge on a single review.
    """
    quote = await get_quote(session, quote_id)

    if quote.status in ALREADY_IN_HITL_STATES:
        hitl_gate_decisions_total.labels(outcome="already_in_hitl").inc()
        logger.info("hitl_gate_already_in_hitl", quote_id=str(quote_id), status=quote.status)
        return GateOutcome(passed=False, already_in_hitl=True)

    quote_status = quote.status
    quote_total = quote.total

    try:
        rows = list((await session.execute(
            select(AIAnalysisResult).where(AIAnalysisResult.quote_id == quote_id)
        )).scalars().all())
        thresholds = await load_thresholds(session)
    except SQLAlchemyError as e:
        await session.rollback()
        hitl_gate_decisions_total.labels(outcome="fail_open").inc()
        logger.warning("hitl_gate_fail_open", quote_id=str(quote_id), error=str(e)[:200])
        return GateOutcome(passed=True, fail_open_reason="threshold_data_unreadable")

    if not rows:
        hitl_gate_decisions_total.labels(outcome="no_analysis").inc()
        logger.info("hitl_gate_no_analysis", quote_id=str(quote_id))
        return GateOutcome(passed=True, fail_open_reason="no_analysis")

    if not thresholds:
        hitl_gate_decisions_total.labels(outcome="fail_open").inc()
        logger.info("hitl_gate_no_thresholds", quote_id=str(quote_id))
        return GateOutcome(passed=True, fail_open_reason="no_active_thresholds")

    decision = evaluate_thresholds(aggregate_analyses(rows, quote_total), thresholds)

    if decision.passed:
        hitl_gate_decisions_total.labels(outcome="passed").inc()
        logger.info("hitl_gate_passed", quote_id=str(quote_id), analysis_count=len(rows))
        return GateOutcome(passed=True, checks=decision.checks)

    if quote_status not in GATE_SOURCE_STATES:
        # e.g. awaiting_payment after staff approval: report, do not reopen
        hitl_gate_decisions_total.labels(outcome="failed_not_routable").inc()
        logger.info("hitl_gate_failed_not_routable", quote_id=str(quote_id), status=quote_status)
        return GateOutcome(
            passed=False, trigger_reasons=decision.trigger_reasons,
            priority=decision.priority, checks=decision.checks,
        )

    opened = await open_review(session, quote_id, decision.trigger_reasons, decision.priority)
    try:
        await apply_transition(
            session, quote_id, quote_status, QuoteStatus.HITL_PENDING,
            {
                "review_id": opened.review_id,
                "trigger_reasons": decision.trigger_reasons,
                "priority": decision.priority,
            },
            values={"hitl_required": True, "hitl_requested_at": utcnow()},
            action_type="hitl_triggered",
        )
    except InvalidStateError:
        # another caller moved the quote first; the review insert was rolled back
        current = await get_quote(session, quote_id)
        if current.status in ALREADY_IN_HITL_STATES:
            hitl_gate_decisions_total.labels(outcome="already_in_hitl").inc()
            return GateOutcome(passed=False, already_in_hitl=True, trigger_reasons=decision.trigger_reasons)
        raise

    hitl_gate_decisions_total.labels(outcome="failed").inc()
    logger.info(
        "hitl_gate_failed",
        quote_id=str(quote_id),
        review_id=opened.review_id,
        trigger_reasons=decision.trigger_reasons,
        priority=decision.priority,
    )
    return GateOutcome(
        passed=False,
        trigger_reasons=decision.trigger_reasons,
        review_id=opened.review_id,
        priority=decision.priority,
        checks=decision.checks,
    )
