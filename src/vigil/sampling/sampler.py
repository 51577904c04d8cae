# src/vigil/sampling/sampler.py
"""Keep/drop decisions for errors and transactions.

Errors are sampled at a fixed sample_rate. Transactions follow, in order:
    1. the parent's decision carried in the propagation context (always wins,
       so a trace is sampled consistently end to end);
    2. a traces_sampler callable returning a bool or a rate;
    3. the fixed traces_sample_rate.

Every drop is recorded as a ``sample_rate`` outcome with the shared
ClientReportManager.
"""

import hashlib
import random as _random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import Any

import structlog

from vigil.contracts.enums import DataCategory, DiscardReason
from vigil.sampling.client_reports import ClientReportManager
from vigil.tracing.propagation import PropagationContext

logger = structlog.get_logger(__name__)


class SamplingReason(StrEnum):
    """Which rule produced a transaction decision."""

    INHERITED = "inherited"
    SAMPLER = "sampler"
    RATE = "rate"


@dataclass(frozen=True, slots=True)
class SamplingContext:
    """Input handed to a traces_sampler callable.

    Attributes:
        name: Transaction name
        parent_sampled: Decision inherited from the incoming trace, if any
        op: Transaction operation (``http.server``, ``task``...)
        attributes: Free-form data the caller wants the sampler to see
    """

    name: str
    parent_sampled: bool | None = None
    op: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SamplingDecision:
    sampled: bool
    reason: SamplingReason
    sample_rate: float | None = None


TracesSampler = Callable[[SamplingContext], bool | float]


def _clamp_rate(name: str, rate: float) -> float:
    if 0.0 <= rate <= 1.0:
        return float(rate)
    clamped = min(1.0, max(0.0, float(rate)))
    logger.warning("Sample rate out of range, clamping", option=name, value=rate, clamped=clamped)
    return clamped


class SamplingStats:
    """Running keep/drop counters per category and per decision reason."""

    def __init__(self) -> None:
        self._categories: dict[DataCategory, dict[str, int]] = {}
        self._by_reason: dict[DataCategory, dict[str, dict[str, int]]] = {}

    def record(self, category: DataCategory, sampled: bool, reason: str = SamplingReason.RATE) -> None:
        counts = self._categories.setdefault(category, {"total": 0, "sampled": 0, "dropped": 0})
        outcome = "sampled" if sampled else "dropped"
        counts["total"] += 1
        counts[outcome] += 1
        reason_counts = self._by_reason.setdefault(category, {}).setdefault(str(reason), {"sampled": 0, "dropped": 0})
        reason_counts[outcome] += 1

    def total(self, category: DataCategory) -> int:
        return self._categories.get(category, {}).get("total", 0)

    def sampled(self, category: DataCategory) -> int:
        return self._categories.get(category, {}).get("sampled", 0)

    def dropped(self, category: DataCategory) -> int:
        return self._categories.get(category, {}).get("dropped", 0)

    def sample_ratio(self, category: DataCategory) -> float:
        """Observed fraction kept (0.0 when nothing was recorded)."""
        total = self.total(category)
        return self.sampled(category) / total if total else 0.0

    @property
    def total_sampled(self) -> int:
        return sum(counts["sampled"] for counts in self._categories.values())

    @property
    def total_dropped(self) -> int:
        return sum(counts["dropped"] for counts in self._categories.values())

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of all counters, keyed by category value."""
        return {
            str(category): {
                **counts,
                "by_reason": {reason: dict(c) for reason, c in self._by_reason.get(category, {}).items()},
            }
            for category, counts in self._categories.items()
        }

    def reset(self) -> None:
        self._categories.clear()
        self._by_reason.clear()


class Sampler:
    """Sampling decisions for errors and transactions.

    Example:
        sampler = Sampler(sample_rate=0.5, traces_sample_rate=0.1, client_reports=reports)
        if sampler.should_sample_error():
            ...
        decision = sampler.sample_transaction(SamplingContext(name="GET /users"))
    """

    def __init__(
        self,
        sample_rate: float = 1.0,
        traces_sample_rate: float = 0.0,
        traces_sampler: TracesSampler | None = None,
        *,
        client_reports: ClientReportManager | None = None,
        random: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the sampler.

        Args:
            sample_rate: Probability of keeping an error, clamped to [0, 1]
            traces_sample_rate: Probability of keeping a transaction, clamped to [0, 1]
            traces_sampler: Optional per-transaction decision function
            client_reports: Shared outcome accumulator for drops
            random: Uniform [0, 1) source; injectable for deterministic tests
        """
        self._sample_rate = _clamp_rate("sample_rate", sample_rate)
        self._traces_sample_rate = _clamp_rate("traces_sample_rate", traces_sample_rate)
        self._traces_sampler = traces_sampler
        self._client_reports = client_reports
        self._random = random or _random.random
        self.stats = SamplingStats()

    @property
    def sample_rate(self) -> float:
        return self._sample_rate

    @property
    def traces_sample_rate(self) -> float:
        return self._traces_sample_rate

    @property
    def has_traces_sampler(self) -> bool:
        return self._traces_sampler is not None

    def update_options(
        self,
        *,
        sample_rate: float | None = None,
        traces_sample_rate: float | None = None,
        traces_sampler: TracesSampler | None = None,
    ) -> None:
        if sample_rate is not None:
            self._sample_rate = _clamp_rate("sample_rate", sample_rate)
        if traces_sample_rate is not None:
            self._traces_sample_rate = _clamp_rate("traces_sample_rate", traces_sample_rate)
        if traces_sampler is not None:
            self._traces_sampler = traces_sampler

    def _draw(self, rate: float) -> bool:
        if rate >= 1.0:
            return True
        if rate <= 0.0:
            return False
        return self._random() < rate

    def _record(self, category: DataCategory, sampled: bool, reason: SamplingReason) -> None:
        self.stats.record(category, sampled, reason)
        if not sampled and self._client_reports is not None:
            self._client_reports.record_outcome(DiscardReason.SAMPLE_RATE, category)

    def should_sample_error(self) -> bool:
        """Decide whether to keep one error event."""
        sampled = self._draw(self._sample_rate)
        self._record(DataCategory.ERROR, sampled, SamplingReason.RATE)
        return sampled

    def sample_transaction(self, context: SamplingContext) -> SamplingDecision:
        """Decide whether to keep a transaction.

        A traces_sampler that raises or returns something other than a bool
        or number is logged and ignored in favour of traces_sample_rate.
        """
        decision = self._decide_transaction(context)
        self._record(DataCategory.TRANSACTION, decision.sampled, decision.reason)
        return decision

    def should_sample_transaction(self, context: SamplingContext) -> bool:
        return self.sample_transaction(context).sampled

    def _decide_transaction(self, context: SamplingContext) -> SamplingDecision:
        if context.parent_sampled is not None:
            return SamplingDecision(sampled=context.parent_sampled, reason=SamplingReason.INHERITED)

        if self._traces_sampler is not None:
            try:
                result = self._traces_sampler(context)
            except Exception as e:
                logger.warning("traces_sampler raised, using traces_sample_rate", error=str(e), transaction=context.name)
            else:
                if isinstance(result, bool):
                    return SamplingDecision(sampled=result, reason=SamplingReason.SAMPLER, sample_rate=float(result))
                if isinstance(result, (int, float)):
                    rate = _clamp_rate("traces_sampler", result)
                    return SamplingDecision(sampled=self._draw(rate), reason=SamplingReason.SAMPLER, sample_rate=rate)
                logger.warning(
                    "traces_sampler returned unsupported value, using traces_sample_rate",
                    value_type=type(result).__name__,
                    transaction=context.name,
                )

        rate = self._traces_sample_rate
        return SamplingDecision(sampled=self._draw(rate), reason=SamplingReason.RATE, sample_rate=rate)

    def sample_propagation_context(
        self,
        context: PropagationContext,
        *,
        name: str,
        op: str | None = None,
        attributes: Mapping[str, Any] | None = None,
    ) -> tuple[PropagationContext, SamplingDecision]:
        """Apply a transaction decision to a propagation context.

        The context's own ``sampled`` flag is treated as the parent decision.
        The returned context carries the decision and, when it has a DSC,
        ``sampled``/``sample_rate`` entries in the DSC.
        """
        decision = self.sample_transaction(
            SamplingContext(name=name, parent_sampled=context.sampled, op=op, attributes=attributes or {})
        )
        updated = replace(context, sampled=decision.sampled)
        if context.dsc is not None:
            dsc = dict(context.dsc)
            dsc["sampled"] = "true" if decision.sampled else "false"
            if decision.sample_rate is not None:
                dsc["sample_rate"] = f"{decision.sample_rate:g}"
            updated = updated.with_dsc(dsc)
        return updated, decision


def deterministic_sample(stable_id: str, rate: float) -> bool:
    """Sticky decision: the same id and rate always give the same answer.

    Used for per-user or per-session sampling where repeated random draws
    would flap.
    """
    if rate >= 1.0:
        return True
    if rate <= 0.0:
        return False
    digest = hashlib.sha256(stable_id.encode("utf-8")).digest()
    bucket = int.from_bytes(digest[:8], "big") / 2**64
    return bucket < rate
