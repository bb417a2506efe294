"""Retry / escalate engine for every fallible build operation.

The engine only decides when a single operation has exhausted its policy.
Whether the build continues after an escalation is the orchestrator's call,
driven by the failure mode carried on OperationFailure.
"""

from __future__ import annotations

import collections
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, TypeVar

from ..errors import BuildError, BuildInterrupted, SessionIntegrityViolation
from .cancellation import CancellationToken
from .classifier import Category, OperationDescriptor, classify
from .diagnostics import DiagnosticAdvisor, DiagnosticRequest, NullAdvisor, Suggestion
from .resources import ResourceTracker

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Backoff(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    LINEAR = "linear"


class FailureMode(str, Enum):
    GRACEFUL = "graceful"
    STRICT = "strict"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 0
    backoff: Backoff = Backoff.NONE
    delay_s: float = 0.0
    consult_advisor: bool = False
    remediation: Optional[str] = None

    @property
    def max_attempts(self) -> int:
        return 1 + max(0, self.max_retries)

    def delay_for(self, attempt: int) -> float:
        """Pause after failed attempt number `attempt` (1-based)."""
        if self.backoff == Backoff.LINEAR:
            return self.delay_s * attempt
        if self.backoff == Backoff.FIXED:
            return self.delay_s
        return 0.0


DEFAULT_POLICIES: Dict[Category, RetryPolicy] = {
    Category.TRANSIENT_NETWORK: RetryPolicy(max_retries=3, backoff=Backoff.LINEAR, delay_s=2.0),
    Category.RESOURCE_BUSY: RetryPolicy(max_retries=3, backoff=Backoff.FIXED, delay_s=1.0),
    Category.PERMISSION_DENIED: RetryPolicy(max_retries=0),
    Category.VALIDATION_FAILED: RetryPolicy(max_retries=0),
    Category.DISK_SPACE: RetryPolicy(max_retries=1, remediation="apt-clean"),
    Category.UNCLASSIFIED: RetryPolicy(max_retries=2, backoff=Backoff.FIXED, delay_s=1.0, consult_advisor=True),
}


def policies_from_config(raw: Mapping[str, Any]) -> Dict[Category, RetryPolicy]:
    """Overlay `recovery.policies` config entries onto the defaults."""

    out = dict(DEFAULT_POLICIES)
    for key, entry in (raw or {}).items():
        category = Category(key)
        base = out[category]
        entry = entry or {}
        out[category] = replace(
            base,
            max_retries=int(entry.get("max_retries", base.max_retries)),
            backoff=Backoff(entry.get("backoff", base.backoff.value)),
            delay_s=float(entry.get("delay_s", base.delay_s)),
            consult_advisor=bool(entry.get("consult_advisor", base.consult_advisor)),
            remediation=entry.get("remediation", base.remediation),
        )
    return out


@dataclass(frozen=True)
class AttemptRecord:
    attempt: int
    category: Category
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {"attempt": self.attempt, "category": self.category.value, "error": self.error}


@dataclass
class OperationRecord:
    descriptor: OperationDescriptor
    category: Optional[Category] = None
    attempt_count: int = 0
    max_attempts: int = 1
    last_error: Optional[BaseException] = None
    history: List[AttemptRecord] = field(default_factory=list)
    suggestion: Optional[Suggestion] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "operation": self.descriptor.name,
            "category": self.category.value if self.category else None,
            "attempts": self.attempt_count,
            "ok": self.last_error is None,
        }


class OperationFailure(BuildError):
    """An operation exhausted its retry policy."""

    def __init__(self, record: OperationRecord, mode: FailureMode) -> None:
        self.record = record
        self.descriptor = record.descriptor
        self.category = record.category or Category.UNCLASSIFIED
        self.history = list(record.history)
        self.suggestion = record.suggestion
        self.mode = mode
        super().__init__(
            f"{record.descriptor.name} failed after {record.attempt_count} attempt(s) "
            f"[{self.category.value}]: {record.last_error}"
        )

    @property
    def graceful(self) -> bool:
        return self.mode == FailureMode.GRACEFUL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.descriptor.to_dict(),
            "category": self.category.value,
            "attempts": [a.to_dict() for a in self.history],
            "suggestion": self.suggestion.to_dict() if self.suggestion else None,
            "mode": self.mode.value,
        }


class RecoveryEngine:
    def __init__(
        self,
        *,
        token: CancellationToken,
        policies: Optional[Mapping[Category, RetryPolicy]] = None,
        failure_mode: FailureMode = FailureMode.GRACEFUL,
        advisor: Optional[DiagnosticAdvisor] = None,
        remediations: Optional[Mapping[str, Callable[[], None]]] = None,
        history_size: int = 20,
    ) -> None:
        self.token = token
        self.policies: Dict[Category, RetryPolicy] = dict(DEFAULT_POLICIES)
        self.policies.update(policies or {})
        self.failure_mode = failure_mode
        self.advisor: DiagnosticAdvisor = advisor or NullAdvisor()
        self.remediations: Dict[str, Callable[[], None]] = dict(remediations or {})
        self.recent: Deque[Dict[str, Any]] = collections.deque(maxlen=history_size)
        self.last_record: Optional[OperationRecord] = None

    def register_remediation(self, name: str, fn: Callable[[], None]) -> None:
        self.remediations[name] = fn

    def run(
        self,
        descriptor: OperationDescriptor,
        action: Callable[[], T],
        policy_override: Optional[Mapping[Category, RetryPolicy]] = None,
        tracker: Optional[ResourceTracker] = None,
    ) -> T:
        """Execute `action` under the retry policy of whatever it fails with.

        Resources acquired on `tracker` during a failed attempt are released
        before the next attempt, and after the final one.
        """

        record = OperationRecord(descriptor=descriptor)
        self.last_record = record
        policies = dict(self.policies)
        policies.update(policy_override or {})

        while True:
            self.token.raise_if_cancelled()
            mark = tracker.mark() if tracker is not None else None
            record.attempt_count += 1
            started = time.monotonic()
            try:
                result = action()
            except (BuildInterrupted, SessionIntegrityViolation):
                raise
            except Exception as e:
                category = classify(descriptor, e)
                record.category = category
                record.last_error = e
                record.history.append(AttemptRecord(record.attempt_count, category, str(e)))
                policy = policies[category]
                record.max_attempts = policy.max_attempts
                logger.warning(
                    "%s failed (attempt %d/%d, %s): %s",
                    descriptor.name,
                    record.attempt_count,
                    record.max_attempts,
                    category.value,
                    e,
                )

                if tracker is not None and mark is not None:
                    leaked = tracker.release_above(mark)
                    if leaked.failures:
                        logger.error("%s: could not release resources from the failed attempt", descriptor.name)

                if record.attempt_count >= record.max_attempts:
                    return self._escalate(record)

                if policy.remediation:
                    self._remediate(record.descriptor, policy.remediation)
                elif policy.consult_advisor and record.attempt_count == record.max_attempts - 1:
                    self._consult(record)

                self.token.sleep(policy.delay_for(record.attempt_count))
                continue

            record.last_error = None
            self.recent.append(record.summary())
            logger.debug("%s ok in %.1fs (attempt %d)", descriptor.name, time.monotonic() - started, record.attempt_count)
            return result

    def _escalate(self, record: OperationRecord) -> Any:
        self.recent.append(record.summary())
        failure = OperationFailure(record, self.failure_mode)
        logger.error(
            "ESCALATED %s: category=%s attempts=%d suggestion=%s",
            record.descriptor.name,
            failure.category.value,
            record.attempt_count,
            record.suggestion.action if record.suggestion else "none",
        )
        raise failure

    def _consult(self, record: OperationRecord) -> None:
        request = DiagnosticRequest(
            descriptor=record.descriptor.to_dict(),
            error_text=str(record.last_error),
            history=list(self.recent),
            remediations=sorted(self.remediations),
        )
        try:
            suggestion = self.advisor.suggest(request)
        except Exception as e:
            logger.debug("Diagnostic advisor raised: %s", e)
            suggestion = None

        if suggestion is None:
            logger.info("%s: no diagnostic suggestion; retrying as-is", record.descriptor.name)
            return

        record.suggestion = suggestion
        logger.warning(
            "%s: diagnostic suggestion %r (%s)",
            record.descriptor.name,
            suggestion.action,
            suggestion.rationale or "no rationale",
        )
        self._remediate(record.descriptor, suggestion.action)

    def _remediate(self, descriptor: OperationDescriptor, name: str) -> None:
        fn = self.remediations.get(name)
        if fn is None:
            logger.info("Unknown remediation %r ignored", name)
            return
        logger.info("%s: running remediation %r before retrying", descriptor.name, name)
        try:
            fn()
        except (BuildInterrupted, SessionIntegrityViolation):
            raise
        except Exception as e:
            logger.warning("Remediation %r failed: %s", name, e)
