"""Bounded escalation shared by the reset and apply protocols.

An escalation is an ordered list of attempts. Each attempt runs one command;
when it fails, its output is classified and the attempt's ``on_failure``
table names the next attempt for that :class:`FailureKind`. A kind with no
entry is terminal. An attempt is never run twice in one escalation, so a
table that points back at an earlier attempt terminates instead of looping.
"""

from collections.abc import Callable
from dataclasses import dataclass, field

from cluster_bootstrap.classify import DEFAULT_RULES, FailureRules, classify_failure
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.outcomes import CommandResult, FailureKind, TrustMode

logger = get_logger(__name__)


@dataclass
class Attempt:
    """One rung of an escalation ladder."""

    mode: TrustMode
    run: Callable[[], CommandResult]
    on_failure: dict[FailureKind, TrustMode] = field(default_factory=dict)


@dataclass
class AttemptRecord:
    mode: TrustMode
    result: CommandResult
    kind: FailureKind | None = None


@dataclass
class EscalationResult:
    """Trail of attempts made and how the escalation ended."""

    records: list[AttemptRecord] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return bool(self.records) and self.records[-1].result.ok

    @property
    def modes(self) -> tuple[TrustMode, ...]:
        return tuple(r.mode for r in self.records)

    @property
    def last(self) -> AttemptRecord:
        return self.records[-1]

    @property
    def final_kind(self) -> FailureKind | None:
        return None if self.succeeded else self.last.kind

    def diagnostics(self) -> str:
        """Every failed attempt's output, oldest first."""
        lines = []
        for record in self.records:
            if record.result.ok:
                continue
            lines.append(f"--- {record.mode.value} (exit {record.result.returncode}) ---")
            lines.append(record.result.output or "<no output>")
        return "\n".join(lines)


def escalate(
    node: str, attempts: list[Attempt], rules: FailureRules = DEFAULT_RULES
) -> EscalationResult:
    """Run attempts in escalation order until one succeeds or a terminal failure.

    Args:
        node: Node address, for logging
        attempts: Escalation ladder; the first entry runs first
        rules: Failure classification rules

    Returns:
        EscalationResult holding the full attempt trail
    """
    by_mode = {a.mode: a for a in attempts}
    outcome = EscalationResult()
    tried: set[TrustMode] = set()
    current = attempts[0] if attempts else None

    while current is not None:
        tried.add(current.mode)
        logger.info(f"{node}: attempting {current.mode.value}")
        result = current.run()
        if result.ok:
            outcome.records.append(AttemptRecord(current.mode, result))
            logger.info(f"{node}: {current.mode.value} succeeded")
            break

        kind = classify_failure(result.output, rules)
        outcome.records.append(AttemptRecord(current.mode, result, kind))
        next_mode = current.on_failure.get(kind)
        if next_mode is None or next_mode in tried or next_mode not in by_mode:
            logger.warning(
                f"{node}: {current.mode.value} failed ({kind.value}), no further escalation"
            )
            break

        logger.info(
            f"{node}: {current.mode.value} failed ({kind.value}), escalating to {next_mode.value}"
        )
        current = by_mode[next_mode]

    return outcome
