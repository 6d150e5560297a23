"""Classification of talosctl diagnostic output.

All escalation decisions switch on :class:`FailureKind`; this module is the
only place that looks at raw diagnostic text. The substrings differ between
talosctl releases, so they live in :class:`FailureRules`, which can be
overridden from the ``settings.failure_rules`` section of the config file.
"""

from pydantic import BaseModel, Field

from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.outcomes import FailureKind

logger = get_logger(__name__)


class FailureRules(BaseModel):
    """Case-insensitive substrings that identify each failure kind.

    Rules are checked in order: maintenance mode, certificate required, TLS
    trust mismatch. Output matching none of them is ``UNKNOWN``.
    """

    maintenance_mode: list[str] = Field(
        default_factory=lambda: [
            "maintenance mode",
            "not implemented in maintenance",
        ]
    )
    certificate_required: list[str] = Field(
        default_factory=lambda: [
            "certificate required",
            "tls: certificate required",
        ]
    )
    tls_trust_mismatch: list[str] = Field(
        default_factory=lambda: [
            "x509:",
            "certificate signed by unknown authority",
            "failed to verify certificate",
            "authentication handshake failed",
            "bad certificate",
        ]
    )

    def ordered(self) -> list[tuple[FailureKind, list[str]]]:
        return [
            (FailureKind.MAINTENANCE_MODE, self.maintenance_mode),
            (FailureKind.CERTIFICATE_REQUIRED, self.certificate_required),
            (FailureKind.TLS_TRUST_MISMATCH, self.tls_trust_mismatch),
        ]


DEFAULT_RULES = FailureRules()


def classify_failure(raw_output: str, rules: FailureRules = DEFAULT_RULES) -> FailureKind:
    """Map the output of a failed command to a :class:`FailureKind`.

    Args:
        raw_output: Combined stdout/stderr of the failed command
        rules: Substring rules to match against

    Returns:
        The first matching kind, or ``FailureKind.UNKNOWN``
    """
    text = (raw_output or "").lower()
    for kind, patterns in rules.ordered():
        for pattern in patterns:
            if pattern.lower() in text:
                logger.debug(f"Classified failure as {kind.value} (matched '{pattern}')")
                return kind
    return FailureKind.UNKNOWN
