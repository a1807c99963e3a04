"""Request triage: decide whether an agent-applied edit can ship or needs a human.

``evaluate`` is pure. Hard-stop rules short-circuit; trigger rules accumulate
in order and decide between ``major`` and ``uncertain`` when any fires.
"""

import re
from dataclasses import dataclass

POLICY_VERSION = "v1"

AGENT_ERROR = "agent_execution_error"
INCOMPLETE_NO_EDITS = "agent_incomplete_no_edits"
INCOMPLETE_WITH_EDITS = "agent_incomplete_with_edits"
EMPTY_REQUEST = "empty_request"
WIDE_CHANGE = "wide_file_change_set"

# Triggers that mean "we don't know what happened" rather than "this is big".
UNCERTAIN_TRIGGERS = frozenset({AGENT_ERROR, INCOMPLETE_WITH_EDITS})

MAJOR_INTENT_PATTERNS = (
    re.compile(r"\b(booking system|appointment system|reservation system)\b", re.I),
    re.compile(r"\b(payment|checkout|stripe|subscription|billing)\b", re.I),
    re.compile(r"\b(login|sign[ -]?in|authentication|auth)\b", re.I),
    re.compile(r"\b(database|schema|migration|api endpoint|backend)\b", re.I),
    re.compile(r"\b(redesign|rebuild|complete overhaul|new layout)\b", re.I),
    re.compile(r"\b(integration|webhook|crm|erp)\b", re.I),
)

HIGH_RISK_FILE_PATTERNS = (
    re.compile(r"(^|/)\.env(\.|$)", re.I),
    re.compile(r"(^|/)package\.json$", re.I),
    re.compile(r"(^|/)(package-lock\.json|yarn\.lock|pnpm-lock\.yaml|bun\.lockb?)$", re.I),
    re.compile(r"(^|/)(vite|webpack|tsconfig|next|nuxt|astro)\.config", re.I),
    re.compile(r"(^|/)(server|backend|api|functions?)/", re.I),
    re.compile(r"(^|/)(routes?|router)/", re.I),
)

REASON_AGENT_ERROR = (
    "The assistant encountered an error and could not complete the request "
    "cleanly, so manual review is required."
)
REASON_INCOMPLETE = (
    "The assistant did not complete successfully and made no file changes, "
    "so manual review is required."
)
REASON_EMPTY = "The request content is empty or invalid and needs manual handling."
REASON_MAJOR = (
    "This request exceeds the safe auto-edit policy and should be reviewed "
    "before billing and implementation."
)
REASON_UNCERTAIN = (
    "The assistant's run did not finish cleanly, so the changes need a manual "
    "check before they ship."
)
REASON_MINOR = "Request appears to be a small, low-risk website content or styling update."


@dataclass(frozen=True)
class TriageResult:
    decision: str  # auto | flag
    scope: str  # minor | major | uncertain
    confidence: float
    reason: str
    triggers: tuple[str, ...] = ()
    policy_version: str = POLICY_VERSION

    @property
    def flagged(self) -> bool:
        return self.decision == "flag"

    @property
    def confidence_pct(self) -> int:
        return max(0, min(100, round(self.confidence * 100)))

    def to_dict(self) -> dict:
        return {
            "decision": self.decision,
            "scope": self.scope,
            "confidence": self.confidence,
            "reason": self.reason,
            "triggers": list(self.triggers),
            "policy_version": self.policy_version,
        }


@dataclass(frozen=True)
class TriagePolicy:
    wide_change_threshold: int = 8
    major_intent_patterns: tuple[re.Pattern, ...] = MAJOR_INTENT_PATTERNS
    high_risk_file_patterns: tuple[re.Pattern, ...] = HIGH_RISK_FILE_PATTERNS
    # A failed run that still edited files normally falls through to the
    # content rules; when set, it is flagged as uncertain instead.
    flag_incomplete_with_edits: bool = False
    version: str = POLICY_VERSION


DEFAULT_POLICY = TriagePolicy()


def _hard_stop(triggers: tuple[str, ...], confidence: float, reason: str, policy: TriagePolicy):
    return TriageResult(
        decision="flag",
        scope="uncertain",
        confidence=confidence,
        reason=reason,
        triggers=triggers,
        policy_version=policy.version,
    )


def evaluate(
    request_text: str,
    files_touched: list[str] | tuple[str, ...] = (),
    agent_succeeded: bool = True,
    agent_errored: bool = False,
    policy: TriagePolicy = DEFAULT_POLICY,
) -> TriageResult:
    """Classify one completed agent run."""
    request = (request_text or "").strip()
    files = list(files_touched or ())

    if agent_errored:
        return _hard_stop((AGENT_ERROR,), 0.97, REASON_AGENT_ERROR, policy)

    if not agent_succeeded and not files:
        return _hard_stop((INCOMPLETE_NO_EDITS,), 0.90, REASON_INCOMPLETE, policy)

    if not request:
        return _hard_stop((EMPTY_REQUEST,), 0.90, REASON_EMPTY, policy)

    triggers: list[str] = []

    if not agent_succeeded and policy.flag_incomplete_with_edits:
        triggers.append(INCOMPLETE_WITH_EDITS)

    for pattern in policy.major_intent_patterns:
        if pattern.search(request):
            triggers.append(f"major_intent:{pattern.pattern}")
            break

    if len(files) > policy.wide_change_threshold:
        triggers.append(WIDE_CHANGE)

    for path in files:
        normalized = path.replace("\\", "/")
        if any(p.search(normalized) for p in policy.high_risk_file_patterns):
            triggers.append(f"high_risk_file:{path}")
            break

    if triggers:
        uncertain = any(t in UNCERTAIN_TRIGGERS for t in triggers)
        return TriageResult(
            decision="flag",
            scope="uncertain" if uncertain else "major",
            confidence=0.97 if uncertain else 0.84,
            reason=REASON_UNCERTAIN if uncertain else REASON_MAJOR,
            triggers=tuple(triggers),
            policy_version=policy.version,
        )

    return TriageResult(
        decision="auto",
        scope="minor",
        confidence=0.92,
        reason=REASON_MINOR,
        triggers=(),
        policy_version=policy.version,
    )


def policy_from_config(config) -> TriagePolicy:
    return TriagePolicy(wide_change_threshold=config.wide_change_threshold)
