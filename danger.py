"""
Danger classification and the confirmation gate.

WHAT THIS FILE DOES:
-------------------
Before the controller runs a step it asks two questions:

1. classify(): which dangerous-action categories does the step's description
   mention? (file deletion, git push, package publish, env changes, outbound
   network calls, destructive SQL)
2. requires_confirmation(): given the run config, does the step need a human
   to say yes before it runs?

The patterns are deliberately simple substring/regex checks. They flag
candidates for a human to look at; they are not a sandbox.
"""

import re

from schemas import (
    AutoExecutionConfig,
    ConfirmationDecision,
    DangerCategory,
    PlanStep,
)


# Steps estimated above this many tokens always need confirmation
HIGH_TOKEN_ESTIMATE_THRESHOLD = 5000


DANGEROUS_PATTERNS: dict[DangerCategory, list[re.Pattern]] = {
    DangerCategory.FILE_DELETE: [
        re.compile(r"rm\s+-rf"),
        re.compile(r"unlink\("),
        re.compile(r"fs\.rm"),
        re.compile(r"deleteFile"),
        re.compile(r"removeSync"),
        re.compile(r"shutil\.rmtree"),
        re.compile(r"os\.remove"),
    ],
    DangerCategory.GIT_PUSH: [
        re.compile(r"git\s+push"),
        re.compile(r"git\s+push\s+--force"),
        re.compile(r"git\s+push\s+-f"),
    ],
    DangerCategory.PACKAGE_PUBLISH: [
        re.compile(r"npm\s+publish"),
        re.compile(r"pnpm\s+publish"),
        re.compile(r"yarn\s+publish"),
        re.compile(r"twine\s+upload"),
    ],
    DangerCategory.ENV_CHANGE: [
        re.compile(r"process\.env"),
        re.compile(r"\.env"),
        re.compile(r"setEnv"),
        re.compile(r"os\.environ"),
    ],
    DangerCategory.EXTERNAL_API: [
        re.compile(r"fetch\(.*https?://(?!localhost)"),
        re.compile(r"axios\."),
        re.compile(r"http\.request"),
    ],
    DangerCategory.DATABASE_WRITE: [
        re.compile(r"INSERT\s+INTO"),
        re.compile(r"UPDATE\s+"),
        re.compile(r"DELETE\s+FROM"),
        re.compile(r"DROP\s+TABLE"),
    ],
}


def classify(description: str) -> set[DangerCategory]:
    """
    Return every danger category whose patterns match the description.

    Example:
        classify("Run git push --force to main")
        # {DangerCategory.GIT_PUSH}
    """
    detected = set()
    for category, patterns in DANGEROUS_PATTERNS.items():
        if any(pattern.search(description) for pattern in patterns):
            detected.add(category)
    return detected


def requires_confirmation(step: PlanStep, config: AutoExecutionConfig) -> ConfirmationDecision:
    """
    Decide whether a step must be confirmed before it runs.

    Two independent triggers:
    - a detected category that is listed in `require_confirmation_for`,
      only while `pause_on_dangerous_actions` is on
    - an `estimated_tokens` above HIGH_TOKEN_ESTIMATE_THRESHOLD

    Returns:
        ConfirmationDecision with human-readable reasons for the UI
    """
    reasons = []

    if config.pause_on_dangerous_actions:
        flagged = classify(step.description) & config.require_confirmation_for
        if flagged:
            # Stable order for display
            names = [c.value for c in DangerCategory if c in flagged]
            reasons.append(f"Contains dangerous operations: {', '.join(names)}")

    if step.estimated_tokens and step.estimated_tokens > HIGH_TOKEN_ESTIMATE_THRESHOLD:
        reasons.append(f"High token estimate: {step.estimated_tokens} tokens")

    return ConfirmationDecision(required=bool(reasons), reasons=reasons)
