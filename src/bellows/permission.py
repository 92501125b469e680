"""Tool permission rules.

Rules map a key to an action. A key is a permission name glob (``"edit"``,
``"*"``) optionally followed by ``:`` and a pattern glob matched against the
concrete target, e.g. ``"bash:git status*"``. Rules are checked in order and the
last matching rule wins; when nothing matches the action is ``ask``.
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)

ALLOW = "allow"
DENY = "deny"
ASK = "ask"
ACTIONS = (ALLOW, DENY, ASK)


@dataclass(frozen=True)
class PermissionRequest:
    session_id: str
    message_id: str
    call_id: str
    permission: str
    patterns: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


AskFn = Callable[[PermissionRequest], bool]


def _split_key(key: str) -> tuple[str, str | None]:
    name, sep, pattern = key.partition(":")
    return name, (pattern if sep else None)


def evaluate(rules: Mapping[str, str], permission: str, pattern: str | None = None) -> str:
    action = ASK
    for key, value in rules.items():
        if value not in ACTIONS:
            raise ValueError(f"Unknown permission action {value!r} for {key!r}")
        name_glob, pattern_glob = _split_key(key)
        if not fnmatch.fnmatchcase(permission, name_glob):
            continue
        if pattern_glob is not None:
            if pattern is None or not fnmatch.fnmatchcase(pattern, pattern_glob):
                continue
        action = value
    return action


def is_disabled(rules: Mapping[str, str], permission: str) -> bool:
    """True when the permission is denied outright, regardless of target."""
    return evaluate(rules, permission) == DENY


def resolve(
    rules: Mapping[str, str],
    request: PermissionRequest,
    ask: AskFn | None,
) -> bool:
    """Decide a request; ``ask`` actions go to the caller-supplied approval function."""
    targets = request.patterns or (None,)
    for target in targets:
        action = evaluate(rules, request.permission, target)
        if action == ALLOW:
            continue
        if action == DENY:
            logger.info(f"Denied {request.permission} for {target}")
            return False
        if ask is None:
            logger.info(f"No approver for {request.permission}; denying")
            return False
        if not ask(request):
            return False
    return True
