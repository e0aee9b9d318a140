from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import lru_cache
from typing import Any, Callable, Iterable, Mapping, Sequence

from ..core.config import PolicySettings
from ..core.exceptions import PolicyViolationError
from ..core.logging import get_logger
from ..core.metrics import increment_policy_decision, set_temporary_grants
from ..services.audit import AuditLogger
from ..services.events import EventBus
from .enums import PolicyAction, PolicyDecisionType, ResourceType

logger = get_logger(name=__name__)

WILDCARD = "*"
NO_MATCH_REASON = "No matching policy found"

ALL_ACTIONS: tuple[str, ...] = tuple(action.value for action in PolicyAction)
ALL_RESOURCES: tuple[str, ...] = tuple(resource.value for resource in ResourceType)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _value(item: str | Enum) -> str:
    return item.value if isinstance(item, Enum) else str(item)


@dataclass(frozen=True, slots=True)
class PolicyRule:
    rule_id: str
    agent_role: str
    action: str
    resource: str
    resource_pattern: str | None = None
    expires_at: datetime | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if self.resource_pattern is not None:
            try:
                re.compile(self.resource_pattern)
            except re.error as exc:
                raise ValueError(f"Invalid resource pattern for rule {self.rule_id}: {exc}") from exc

    @property
    def temporary(self) -> bool:
        return self.expires_at is not None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def matches(self, role: str, action: str, resource: str, resource_id: str | None = None) -> bool:
        if self.agent_role not in (WILDCARD, role):
            return False
        if self.action not in (WILDCARD, action):
            return False
        if self.resource not in (WILDCARD, resource):
            return False
        if self.resource_pattern is None:
            return True
        # A scoped rule never matches an unscoped request.
        if resource_id is None:
            return False
        return re.search(self.resource_pattern, resource_id) is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "agent_role": self.agent_role,
            "action": self.action,
            "resource": self.resource,
            "resource_pattern": self.resource_pattern,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "description": self.description,
        }


@dataclass(slots=True)
class PolicyCheckResult:
    allowed: bool
    reason: str
    matched_rule: str | None = None
    temporary: bool = False

    @property
    def decision(self) -> PolicyDecisionType:
        return PolicyDecisionType.ALLOW if self.allowed else PolicyDecisionType.DENY

    def as_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "decision": self.decision.value,
            "reason": self.reason,
            "matched_rule": self.matched_rule,
            "temporary": self.temporary,
        }


@dataclass(frozen=True, slots=True)
class ToolPolicyTarget:
    action: str
    resource: str
    resource_id: str | None = None


# Capability sets are spelled out per role so the permission surface can be
# listed without evaluating wildcards.
_ROLE_CAPABILITIES: Mapping[str, Mapping[str, Sequence[str]]] = {
    "coder": {
        "write": ("file",),
    },
    "researcher": {
        "network": ("web",),
    },
    "reviewer": {
        "read": ("file",),
    },
    "assistant": {action: ALL_RESOURCES for action in ALL_ACTIONS},
    "executor": {action: ALL_RESOURCES for action in ALL_ACTIONS},
}

# tool name -> (action, resource, argument holding the resource id)
_TOOL_POLICY_TABLE: Mapping[str, tuple[str, str, str | None]] = {
    "write_file": ("write", "file", "path"),
    "replace_in_file": ("write", "file", "path"),
    "replace_file_content": ("write", "file", "path"),
    "str_replace_editor": ("write", "file", "path"),
    "read_file": ("read", "file", "path"),
    "list_dir": ("read", "file", "path"),
    "delete_file": ("delete", "file", "path"),
    "web_search": ("network", "web", None),
    "google_search": ("network", "web", None),
    "execute_command": ("execute", "system", "command"),
    "start_process": ("execute", "system", "command"),
}


@lru_cache(maxsize=16)
def get_role_capabilities(role: str) -> frozenset[tuple[str, str]]:
    definition = _ROLE_CAPABILITIES.get(role)
    if definition is None:
        return frozenset()
    return frozenset((action, resource) for action, resources in definition.items() for resource in resources)


def default_rules() -> list[PolicyRule]:
    rules: list[PolicyRule] = []
    for role, definition in _ROLE_CAPABILITIES.items():
        for action, resources in definition.items():
            for resource in resources:
                rules.append(
                    PolicyRule(
                        rule_id=f"default.{role}.{action}.{resource}",
                        agent_role=role,
                        action=action,
                        resource=resource,
                        description=f"Default capability: {role} may {action} {resource}",
                    )
                )
    return rules


def match_tool(tool_name: str, args: Mapping[str, Any] | None = None) -> ToolPolicyTarget | None:
    """Map a tool invocation onto the permission it needs, or None when ungated."""
    entry = _TOOL_POLICY_TABLE.get(tool_name)
    if entry is None:
        return None
    action, resource, argument = entry
    resource_id = None
    if argument is not None and args:
        raw = args.get(argument)
        resource_id = str(raw) if raw is not None else None
    return ToolPolicyTarget(action=action, resource=resource, resource_id=resource_id)


class PolicyEngine:
    """First-match permission gate over temporary grants, then permanent rules."""

    def __init__(
        self,
        audit: AuditLogger,
        *,
        settings: PolicySettings | None = None,
        rules: Iterable[PolicyRule] | None = None,
        events: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._audit = audit
        self._settings = settings or PolicySettings()
        self._events = events
        self._clock = clock or _utcnow
        self._permanent: list[PolicyRule] = []
        self._temporary: list[PolicyRule] = []
        self._timers: dict[str, asyncio.TimerHandle] = {}
        initial = rules if rules is not None else (default_rules() if self._settings.install_default_rules else [])
        for rule in initial:
            self.add_rule(rule)

    @property
    def rules(self) -> tuple[PolicyRule, ...]:
        return tuple(self._permanent)

    @property
    def temporary_rules(self) -> tuple[PolicyRule, ...]:
        return tuple(self._temporary)

    def add_rule(self, rule: PolicyRule) -> None:
        if rule.temporary:
            raise ValueError("Rules with an expiry must be installed with grant_temporary_permission")
        if any(existing.rule_id == rule.rule_id for existing in self._permanent):
            raise ValueError(f"Rule {rule.rule_id} already registered")
        self._permanent.append(rule)

    def remove_rule(self, rule_id: str) -> bool:
        for index, rule in enumerate(self._permanent):
            if rule.rule_id == rule_id:
                del self._permanent[index]
                return True
        return False

    def capabilities_for(self, role: str) -> frozenset[tuple[str, str]]:
        """Enumerate every (action, resource) pair the permanent rules grant ``role``."""
        granted: set[tuple[str, str]] = set()
        for rule in self._permanent:
            if rule.agent_role not in (WILDCARD, role):
                continue
            actions = ALL_ACTIONS if rule.action == WILDCARD else (rule.action,)
            resources = ALL_RESOURCES if rule.resource == WILDCARD else (rule.resource,)
            granted.update((action, resource) for action in actions for resource in resources)
        return frozenset(granted)

    async def check_permission(
        self,
        role: str,
        action: str | PolicyAction,
        resource: str | ResourceType,
        resource_id: str | None = None,
        *,
        agent_id: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> PolicyCheckResult:
        action_value = _value(action)
        resource_value = _value(resource)
        self._purge_expired(self._clock())

        matched = next(
            (rule for rule in self._temporary if rule.matches(role, action_value, resource_value, resource_id)),
            None,
        )
        temporary = matched is not None
        if matched is None:
            matched = next(
                (rule for rule in self._permanent if rule.matches(role, action_value, resource_value, resource_id)),
                None,
            )

        if matched is None:
            result = PolicyCheckResult(allowed=False, reason=NO_MATCH_REASON)
        elif temporary:
            result = PolicyCheckResult(
                allowed=True,
                reason=f"Allowed by temporary grant {matched.rule_id}",
                matched_rule=matched.rule_id,
                temporary=True,
            )
        else:
            result = PolicyCheckResult(
                allowed=True,
                reason=f"Allowed by rule {matched.rule_id}",
                matched_rule=matched.rule_id,
            )

        audit_context = dict(context or {})
        audit_context["temporary_grant"] = result.temporary
        await self._audit.record(
            agent_id=agent_id or role,
            agent_role=role,
            action=action_value,
            resource=resource_value,
            resource_id=resource_id,
            decision=result.decision,
            matched_rule=result.matched_rule,
            reason=result.reason,
            context=audit_context,
        )
        increment_policy_decision(decision=result.decision.value, role=role)
        if not result.allowed:
            logger.info(
                "policy_denied",
                role=role,
                action=action_value,
                resource=resource_value,
                resource_id=resource_id,
            )
        return result

    async def enforce(
        self,
        role: str,
        action: str | PolicyAction,
        resource: str | ResourceType,
        resource_id: str | None = None,
        *,
        agent_id: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> PolicyCheckResult:
        result = await self.check_permission(
            role, action, resource, resource_id, agent_id=agent_id, context=context
        )
        if not result.allowed:
            raise PolicyViolationError(
                result.reason, role=role, action=_value(action), resource=_value(resource)
            )
        return result

    def grant_temporary_permission(self, rule: PolicyRule, duration: timedelta | float) -> PolicyRule:
        seconds = duration.total_seconds() if isinstance(duration, timedelta) else float(duration)
        if seconds <= 0:
            raise ValueError("Temporary permissions need a positive duration")
        granted = replace(rule, expires_at=self._clock() + timedelta(seconds=seconds))
        self._discard_temporary(granted.rule_id)
        self._temporary.append(granted)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("policy_expiry_timer_skipped", rule_id=granted.rule_id)
        else:
            self._timers[granted.rule_id] = loop.call_later(
                seconds, self._on_timer, granted.rule_id, granted.expires_at
            )

        set_temporary_grants(count=len(self._temporary))
        logger.info("policy_temporary_grant", rule_id=granted.rule_id, role=granted.agent_role, seconds=seconds)
        self._notify("granted", granted)
        return granted

    def revoke_temporary_permission(self, rule_id: str) -> bool:
        return self._expire(rule_id, event="revoked")

    def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    @staticmethod
    def match_tool(tool_name: str, args: Mapping[str, Any] | None = None) -> ToolPolicyTarget | None:
        return match_tool(tool_name, args)

    def _purge_expired(self, now: datetime) -> None:
        for rule in [rule for rule in self._temporary if rule.is_expired(now)]:
            self._expire(rule.rule_id, event="expired")

    def _on_timer(self, rule_id: str, expires_at: datetime | None) -> None:
        current = next((rule for rule in self._temporary if rule.rule_id == rule_id), None)
        # A re-grant under the same id carries its own timer.
        if current is None or current.expires_at != expires_at:
            return
        self._expire(rule_id, event="expired")

    def _expire(self, rule_id: str, *, event: str) -> bool:
        rule = self._discard_temporary(rule_id)
        if rule is None:
            return False
        set_temporary_grants(count=len(self._temporary))
        logger.info("policy_temporary_removed", rule_id=rule_id, change=event)
        self._notify(event, rule)
        return True

    def _discard_temporary(self, rule_id: str) -> PolicyRule | None:
        handle = self._timers.pop(rule_id, None)
        if handle is not None:
            handle.cancel()
        for index, rule in enumerate(self._temporary):
            if rule.rule_id == rule_id:
                return self._temporary.pop(index)
        return None

    def _notify(self, event: str, rule: PolicyRule) -> None:
        if self._events is not None:
            self._events.emit("policy.updated", {"event": event, "rule": rule.as_dict()})


__all__ = [
    "ALL_ACTIONS",
    "ALL_RESOURCES",
    "NO_MATCH_REASON",
    "PolicyCheckResult",
    "PolicyEngine",
    "PolicyRule",
    "ToolPolicyTarget",
    "WILDCARD",
    "default_rules",
    "get_role_capabilities",
    "match_tool",
]
