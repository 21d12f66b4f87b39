from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


ARTIFACT_FIELDS = (
    "RoleAssignmentName",
    "RoleAssignmentId",
    "Scope",
    "RoleDefinitionName",
    "RoleDefinitionId",
    "ObjectId",
    "ObjectType",
    "TargetType",
    "TargetName",
)

UNKNOWN_PRINCIPAL_TYPE = "Unknown"

_GUID = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"
_GUID_RE = re.compile(rf"^{_GUID}$")
_SUBSCRIPTION_SCOPE_RE = re.compile(rf"^/subscriptions/({_GUID})/?$", re.IGNORECASE)
_ASSIGNMENT_ID_RE = re.compile(r"/providers/Microsoft\.Authorization/roleAssignments/[^/]+$", re.IGNORECASE)


def is_guid(s: Any) -> bool:
    if not isinstance(s, str):
        return False
    return bool(_GUID_RE.match(s.strip()))


def subscription_scope(subscription_id: str) -> str:
    return f"/subscriptions/{subscription_id}"


def resource_group_scope(subscription_id: str, resource_group: str) -> str:
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"


def management_group_scope(name: str) -> str:
    return f"/providers/Microsoft.Management/managementGroups/{name}"


def subscription_id_of_root_scope(scope: str) -> Optional[str]:
    """Return the subscription id when `scope` is exactly a subscription root scope."""
    m = _SUBSCRIPTION_SCOPE_RE.match((scope or "").strip())
    return m.group(1) if m else None


def same_scope(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().rstrip("/").lower() == (b or "").strip().rstrip("/").lower()


def role_definition_guid(role_definition_id: Optional[str]) -> str:
    # Role definition ids come back either as a bare GUID or as a full resource id.
    return (role_definition_id or "").strip().rstrip("/").rsplit("/", 1)[-1].lower()


class ScopeType(str, Enum):
    MANAGEMENT_GROUP = "ManagementGroup"
    SUBSCRIPTION = "Subscription"
    RESOURCE_GROUP = "ResourceGroup"


@dataclass(frozen=True)
class ScopeNode:
    name: str
    display_name: str
    parent_name: Optional[str]
    level: int
    path: str

    @property
    def scope(self) -> str:
        return management_group_scope(self.name)


@dataclass(frozen=True)
class Assignment:
    """One row returned by the assignment lister (not yet judged)."""

    id: str
    name: str
    scope: str
    role_definition_id: str
    role_definition_name: Optional[str] = None
    principal_id: str = ""
    principal_type: Optional[str] = None

    def matches(self, *, role_definition_id: str, principal_id: str) -> bool:
        return (
            role_definition_guid(self.role_definition_id) == role_definition_guid(role_definition_id)
            and (self.principal_id or "").lower() == (principal_id or "").lower()
        )


@dataclass(frozen=True)
class AssignmentRecord:
    assignment_id: str
    assignment_name: str
    scope: str
    role_definition_id: str
    role_definition_name: str
    principal_id: str
    principal_type: str
    target_type: str
    target_name: str
    # Scope that was scanned when the record was produced; not part of the artifact.
    target_scope: str = field(default="", compare=False)

    @classmethod
    def from_assignment(
        cls, a: Assignment, *, target_type: ScopeType, target_name: str, target_scope: str = ""
    ) -> "AssignmentRecord":
        return cls(
            assignment_id=a.id,
            assignment_name=a.name,
            scope=a.scope,
            role_definition_id=a.role_definition_id,
            role_definition_name=a.role_definition_name or "",
            principal_id=a.principal_id,
            principal_type=UNKNOWN_PRINCIPAL_TYPE,
            target_type=target_type.value,
            target_name=target_name,
            target_scope=target_scope,
        )

    @property
    def id_segment(self) -> str:
        return (self.assignment_id or "").strip().rstrip("/").rsplit("/", 1)[-1]

    def is_well_formed(self) -> bool:
        return (
            bool(self.assignment_id)
            and bool(_ASSIGNMENT_ID_RE.search(self.assignment_id))
            and self.assignment_name.strip().lower() == self.id_segment.lower()
            and bool(self.scope)
            and bool(self.role_definition_id)
            and is_guid(self.principal_id)
        )

    def to_artifact(self) -> dict[str, str]:
        return {
            "RoleAssignmentName": self.assignment_name,
            "RoleAssignmentId": self.assignment_id,
            "Scope": self.scope,
            "RoleDefinitionName": self.role_definition_name,
            "RoleDefinitionId": self.role_definition_id,
            "ObjectId": self.principal_id,
            "ObjectType": self.principal_type,
            "TargetType": self.target_type,
            "TargetName": self.target_name,
        }

    @classmethod
    def from_artifact(cls, d: dict[str, Any]) -> "AssignmentRecord":
        def s(key: str) -> str:
            v = d.get(key)
            return str(v).strip() if v is not None else ""

        return cls(
            assignment_id=s("RoleAssignmentId"),
            assignment_name=s("RoleAssignmentName"),
            scope=s("Scope"),
            role_definition_id=s("RoleDefinitionId"),
            role_definition_name=s("RoleDefinitionName"),
            principal_id=s("ObjectId"),
            principal_type=s("ObjectType") or UNKNOWN_PRINCIPAL_TYPE,
            target_type=s("TargetType"),
            target_name=s("TargetName"),
        )


@dataclass
class ScanResult:
    records: list[AssignmentRecord] = field(default_factory=list)
    errors: list[dict] = field(default_factory=list)
    subscriptions_requested: int = 0
    subscriptions_scanned: int = 0
    subscriptions_failed: int = 0
    skipped_subscriptions: list[dict] = field(default_factory=list)
    nodes: list[ScopeNode] = field(default_factory=list)
    nodes_scanned: int = 0
    timed_out: bool = False

    @property
    def all_subscriptions_failed(self) -> bool:
        return self.subscriptions_requested > 0 and self.subscriptions_failed == self.subscriptions_requested

    def summary(self) -> dict[str, Any]:
        return {
            "candidates": len(self.records),
            "subscriptions_requested": self.subscriptions_requested,
            "subscriptions_scanned": self.subscriptions_scanned,
            "subscriptions_failed": self.subscriptions_failed,
            "subscriptions_skipped": len(self.skipped_subscriptions),
            "management_groups_found": len(self.nodes),
            "management_groups_scanned": self.nodes_scanned,
            "errors": len(self.errors),
            "timed_out": self.timed_out,
        }


class RemovalState(str, Enum):
    CANDIDATE = "Candidate"
    VERIFIED = "Verified"
    GUARDRAILED_SKIP = "Guardrailed-Skip"
    REMOVED = "Removed"
    PRECONDITION_SKIP = "Precondition-Skip"
    FAILED = "Failed"


class ReasonCode(str, Enum):
    PRINCIPAL_EXISTS_NOW = "principal-exists-now"
    ASSIGNMENT_GONE = "assignment-gone"
    GUARDRAIL_LAST_ADMIN = "guardrail-last-admin"
    PRECONDITION_FAILED = "precondition-failed"
    VERIFICATION_ERROR = "verification-error"
    OTHER_ERROR = "other-error"
    DRY_RUN = "dry-run"


@dataclass
class RemovalResult:
    record: AssignmentRecord
    state: RemovalState = RemovalState.CANDIDATE
    reason: Optional[ReasonCode] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "state": self.state.value,
            "reason": self.reason.value if self.reason else None,
            "assignment": self.record.to_artifact(),
        }
        if self.detail:
            out["detail"] = self.detail
        return out


@dataclass
class RemovalReport:
    results: list[RemovalResult] = field(default_factory=list)
    dry_run: bool = True

    def by_state(self, state: RemovalState) -> list[RemovalResult]:
        return [r for r in self.results if r.state == state]

    @property
    def removed(self) -> int:
        return len(self.by_state(RemovalState.REMOVED))

    @property
    def failed(self) -> int:
        return len(self.by_state(RemovalState.FAILED))

    def summary(self) -> dict[str, Any]:
        states: dict[str, int] = {}
        reasons: dict[str, int] = {}
        for r in self.results:
            states[r.state.value] = states.get(r.state.value, 0) + 1
            if r.reason:
                reasons[r.reason.value] = reasons.get(r.reason.value, 0) + 1
        return {
            "candidates": len(self.results),
            "dry_run": self.dry_run,
            "removed": self.removed,
            "failed": self.failed,
            "needs_manual_remediation": len(self.by_state(RemovalState.GUARDRAILED_SKIP)),
            "by_state": states,
            "by_reason": reasons,
        }
