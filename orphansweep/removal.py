from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from orphansweep.errors import FatalSetupError, PreconditionFailedError
from orphansweep.models import (
    AssignmentRecord,
    ReasonCode,
    RemovalReport,
    RemovalResult,
    RemovalState,
    is_guid,
    role_definition_guid,
    same_scope,
    subscription_id_of_root_scope,
)

logger = logging.getLogger("orphansweep.removal")

BUILTIN_ADMIN_ROLES = {
    "8e3af657-a8ff-443c-a75c-2fe8c4bcb635": "Owner",
    "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9": "User Access Administrator",
    "f58310d9-a9f6-439a-9e8d-f62e7b41a168": "Role Based Access Control Administrator",
}
DEFAULT_ADMIN_ROLES = tuple(BUILTIN_ADMIN_ROLES.values())


class AdminRolePolicy:
    """Roles that can manage access. Entries may be role names or role definition GUIDs."""

    def __init__(self, roles: Iterable[str] = DEFAULT_ADMIN_ROLES) -> None:
        self.role_ids: set[str] = set()
        self.role_names: set[str] = set()
        by_name = {v.lower(): k for k, v in BUILTIN_ADMIN_ROLES.items()}
        for r in roles:
            r = (r or "").strip()
            if not r:
                continue
            if is_guid(r):
                self.role_ids.add(r.lower())
            else:
                self.role_names.add(r.lower())
                if r.lower() in by_name:
                    self.role_ids.add(by_name[r.lower()])
        if not self.role_ids and not self.role_names:
            raise ValueError("At least one administrative role is required")

    def is_admin(self, role_definition_id: Optional[str], role_definition_name: Optional[str] = None) -> bool:
        if role_definition_guid(role_definition_id) in self.role_ids:
            return True
        return (role_definition_name or "").strip().lower() in self.role_names


class RemovalEngine:
    """
    Consumes candidates from the scan artifact, one at a time:

      Candidate -> Verified -> Guardrailed-Skip | Removed | Precondition-Skip | Failed

    Verified needs a fresh "principal absent" answer AND the same assignment
    (id, role, principal) still listed at its recorded scope. The guardrail is
    evaluated once, live, before any delete. One item's failure never stops
    the batch; a FatalSetupError (lost authentication) does.
    """

    def __init__(
        self,
        *,
        verifier: Any,
        assignments: Any,
        admin_roles: Optional[AdminRolePolicy] = None,
        dry_run: bool = True,
    ) -> None:
        self._verifier = verifier
        self._assignments = assignments
        self._policy = admin_roles or AdminRolePolicy()
        self.dry_run = dry_run
        # Dry runs delete nothing, so admin assignments already planned for removal are subtracted by hand.
        self._planned_admin_removals: dict[str, int] = {}

    def run(self, records: Iterable[AssignmentRecord]) -> RemovalReport:
        report = RemovalReport(dry_run=self.dry_run)
        for record in records:
            result = self.process(record)
            report.results.append(result)
            self._log(result)
        if report.failed:
            logger.error("%d removals failed and need operator attention", report.failed)
        return report

    def process(self, record: AssignmentRecord) -> RemovalResult:
        result = RemovalResult(record=record)
        if not record.is_well_formed():
            return self._end(result, RemovalState.FAILED, ReasonCode.OTHER_ERROR, "malformed candidate")

        skip = self._verify(record)
        if skip is not None:
            reason, detail = skip
            return self._end(result, RemovalState.PRECONDITION_SKIP, reason, detail)
        result.state = RemovalState.VERIFIED

        trip = self.evaluate_guardrail(record)
        if trip is not None:
            reason, detail = trip
            return self._end(result, RemovalState.GUARDRAILED_SKIP, reason, detail)

        if self.dry_run:
            if self._is_guarded(record):
                key = record.scope.strip().rstrip("/").lower()
                self._planned_admin_removals[key] = self._planned_admin_removals.get(key, 0) + 1
            result.reason = ReasonCode.DRY_RUN
            return result

        try:
            # The name comes from the id that was just re-verified, never from the editable name field.
            self._assignments.delete(
                role_definition_id=record.role_definition_id,
                principal_id=record.principal_id,
                scope=record.scope,
                assignment_name=record.id_segment,
            )
        except FatalSetupError:
            raise
        except PreconditionFailedError as e:
            return self._end(result, RemovalState.PRECONDITION_SKIP, ReasonCode.PRECONDITION_FAILED, str(e))
        except Exception as e:
            return self._end(result, RemovalState.FAILED, ReasonCode.OTHER_ERROR, str(e))
        result.state = RemovalState.REMOVED
        return result

    def _verify(self, record: AssignmentRecord) -> Optional[tuple[ReasonCode, str]]:
        # (a) principal must still be absent now, not just at scan time.
        try:
            if self._verifier.exists(record.principal_id):
                return ReasonCode.PRINCIPAL_EXISTS_NOW, f"principal {record.principal_id} exists"
        except FatalSetupError:
            raise
        except Exception as e:
            return ReasonCode.VERIFICATION_ERROR, f"principal lookup failed: {e}"

        # (b) the same assignment must still be attached at its recorded scope.
        try:
            current = self._assignments.list_assignments(record.scope)
        except FatalSetupError:
            raise
        except Exception as e:
            return ReasonCode.VERIFICATION_ERROR, f"assignment re-listing failed: {e}"
        for a in current:
            if (
                a.id.lower() == record.assignment_id.lower()
                and same_scope(a.scope, record.scope)
                and a.matches(role_definition_id=record.role_definition_id, principal_id=record.principal_id)
            ):
                return None
        return ReasonCode.ASSIGNMENT_GONE, "assignment no longer listed at its scope with the same role and principal"

    def evaluate_guardrail(self, record: AssignmentRecord) -> Optional[tuple[ReasonCode, str]]:
        """
        Only administrative roles attached exactly at a subscription root are
        guarded: never remove the last directly-attached admin assignment there.
        """
        if not self._is_guarded(record):
            return None
        sub_id = subscription_id_of_root_scope(record.scope)
        try:
            count = self.admin_count(record.scope)
        except FatalSetupError:
            raise
        except Exception as e:
            return ReasonCode.VERIFICATION_ERROR, f"cannot count administrative assignments: {e}"
        count -= self._planned_admin_removals.get(record.scope.strip().rstrip("/").lower(), 0)
        if count <= 1:
            return (
                ReasonCode.GUARDRAIL_LAST_ADMIN,
                f"last administrative assignment at subscription {sub_id} ({count} found); remediate manually",
            )
        return None

    def _is_guarded(self, record: AssignmentRecord) -> bool:
        return (
            subscription_id_of_root_scope(record.scope) is not None
            and self._policy.is_admin(record.role_definition_id, record.role_definition_name)
        )

    def admin_count(self, scope: str) -> int:
        """Live count of admin-role assignments attached directly at `scope` (inherited ones excluded)."""
        return sum(
            1
            for a in self._assignments.list_assignments(scope)
            if same_scope(a.scope, scope) and self._policy.is_admin(a.role_definition_id, a.role_definition_name)
        )

    @staticmethod
    def _end(result: RemovalResult, state: RemovalState, reason: ReasonCode, detail: str) -> RemovalResult:
        result.state = state
        result.reason = reason
        result.detail = detail
        return result

    @staticmethod
    def _log(result: RemovalResult) -> None:
        r = result.record
        extra = {
            "assignment_id": r.assignment_id,
            "scope": r.scope,
            "state": result.state.value,
            "reason": result.reason.value if result.reason else None,
        }
        label = f"{r.role_definition_name or r.role_definition_id} for {r.principal_id} at {r.scope}"
        if result.state == RemovalState.REMOVED:
            logger.info("Removed %s", label, extra=extra)
        elif result.state == RemovalState.VERIFIED:
            logger.info("Would remove %s (dry run)", label, extra=extra)
        elif result.state == RemovalState.GUARDRAILED_SKIP:
            logger.warning("Guardrail: kept %s: %s", label, result.detail, extra=extra)
        elif result.state == RemovalState.PRECONDITION_SKIP:
            logger.info("Skipped %s [%s]: %s", label, extra["reason"], result.detail, extra=extra)
        else:
            logger.error("Failed to remove %s: %s", label, result.detail, extra=extra)
