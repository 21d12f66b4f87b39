from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

import requests

from orphansweep.errors import FatalSetupError, ScanCancelledError, VerificationError
from orphansweep.models import (
    AssignmentRecord,
    ScopeType,
    management_group_scope,
    resource_group_scope,
    subscription_scope,
)

logger = logging.getLogger("orphansweep.scanner")


def scope_for(scope_type: ScopeType, scope_id: str) -> str:
    """
    Subscription: subscription id. ManagementGroup: group name.
    ResourceGroup: full `/subscriptions/<id>/resourceGroups/<name>` scope.
    A value that already starts with "/" is taken as the full scope.
    """
    scope_id = (scope_id or "").strip()
    if scope_id.startswith("/"):
        return scope_id.rstrip("/")
    if scope_type == ScopeType.SUBSCRIPTION:
        return subscription_scope(scope_id)
    if scope_type == ScopeType.MANAGEMENT_GROUP:
        return management_group_scope(scope_id)
    raise ValueError(f"Resource group scans need the full scope, got '{scope_id}'")


class OrphanScanner:
    """
    Read-only: lists assignments for a scope and keeps the ones whose
    principal the directory confirms as absent.

    A failed lookup (VerificationError, transport error) only skips that
    assignment. Authentication loss (FatalSetupError) is never swallowed.
    """

    def __init__(self, assignments: Any, verifier: Any) -> None:
        self._assignments = assignments
        self._verifier = verifier

    def scan(
        self,
        scope_type: ScopeType,
        scope_id: str,
        *,
        target_name: Optional[str] = None,
        include_child_resource_groups: bool = False,
        errors: Optional[list[dict]] = None,
        stage_cb: Optional[Callable[[str], None]] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> list[AssignmentRecord]:
        errors = errors if errors is not None else []
        stage_cb = stage_cb or (lambda _: None)
        scope = scope_for(scope_type, scope_id)
        label = target_name or scope_id

        def check_stop() -> None:
            if stop_event is not None and stop_event.is_set():
                raise ScanCancelledError(scope)

        check_stop()
        stage_cb("role_assignments")
        # A failing listing for the scope itself is the caller's problem (scope-level isolation).
        assignments = self._assignments.list_assignments(scope)

        stage_cb("verify_principals")
        records: list[AssignmentRecord] = []
        for a in assignments:
            if not a.principal_id:
                continue
            check_stop()
            try:
                exists = self._verifier.exists(a.principal_id)
            except (VerificationError, requests.RequestException) as e:
                logger.warning(
                    "Cannot confirm principal %s of %s: %s; not flagged",
                    a.principal_id,
                    a.id,
                    e,
                    extra={"scope": scope, "assignment_id": a.id, "reason": "verification-error"},
                )
                errors.append(
                    {"where": "verify_principal", "scope": scope, "principal_id": a.principal_id, "error": str(e)}
                )
                continue
            if exists:
                continue
            logger.info(
                "Orphaned assignment %s (%s) for principal %s",
                a.id,
                a.role_definition_name or a.role_definition_id,
                a.principal_id,
                extra={"scope": scope, "assignment_id": a.id},
            )
            records.append(
                AssignmentRecord.from_assignment(a, target_type=scope_type, target_name=label, target_scope=scope)
            )

        if scope_type == ScopeType.SUBSCRIPTION and include_child_resource_groups:
            stage_cb("resource_groups")
            sub_id = scope.rsplit("/", 1)[-1]
            try:
                rg_names = self._assignments.list_resource_groups(sub_id)
            except FatalSetupError:
                raise
            except Exception as e:
                logger.warning("Resource group listing failed for %s: %s", scope, e, extra={"scope": scope})
                errors.append({"where": "resource_groups_list", "scope": scope, "error": str(e)})
                rg_names = []
            for rg in rg_names:
                rg_scope = resource_group_scope(sub_id, rg)
                try:
                    records.extend(
                        self.scan(
                            ScopeType.RESOURCE_GROUP,
                            rg_scope,
                            target_name=rg,
                            errors=errors,
                            stop_event=stop_event,
                        )
                    )
                except (FatalSetupError, ScanCancelledError):
                    raise
                except Exception as e:
                    logger.warning("Scan failed for %s: %s", rg_scope, e, extra={"scope": rg_scope})
                    errors.append({"where": "role_assignments_list", "scope": rg_scope, "error": str(e)})

        return records
