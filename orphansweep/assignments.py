from __future__ import annotations

import logging
import threading
from typing import Any, Optional

import requests
from azure.core.exceptions import AzureError, HttpResponseError

from orphansweep.errors import ArmRequestError, ListingError, PreconditionFailedError
from orphansweep.models import Assignment, role_definition_guid
from orphansweep.session import AzureSession

logger = logging.getLogger("orphansweep.assignments")

AUTHZ_API_VERSION = "2022-04-01"
# 404: already gone, 409: concurrent modification, 412: etag / precondition mismatch.
PRECONDITION_STATUSES = (404, 409, 412)


def as_dict(obj: Any) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "as_dict"):
        return obj.as_dict()
    if hasattr(obj, "__dict__"):
        return dict(obj.__dict__)
    return obj


def _subscription_of(scope: str) -> Optional[str]:
    parts = (scope or "").strip().split("/")
    # ['', 'subscriptions', '<id>', ...]
    if len(parts) > 2 and parts[1].lower() == "subscriptions" and parts[2]:
        return parts[2]
    return None


def assignment_from_dict(d: dict[str, Any]) -> Optional[Assignment]:
    """Accept both SDK `as_dict()` output (snake_case) and raw ARM JSON (properties.camelCase)."""
    props = d.get("properties") if isinstance(d.get("properties"), dict) else d
    aid = (d.get("id") or "").strip()
    if not aid:
        return None
    return Assignment(
        id=aid,
        name=(d.get("name") or aid.rsplit("/", 1)[-1]).strip(),
        scope=(props.get("scope") or "").strip(),
        role_definition_id=(props.get("role_definition_id") or props.get("roleDefinitionId") or "").strip(),
        principal_id=(props.get("principal_id") or props.get("principalId") or "").strip(),
        principal_type=props.get("principal_type") or props.get("principalType"),
    )


class ArmAssignmentClient:
    """
    Lists and deletes role assignments at any scope.

    Subscription and resource group scopes go through the
    azure-mgmt-authorization SDK; management group scopes have no
    subscription to bind a client to and use raw ARM calls.
    """

    def __init__(self, session: AzureSession) -> None:
        self._session = session
        self._role_names: dict[str, str] = {}
        self._role_names_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list_assignments(self, scope: str) -> list[Assignment]:
        """Assignments attached at `scope` plus those inherited from above (ARM `atScope()`)."""
        sub_id = _subscription_of(scope)
        try:
            if sub_id:
                authz = self._session.authorization_client(sub_id)
                raw = [as_dict(a) for a in authz.role_assignments.list_for_scope(scope, filter="atScope()")]
            else:
                raw = self._session.arm_list(
                    f"{scope}/providers/Microsoft.Authorization/roleAssignments",
                    {"api-version": AUTHZ_API_VERSION, "$filter": "atScope()"},
                )
        except (AzureError, ArmRequestError, requests.RequestException) as e:
            raise ListingError(scope, str(e)) from e

        out: list[Assignment] = []
        for d in raw:
            if not isinstance(d, dict):
                continue
            a = assignment_from_dict(d)
            if a is None:
                continue
            out.append(
                Assignment(
                    id=a.id,
                    name=a.name,
                    scope=a.scope,
                    role_definition_id=a.role_definition_id,
                    role_definition_name=self.role_definition_name(a.role_definition_id),
                    principal_id=a.principal_id,
                    principal_type=a.principal_type,
                )
            )
        return out

    def role_definition_name(self, role_definition_id: str) -> str:
        key = role_definition_guid(role_definition_id)
        if not key:
            return ""
        with self._role_names_lock:
            if key in self._role_names:
                return self._role_names[key]
        try:
            data = self._session.arm_get(role_definition_id, {"api-version": AUTHZ_API_VERSION})
            name = ((data.get("properties") or {}).get("roleName") or "").strip()
        except (ArmRequestError, requests.RequestException) as e:
            logger.debug("Could not resolve role definition %s: %s", role_definition_id, e)
            return ""
        with self._role_names_lock:
            self._role_names[key] = name
        return name

    def list_resource_groups(self, subscription_id: str) -> list[str]:
        try:
            rm = self._session.resource_client(subscription_id)
            names = []
            for rg in rm.resource_groups.list():
                name = (as_dict(rg).get("name") or "").strip()
                if name:
                    names.append(name)
            return names
        except AzureError as e:
            raise ListingError(f"/subscriptions/{subscription_id}", f"resource group listing failed: {e}") from e

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete(self, *, role_definition_id: str, principal_id: str, scope: str, assignment_name: str) -> None:
        """
        Delete the assignment recorded as (role definition, principal, scope, name).

        Raises PreconditionFailedError when ARM reports the assignment gone or
        concurrently changed; any other failure propagates unchanged.
        """
        logger.debug(
            "Deleting role assignment %s (role=%s principal=%s) at %s",
            assignment_name,
            role_definition_id,
            principal_id,
            scope,
        )
        sub_id = _subscription_of(scope)
        if sub_id:
            authz = self._session.authorization_client(sub_id)
            try:
                deleted = authz.role_assignments.delete(scope, assignment_name)
            except HttpResponseError as e:
                if e.status_code in PRECONDITION_STATUSES:
                    raise PreconditionFailedError(str(e)) from e
                raise
            # 204 No Content: nothing to delete anymore.
            if deleted is None:
                raise PreconditionFailedError(f"{scope}: role assignment {assignment_name} no longer exists")
            return

        try:
            status = self._session.arm_delete(
                f"{scope}/providers/Microsoft.Authorization/roleAssignments/{assignment_name}",
                {"api-version": AUTHZ_API_VERSION},
            )
        except ArmRequestError as e:
            if e.status_code in PRECONDITION_STATUSES:
                raise PreconditionFailedError(str(e)) from e
            raise
        if status == 204:
            raise PreconditionFailedError(f"{scope}: role assignment {assignment_name} no longer exists")
