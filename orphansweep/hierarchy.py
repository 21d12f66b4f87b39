from __future__ import annotations

import logging
from typing import Any, Optional

from azure.core.exceptions import HttpResponseError

from orphansweep.errors import ArmRequestError, FatalSetupError, HierarchyPrerequisiteError, HierarchyRootError
from orphansweep.models import ScopeNode
from orphansweep.session import AzureSession

logger = logging.getLogger("orphansweep.hierarchy")

MGMT_API_VERSION = "2020-05-01"
MGMT_PROVIDER = "Microsoft.Management"
_NOT_REGISTERED_CODES = {
    "missingsubscriptionregistration",
    "subscriptionnotregistered",
    "resourceprovidernotregistered",
}


class ArmHierarchyProvider:
    def __init__(self, session: AzureSession) -> None:
        self._session = session

    def ensure_registered(self, subscription_id: str) -> None:
        """
        Management group enumeration needs the Microsoft.Management provider
        registered. This is a provisioning prerequisite: not retried.
        """
        rm = self._session.resource_client(subscription_id)
        try:
            provider = rm.providers.get(MGMT_PROVIDER)
        except HttpResponseError as e:
            if e.status_code == 403:
                # Reading provider state needs more than Reader on some tenants; get_node() still maps the error.
                logger.warning("Cannot read %s registration state in %s: %s", MGMT_PROVIDER, subscription_id, e)
                return
            raise HierarchyPrerequisiteError(f"Cannot read {MGMT_PROVIDER} registration state: {e}") from e
        state = (getattr(provider, "registration_state", None) or "").strip()
        if state.lower() != "registered":
            raise HierarchyPrerequisiteError(
                f"Resource provider {MGMT_PROVIDER} is '{state or 'unknown'}' in subscription {subscription_id}; "
                f"register it before scanning management groups."
            )

    def get_node(self, name: str, expand: bool = True) -> dict[str, Any]:
        params = {"api-version": MGMT_API_VERSION}
        if expand:
            params["$expand"] = "children"
        try:
            return self._session.arm_get(f"/providers/Microsoft.Management/managementGroups/{name}", params)
        except ArmRequestError as e:
            if e.code.lower() in _NOT_REGISTERED_CODES:
                raise HierarchyPrerequisiteError(str(e)) from e
            raise


def _is_management_group(type_: Any) -> bool:
    return isinstance(type_, str) and type_.strip().rstrip("/").lower().endswith("microsoft.management/managementgroups")


def _node_fields(data: dict[str, Any]) -> tuple[str, str, Optional[list[dict[str, Any]]]]:
    """
    Top-level GET answers carry displayName/children under `properties`;
    inline child entries carry them at the top level.
    """
    props = data.get("properties") if isinstance(data.get("properties"), dict) else data
    name = (data.get("name") or "").strip()
    display = (props.get("displayName") or data.get("displayName") or name).strip()
    children = props.get("children")
    if children is None:
        children = data.get("children")
    if children is not None and not isinstance(children, list):
        children = []
    return name, display, children


def walk(provider: Any, root: str, *, errors: Optional[list[dict]] = None) -> list[ScopeNode]:
    """
    Flatten the management group tree under `root` into ScopeNodes sorted by
    (level, path), so every parent precedes its children.

    Traversal is depth-first with an explicit stack and a visited-name set;
    a name seen twice (cyclic or repeated references) is only recorded once.
    """
    errors = errors if errors is not None else []
    try:
        root_data = provider.get_node(root, expand=True)
    except FatalSetupError:
        raise
    except Exception as e:
        raise HierarchyRootError(f"Cannot resolve management group root '{root}': {e}") from e
    if not isinstance(root_data, dict) or not (root_data.get("name") or "").strip():
        raise HierarchyRootError(f"Cannot resolve management group root '{root}': empty answer")

    visited: set[str] = set()
    out: list[ScopeNode] = []
    stack: list[tuple[dict[str, Any], Optional[ScopeNode], bool]] = [(root_data, None, True)]

    while stack:
        data, parent, fetched = stack.pop()
        name, display, children = _node_fields(data)
        if not name or name.lower() in visited:
            continue
        visited.add(name.lower())

        node = ScopeNode(
            name=name,
            display_name=display,
            parent_name=parent.name if parent else None,
            level=parent.level + 1 if parent else 0,
            path=f"{parent.path}/{name}" if parent else name,
        )
        out.append(node)

        if children is None and not fetched:
            try:
                _, _, children = _node_fields(provider.get_node(name, expand=True))
            except FatalSetupError:
                raise
            except Exception as e:
                logger.warning("Could not expand management group %s: %s", name, e)
                errors.append({"where": "management_group_expand", "scope": node.scope, "error": str(e)})
                children = []

        for child in reversed(children or []):
            if not isinstance(child, dict) or not _is_management_group(child.get("type")):
                continue
            stack.append((child, node, False))

    return sorted(out, key=lambda n: (n.level, n.path))
