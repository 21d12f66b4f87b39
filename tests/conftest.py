"""Shared fixtures: in-memory fakes for the verifier, assignment and hierarchy boundaries."""

import threading
from typing import Optional

import pytest

from orphansweep.errors import ArmRequestError, ListingError, PreconditionFailedError, VerificationError
from orphansweep.models import Assignment, management_group_scope, subscription_scope

SUB_A = "11111111-1111-1111-1111-111111111111"
SUB_B = "22222222-2222-2222-2222-222222222222"
SUB_C = "33333333-3333-3333-3333-333333333333"

OWNER = "/providers/Microsoft.Authorization/roleDefinitions/8e3af657-a8ff-443c-a75c-2fe8c4bcb635"
READER = "/providers/Microsoft.Authorization/roleDefinitions/acdd72a7-3385-48ef-bd42-f606fba81ae7"
CONTRIBUTOR = "/providers/Microsoft.Authorization/roleDefinitions/b24988ac-6180-42a0-ab88-20f7382dd24c"

ROLE_NAMES = {OWNER: "Owner", READER: "Reader", CONTRIBUTOR: "Contributor"}

GONE_1 = "aaaaaaaa-0000-0000-0000-000000000001"
GONE_2 = "aaaaaaaa-0000-0000-0000-000000000002"
GONE_3 = "aaaaaaaa-0000-0000-0000-000000000003"
ALIVE_1 = "bbbbbbbb-0000-0000-0000-000000000001"
ALIVE_2 = "bbbbbbbb-0000-0000-0000-000000000002"

MG_TYPE = "Microsoft.Management/managementGroups"

_counter = iter(range(1, 100000))


def make_assignment(scope: str, principal_id: str, role: str = READER, name: Optional[str] = None) -> Assignment:
    name = name or f"{next(_counter):08d}-0000-4000-8000-000000000000"
    return Assignment(
        id=f"{scope}/providers/Microsoft.Authorization/roleAssignments/{name}",
        name=name,
        scope=scope,
        role_definition_id=role,
        role_definition_name=ROLE_NAMES.get(role, ""),
        principal_id=principal_id,
        principal_type="User",
    )


class FakeVerifier:
    def __init__(self, existing=(), failing=()):
        self.existing = {p.lower() for p in existing}
        self.failing = {p.lower() for p in failing}
        self.calls = []
        self._lock = threading.Lock()

    def exists(self, principal_id):
        with self._lock:
            self.calls.append(principal_id)
        if principal_id.lower() in self.failing:
            raise VerificationError(principal_id, "Graph lookup failed (500)", status_code=500)
        return principal_id.lower() in self.existing


class AlwaysExistsVerifier(FakeVerifier):
    def exists(self, principal_id):
        self.calls.append(principal_id)
        return True


class FakeAssignments:
    """
    `listings` maps a scope (lower-case) to what list_assignments() returns for it,
    which lets tests model inherited assignments showing up at child scopes.
    """

    def __init__(self):
        self.listings = {}
        self.failing = set()
        self.resource_groups = {}
        self.deleted = []
        self.delete_errors = {}
        self.list_calls = []

    def add(self, a: Assignment, *, visible_at=None):
        for scope in visible_at or [a.scope]:
            self.listings.setdefault(scope.lower(), []).append(a)
        return a

    def list_assignments(self, scope):
        self.list_calls.append(scope)
        if scope.lower() in self.failing:
            raise ListingError(scope, "boom")
        return list(self.listings.get(scope.lower(), []))

    def list_resource_groups(self, subscription_id):
        return list(self.resource_groups.get(subscription_id, []))

    def delete(self, *, role_definition_id, principal_id, scope, assignment_name):
        self.deleted.append((role_definition_id, principal_id, scope, assignment_name))
        err = self.delete_errors.get(assignment_name)
        if err is not None:
            raise err
        for k in list(self.listings):
            self.listings[k] = [a for a in self.listings[k] if a.name != assignment_name]


class FakeHierarchy:
    """`tree` maps a management group name to (display name, [child names])."""

    def __init__(self, tree, *, subscriptions_under=None, inline_levels=1):
        self.tree = tree
        self.subscriptions_under = subscriptions_under or {}
        self.inline_levels = inline_levels
        self.calls = []

    def _entry(self, name, depth):
        display, children = self.tree[name]
        kids = None
        if depth < self.inline_levels:
            kids = [self._entry(c, depth + 1) for c in children]
        return {"type": MG_TYPE, "name": name, "displayName": display, "children": kids}

    def get_node(self, name, expand=True):
        self.calls.append(name)
        if name not in self.tree:
            raise ArmRequestError("GET", management_group_scope(name), 404, "NotFound", "no such group")
        display, children = self.tree[name]
        kids = [self._entry(c, 1) for c in children]
        kids += [
            {"type": "/subscriptions", "name": sid, "displayName": sid, "children": None}
            for sid in self.subscriptions_under.get(name, [])
        ]
        return {
            "id": management_group_scope(name),
            "type": MG_TYPE,
            "name": name,
            "properties": {"displayName": display, "children": kids},
        }


@pytest.fixture
def verifier():
    return FakeVerifier(existing=[ALIVE_1, ALIVE_2])


@pytest.fixture
def assignments():
    return FakeAssignments()


@pytest.fixture
def sub_a_scope():
    return subscription_scope(SUB_A)


def precondition_failed():
    return PreconditionFailedError("(412) The role assignment was modified concurrently")
