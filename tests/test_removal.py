"""Tests for the removal engine: re-verification, admin guardrail and per-item isolation."""

import dataclasses

import pytest

from conftest import (
    ALIVE_1,
    CONTRIBUTOR,
    GONE_1,
    GONE_2,
    GONE_3,
    OWNER,
    READER,
    SUB_A,
    FakeAssignments,
    FakeVerifier,
    make_assignment,
    precondition_failed,
)
from orphansweep.errors import AuthenticationError, ListingError
from orphansweep.models import (
    AssignmentRecord,
    ReasonCode,
    RemovalState,
    ScopeType,
    resource_group_scope,
    subscription_scope,
)
from orphansweep.removal import AdminRolePolicy, RemovalEngine

UAA = "/providers/Microsoft.Authorization/roleDefinitions/18d7d88d-d35e-4fb5-a5c3-7773c20a72d9"


def candidate(a):
    return AssignmentRecord.from_assignment(a, target_type=ScopeType.SUBSCRIPTION, target_name=SUB_A)


def engine(verifier, assignments, **kwargs):
    kwargs.setdefault("dry_run", False)
    return RemovalEngine(verifier=verifier, assignments=assignments, **kwargs)


class TestAdminRolePolicy:
    def test_builtin_names_map_to_ids(self):
        policy = AdminRolePolicy(["Owner"])

        assert policy.is_admin(OWNER)
        assert policy.is_admin(f"{subscription_scope(SUB_A)}{OWNER}")
        assert not policy.is_admin(READER, "Reader")

    def test_custom_guid_and_name(self):
        policy = AdminRolePolicy([CONTRIBUTOR.rsplit("/", 1)[-1], "Access Custodian"])

        assert policy.is_admin(CONTRIBUTOR)
        assert policy.is_admin("/whatever/custom", "access custodian")
        assert not policy.is_admin(OWNER, "Owner")

    def test_default_covers_builtin_admins(self):
        policy = AdminRolePolicy()

        assert policy.is_admin(OWNER)
        assert policy.is_admin(UAA)

    def test_empty_is_rejected(self):
        with pytest.raises(ValueError):
            AdminRolePolicy(["", "  "])


class TestVerification:
    def test_recreated_principal_is_not_deleted(self, assignments, sub_a_scope):
        a = assignments.add(make_assignment(sub_a_scope, GONE_1))
        record = candidate(a)
        # Principal was absent at scan time and came back before removal.
        verifier = FakeVerifier(existing=[GONE_1])

        report = engine(verifier, assignments).run([record])

        result = report.results[0]
        assert result.state == RemovalState.PRECONDITION_SKIP
        assert result.reason == ReasonCode.PRINCIPAL_EXISTS_NOW
        assert assignments.deleted == []

    def test_verification_error_never_deletes(self, assignments, sub_a_scope):
        a = assignments.add(make_assignment(sub_a_scope, GONE_1))

        report = engine(FakeVerifier(failing=[GONE_1]), assignments).run([candidate(a)])

        assert report.results[0].state == RemovalState.PRECONDITION_SKIP
        assert report.results[0].reason == ReasonCode.VERIFICATION_ERROR
        assert assignments.deleted == []

    def test_assignment_gone_since_scan(self, assignments, verifier, sub_a_scope):
        a = make_assignment(sub_a_scope, GONE_1)

        report = engine(verifier, assignments).run([candidate(a)])

        assert report.results[0].state == RemovalState.PRECONDITION_SKIP
        assert report.results[0].reason == ReasonCode.ASSIGNMENT_GONE
        assert assignments.deleted == []

    def test_assignment_with_changed_role_is_gone(self, assignments, verifier, sub_a_scope):
        listed = assignments.add(make_assignment(sub_a_scope, GONE_1, CONTRIBUTOR, name="fixed-name"))
        stale = make_assignment(sub_a_scope, GONE_1, READER, name="fixed-name")
        assert stale.id == listed.id

        report = engine(verifier, assignments).run([candidate(stale)])

        assert report.results[0].reason == ReasonCode.ASSIGNMENT_GONE

    def test_relisting_failure_is_verification_error(self, verifier, sub_a_scope):
        assignments = FakeAssignments()
        a = assignments.add(make_assignment(sub_a_scope, GONE_1))
        assignments.failing.add(sub_a_scope.lower())

        report = engine(verifier, assignments).run([candidate(a)])

        assert report.results[0].reason == ReasonCode.VERIFICATION_ERROR
        assert assignments.deleted == []

    def test_malformed_candidate_fails_without_lookups(self, assignments, verifier):
        report = engine(verifier, assignments).run([AssignmentRecord.from_artifact({})])

        assert report.results[0].state == RemovalState.FAILED
        assert report.results[0].reason == ReasonCode.OTHER_ERROR
        assert verifier.calls == []


    def test_authentication_loss_aborts_the_batch(self, assignments, sub_a_scope):
        first = assignments.add(make_assignment(sub_a_scope, GONE_1))
        second = assignments.add(make_assignment(sub_a_scope, GONE_2))

        class Expired(FakeVerifier):
            def exists(self, principal_id):
                self.calls.append(principal_id)
                raise AuthenticationError("refresh token expired")

        verifier = Expired()
        with pytest.raises(AuthenticationError):
            engine(verifier, assignments).run([candidate(first), candidate(second)])
        assert verifier.calls == [GONE_1]
        assert assignments.deleted == []

    def test_authentication_loss_while_relisting_aborts(self, verifier, sub_a_scope):
        class Expired(FakeAssignments):
            def list_assignments(self, scope):
                raise AuthenticationError("token expired")

        assignments = Expired()
        a = make_assignment(sub_a_scope, GONE_1)

        with pytest.raises(AuthenticationError):
            engine(verifier, assignments).run([candidate(a)])
        assert assignments.deleted == []


class TestGuardrail:
    def test_single_orphaned_admin_is_kept(self, assignments, verifier, sub_a_scope):
        a = assignments.add(make_assignment(sub_a_scope, GONE_1, OWNER))

        report = engine(verifier, assignments).run([candidate(a)])

        result = report.results[0]
        assert result.state == RemovalState.GUARDRAILED_SKIP
        assert result.reason == ReasonCode.GUARDRAIL_LAST_ADMIN
        assert assignments.deleted == []
        assert report.summary()["needs_manual_remediation"] == 1

    def test_second_of_two_orphaned_admins_is_kept(self, assignments, verifier, sub_a_scope):
        first = assignments.add(make_assignment(sub_a_scope, GONE_1, OWNER))
        second = assignments.add(make_assignment(sub_a_scope, GONE_2, UAA))

        report = engine(verifier, assignments).run([candidate(first), candidate(second)])

        assert [r.state for r in report.results] == [RemovalState.REMOVED, RemovalState.GUARDRAILED_SKIP]
        assert [d[3] for d in assignments.deleted] == [first.name]

    def test_orphaned_admin_removed_when_live_admin_remains(self, assignments, verifier, sub_a_scope):
        orphan = assignments.add(make_assignment(sub_a_scope, GONE_1, OWNER))
        assignments.add(make_assignment(sub_a_scope, ALIVE_1, OWNER))

        report = engine(verifier, assignments).run([candidate(orphan)])

        assert report.results[0].state == RemovalState.REMOVED

    def test_inherited_admins_do_not_count(self, assignments, verifier, sub_a_scope):
        orphan = assignments.add(make_assignment(sub_a_scope, GONE_1, OWNER))
        inherited = make_assignment("/providers/Microsoft.Management/managementGroups/corp", ALIVE_1, OWNER)
        assignments.add(inherited, visible_at=[sub_a_scope])

        report = engine(verifier, assignments).run([candidate(orphan)])

        assert report.results[0].state == RemovalState.GUARDRAILED_SKIP

    def test_non_admin_role_at_subscription_is_removed(self, assignments, verifier, sub_a_scope):
        a = assignments.add(make_assignment(sub_a_scope, GONE_1, READER))

        report = engine(verifier, assignments).run([candidate(a)])

        assert report.results[0].state == RemovalState.REMOVED

    def test_admin_below_subscription_root_is_not_guarded(self, assignments, verifier):
        rg = resource_group_scope(SUB_A, "rg-app")
        a = assignments.add(make_assignment(rg, GONE_1, OWNER))

        report = engine(verifier, assignments).run([candidate(a)])

        assert report.results[0].state == RemovalState.REMOVED

    def test_count_failure_keeps_the_assignment(self, verifier, sub_a_scope):
        class FailsOnRecount(FakeAssignments):
            def list_assignments(self, scope):
                if len(self.list_calls) >= 1:
                    self.list_calls.append(scope)
                    raise ListingError(scope, "throttled")
                return super().list_assignments(scope)

        assignments = FailsOnRecount()
        a = assignments.add(make_assignment(sub_a_scope, GONE_1, OWNER))
        assignments.add(make_assignment(sub_a_scope, ALIVE_1, OWNER))

        report = engine(verifier, assignments).run([candidate(a)])

        assert report.results[0].state == RemovalState.GUARDRAILED_SKIP
        assert report.results[0].reason == ReasonCode.VERIFICATION_ERROR
        assert assignments.deleted == []


class TestDeletion:
    def test_precondition_failure_is_a_skip(self, assignments, verifier, sub_a_scope):
        a = assignments.add(make_assignment(sub_a_scope, GONE_1))
        assignments.delete_errors[a.name] = precondition_failed()

        report = engine(verifier, assignments).run([candidate(a)])

        assert report.results[0].state == RemovalState.PRECONDITION_SKIP
        assert report.results[0].reason == ReasonCode.PRECONDITION_FAILED
        assert report.failed == 0

    def test_unexpected_failure_does_not_stop_the_batch(self, assignments, verifier, sub_a_scope):
        bad = assignments.add(make_assignment(sub_a_scope, GONE_1))
        good = assignments.add(make_assignment(sub_a_scope, GONE_2))
        assignments.delete_errors[bad.name] = RuntimeError("connection reset")

        report = engine(verifier, assignments).run([candidate(bad), candidate(good)])

        assert [r.state for r in report.results] == [RemovalState.FAILED, RemovalState.REMOVED]
        assert report.results[0].reason == ReasonCode.OTHER_ERROR
        assert report.failed == 1
        assert report.removed == 1

    def test_delete_uses_recorded_identifiers(self, assignments, verifier, sub_a_scope):
        a = assignments.add(make_assignment(sub_a_scope, GONE_3, CONTRIBUTOR))

        engine(verifier, assignments).run([candidate(a)])

        assert assignments.deleted == [(CONTRIBUTOR, GONE_3, sub_a_scope, a.name)]

    def test_edited_name_never_redirects_the_delete(self, assignments, verifier, sub_a_scope):
        orphan = assignments.add(make_assignment(sub_a_scope, GONE_1))
        live = assignments.add(make_assignment(sub_a_scope, ALIVE_1))
        # Artifact edited between scan and removal: id still points at the orphan,
        # name points at a live principal's assignment in the same scope.
        tampered = dataclasses.replace(candidate(orphan), assignment_name=live.name)

        report = engine(verifier, assignments).run([tampered])

        assert report.results[0].state == RemovalState.FAILED
        assert report.results[0].reason == ReasonCode.OTHER_ERROR
        assert assignments.deleted == []
        assert live in assignments.list_assignments(sub_a_scope)
        assert verifier.calls == []

    def test_delete_name_comes_from_the_verified_id(self, assignments, verifier, sub_a_scope):
        a = assignments.add(make_assignment(sub_a_scope, GONE_1))
        record = dataclasses.replace(candidate(a), assignment_name=a.name.upper())

        report = engine(verifier, assignments).run([record])

        assert report.results[0].state == RemovalState.REMOVED
        assert [d[3] for d in assignments.deleted] == [a.name]

    def test_authentication_loss_during_delete_aborts(self, assignments, verifier, sub_a_scope):
        first = assignments.add(make_assignment(sub_a_scope, GONE_1))
        second = assignments.add(make_assignment(sub_a_scope, GONE_2))
        assignments.delete_errors[first.name] = AuthenticationError("token expired")

        with pytest.raises(AuthenticationError):
            engine(verifier, assignments).run([candidate(first), candidate(second)])
        assert [d[3] for d in assignments.deleted] == [first.name]


class TestDryRun:
    def test_dry_run_is_the_default_and_deletes_nothing(self, assignments, verifier, sub_a_scope):
        a = assignments.add(make_assignment(sub_a_scope, GONE_1))

        report = RemovalEngine(verifier=verifier, assignments=assignments).run([candidate(a)])

        assert report.dry_run
        assert report.results[0].state == RemovalState.VERIFIED
        assert report.results[0].reason == ReasonCode.DRY_RUN
        assert assignments.deleted == []

    def test_dry_run_applies_guardrail_to_planned_removals(self, assignments, verifier, sub_a_scope):
        first = assignments.add(make_assignment(sub_a_scope, GONE_1, OWNER))
        second = assignments.add(make_assignment(sub_a_scope, GONE_2, OWNER))

        report = engine(verifier, assignments, dry_run=True).run([candidate(first), candidate(second)])

        assert [r.state for r in report.results] == [RemovalState.VERIFIED, RemovalState.GUARDRAILED_SKIP]
        assert assignments.deleted == []

    def test_summary_counts(self, assignments, verifier, sub_a_scope):
        a = assignments.add(make_assignment(sub_a_scope, GONE_1, OWNER))
        b = assignments.add(make_assignment(sub_a_scope, ALIVE_1))

        summary = engine(verifier, assignments, dry_run=True).run([candidate(a), candidate(b)]).summary()

        assert summary["candidates"] == 2
        assert summary["dry_run"] is True
        assert summary["by_state"] == {"Guardrailed-Skip": 1, "Precondition-Skip": 1}
        assert summary["by_reason"] == {"guardrail-last-admin": 1, "principal-exists-now": 1}
