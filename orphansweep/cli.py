from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, Optional

from termcolor import colored
from tqdm import tqdm

from orphansweep.artifact import (
    DEFAULT_CANDIDATES_PATH,
    atomic_write_json,
    build_removal_report,
    build_scan_report,
    export_scan,
    read_candidates,
)
from orphansweep.assignments import ArmAssignmentClient
from orphansweep.config import (
    AuthSettings,
    RemovalSettings,
    ScanSettings,
    removal_settings_from_args,
    scan_settings_from_args,
)
from orphansweep.errors import FatalSetupError, OrphanSweepError
from orphansweep.hierarchy import ArmHierarchyProvider
from orphansweep.identity import GraphIdentityVerifier
from orphansweep.logging_config import configure_logging
from orphansweep.models import RemovalReport, RemovalState, ScanResult, is_guid
from orphansweep.orchestrator import run_scan
from orphansweep.progress import ScanProgress
from orphansweep.removal import AdminRolePolicy, RemovalEngine
from orphansweep.scanner import OrphanScanner
from orphansweep.session import AUTH_METHODS, AzureSession, build_credential

logger = logging.getLogger("orphansweep.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2


def _print_kv(key: str, value: Any) -> None:
    print(f"{colored(key + ':', 'white')} {value}")


def _print_section(title: str) -> None:
    print(colored(title, "yellow", attrs=["bold"]) + ":")


def _error(msg: str) -> None:
    print(f"{colored('[-] ', 'red')}{msg}")


def open_session(auth: AuthSettings) -> tuple[AzureSession, dict[str, Any]]:
    credential = build_credential(
        auth_method=auth.auth_method,
        tenant_id=auth.tenant_id,
        client_id=auth.client_id,
        client_secret=auth.client_secret,
        arm_token=auth.arm_token,
        graph_token=auth.graph_token,
        device_client_id=auth.device_client_id,
        use_az_token_cache=auth.use_az_token_cache,
    )
    session = AzureSession(credential)
    identity = session.authenticate()
    return session, identity


def resolve_subscriptions(session: AzureSession, settings: ScanSettings) -> list[tuple[str, Optional[str]]]:
    """
    Map requested ids or display names onto accessible subscriptions.
    Unknown entries are passed through untouched; the orchestrator's
    well-formedness check decides whether they are scanned.
    """
    if settings.all_subscriptions:
        return [(s["subscription_id"], s.get("display_name")) for s in session.list_subscriptions()]

    try:
        accessible = session.list_subscriptions()
    except OrphanSweepError as e:
        logger.warning("Could not list accessible subscriptions: %s", e)
        accessible = []
    by_id = {s["subscription_id"].lower(): s for s in accessible}
    by_name = {(s.get("display_name") or "").lower(): s for s in accessible if s.get("display_name")}

    out: list[tuple[str, Optional[str]]] = []
    for req in settings.subscriptions:
        s = by_id.get(req.lower()) or by_name.get(req.lower())
        if s:
            out.append((s["subscription_id"], s.get("display_name")))
        else:
            if accessible:
                logger.warning("Subscription '%s' not found in accessible subscriptions", req)
            out.append((req, None))
    return out


def print_scan_summary(result: ScanResult, *, artifact_path: str, written: bool) -> None:
    _print_section("Orphaned role assignment scan")
    _print_kv("Subscriptions scanned", f"{result.subscriptions_scanned}/{result.subscriptions_requested}")
    _print_kv("Subscriptions failed", result.subscriptions_failed)
    _print_kv("Subscriptions skipped", len(result.skipped_subscriptions))
    _print_kv("Management groups scanned", f"{result.nodes_scanned}/{len(result.nodes)}")
    _print_kv("Orphaned assignments", colored(str(len(result.records)), "red" if result.records else "green"))
    if result.timed_out:
        print(colored("Timeout reached: results are partial.", "yellow"))
    if result.errors:
        print(colored(f"Errors (best-effort): {len(result.errors)}", "red", attrs=["bold"]))
        for e in result.errors[:20]:
            print(f"  - {e.get('where')}: {e.get('scope')}: {e.get('error')}")
        if len(result.errors) > 20:
            print(f"  ... ({len(result.errors) - 20} more)")
    for r in result.records:
        print(f"  - `{r.role_definition_name or r.role_definition_id}` principal=`{r.principal_id}` scope=`{r.scope}` "
              f"({r.target_type}: {r.target_name})")
    if written:
        print(f"{colored('[+] ', 'green')}Candidates written to {artifact_path}. Review before running `remove`.")
    else:
        print(f"{colored('[+] ', 'green')}Nothing orphaned found; no candidate file written.")


def print_removal_summary(report: RemovalReport) -> None:
    title = "Orphaned role assignment removal" + (" (dry run)" if report.dry_run else "")
    _print_section(title)
    colors = {
        RemovalState.REMOVED: "green",
        RemovalState.VERIFIED: "cyan",
        RemovalState.PRECONDITION_SKIP: "blue",
        RemovalState.GUARDRAILED_SKIP: "yellow",
        RemovalState.FAILED: "red",
    }
    for res in report.results:
        r = res.record
        state = colored(res.state.value, colors.get(res.state, "white"))
        reason = f" [{res.reason.value}]" if res.reason else ""
        print(f"  - {state}{reason} `{r.role_definition_name or r.role_definition_id}` "
              f"principal=`{r.principal_id}` scope=`{r.scope}`")
    summary = report.summary()
    _print_kv("Removed", summary["removed"])
    _print_kv("Failed", colored(str(summary["failed"]), "red" if summary["failed"] else "green"))
    if summary["needs_manual_remediation"]:
        print(colored(
            f"{summary['needs_manual_remediation']} assignment(s) kept by the last-admin guardrail need manual remediation.",
            "yellow",
        ))


def cmd_scan(args: argparse.Namespace) -> int:
    settings = scan_settings_from_args(args)
    session, identity = open_session(settings.auth)
    try:
        subscriptions = resolve_subscriptions(session, settings)
        assignments = ArmAssignmentClient(session)
        scanner = OrphanScanner(assignments, GraphIdentityVerifier(session, cache=True))

        provider = None
        root = None
        if settings.scan_management_groups:
            root = settings.management_group or settings.auth.tenant_id or identity.get("tid")
            if not root:
                raise FatalSetupError("Cannot derive the tenant root management group; pass --management-group.")
            provider = ArmHierarchyProvider(session)
            first_sub = next((sid for sid, _ in subscriptions if is_guid(sid)), None)
            if first_sub:
                provider.ensure_registered(first_sub)

        progress = None
        if settings.progress:
            progress = ScanProgress(total=len(subscriptions), tqdm_factory=tqdm)
        try:
            result = run_scan(
                scanner=scanner,
                subscriptions=subscriptions,
                hierarchy_provider=provider,
                hierarchy_root=root,
                max_parallel=settings.max_parallel,
                excluded=settings.excluded_subscriptions,
                include_resource_groups=settings.include_resource_groups,
                timeout=settings.timeout,
                progress=progress,
            )
        finally:
            if progress:
                progress.close()
    finally:
        session.close()

    written = export_scan(result, settings.out_json)
    if settings.report_json:
        atomic_write_json(
            settings.report_json,
            build_scan_report(result, artifact_path=settings.out_json, artifact_written=written),
        )
    print_scan_summary(result, artifact_path=settings.out_json, written=written)

    if result.all_subscriptions_failed and not result.records:
        return EXIT_FAILURE
    return EXIT_OK


def cmd_remove(args: argparse.Namespace) -> int:
    settings: RemovalSettings = removal_settings_from_args(args)
    policy = AdminRolePolicy(settings.admin_roles)
    records = read_candidates(settings.in_json)
    if not records:
        print(f"{colored('[+] ', 'green')}No candidates in {settings.in_json}; nothing to do.")
        return EXIT_OK

    session, _identity = open_session(settings.auth)
    try:
        # No cache: every principal is looked up again at removal time.
        engine = RemovalEngine(
            verifier=GraphIdentityVerifier(session, cache=False),
            assignments=ArmAssignmentClient(session),
            admin_roles=policy,
            dry_run=settings.dry_run,
        )
        report = engine.run(records)
    finally:
        session.close()

    if settings.report_json:
        atomic_write_json(settings.report_json, build_removal_report(report, source=settings.in_json))
    print_removal_summary(report)
    return EXIT_FAILURE if report.failed else EXIT_OK


def _add_auth_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--auth-method", default="auto", help=f"Authentication method: {', '.join(AUTH_METHODS)} (default: auto).")
    p.add_argument("--tenant-id", help="Tenant ID (client-secret auth; also the default management group root).")
    p.add_argument("--client-id", help="Service principal (app) client ID for client-secret auth.")
    p.add_argument("--client-secret", help="Service principal client secret for client-secret auth.")
    p.add_argument("--arm-token", help="Azure Resource Manager access token. Bypasses other auth methods.")
    p.add_argument("--graph-token", help="Microsoft Graph access token, used with --arm-token.")
    p.add_argument("--device-client-id", help="Public client ID for device-code auth (default: Azure CLI public app id).")
    p.add_argument("--no-az-token-cache", action="store_true", help="Do not read ~/.azure/msal_token_cache.json.")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="orphansweep",
        description="Find Azure role assignments whose principal no longer exists, and remove them after review.",
    )
    ap.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"), help="Log level (default: INFO).")
    ap.add_argument("--log-json", action="store_true", help="Emit logs as one JSON object per line on stderr.")
    sub = ap.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Scan subscriptions and management groups for orphaned role assignments.")
    target = scan.add_mutually_exclusive_group(required=True)
    target.add_argument("--subscription", action="append", help="Subscription ID or name to scan (repeatable).")
    target.add_argument("--all-subscriptions", action="store_true", help="Scan every accessible subscription.")
    scan.add_argument("--exclude-subscription", action="append", help="Subscription ID never to scan (repeatable).")
    scan.add_argument("--management-group", help="Root management group (default: tenant root group).")
    scan.set_defaults(scan_management_groups=True)
    scan.add_argument("--no-scan-management-groups", dest="scan_management_groups", action="store_false",
                      help="Skip the management group hierarchy.")
    scan.add_argument("--include-resource-groups", action="store_true",
                      help="Also scan every resource group of each subscription.")
    scan.add_argument("--max-parallel-subscriptions", type=int, default=None,
                      help="Max subscriptions scanned in parallel (default: 4).")
    scan.add_argument("--timeout", type=float, default=None,
                      help="Seconds after which unscanned scopes are abandoned; partial results are kept.")
    scan.add_argument("--out-json", default=DEFAULT_CANDIDATES_PATH,
                      help=f"Candidate file to write (default: {DEFAULT_CANDIDATES_PATH}).")
    scan.add_argument("--report-json", help="Also write a scan report (summary, skipped scopes, errors).")
    scan.add_argument("--no-progress", action="store_true", help="Disable the progress bar.")
    _add_auth_args(scan)
    scan.set_defaults(func=cmd_scan)

    remove = sub.add_parser("remove", help="Remove the reviewed candidates after re-verifying each one.")
    remove.add_argument("--in-json", default=DEFAULT_CANDIDATES_PATH,
                        help=f"Reviewed candidate file (default: {DEFAULT_CANDIDATES_PATH}).")
    remove.add_argument("--admin-role", action="append",
                        help="Administrative role name or definition GUID guarded at subscription scope (repeatable).")
    remove.set_defaults(dry_run=True)
    remove.add_argument("--execute", dest="dry_run", action="store_false", help="Actually delete. Default is a dry run.")
    remove.add_argument("--report-json", help="Write the per-assignment removal report.")
    _add_auth_args(remove)
    remove.set_defaults(func=cmd_remove)
    return ap


def main(argv: Optional[list[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    configure_logging(args.log_level, json_format=args.log_json)
    try:
        return args.func(args)
    except ValueError as e:
        _error(f"Error: {e}")
        return EXIT_USAGE
    except FatalSetupError as e:
        _error(str(e))
        return EXIT_FAILURE
    except OrphanSweepError as e:
        _error(f"Error: {e}")
        return EXIT_FAILURE


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
