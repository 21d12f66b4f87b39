from __future__ import annotations

import argparse
import os
from dataclasses import dataclass, field
from typing import Optional

from orphansweep.artifact import DEFAULT_CANDIDATES_PATH
from orphansweep.orchestrator import DEFAULT_MAX_PARALLEL
from orphansweep.removal import DEFAULT_ADMIN_ROLES


def _env_list(name: str) -> list[str]:
    return [x.strip() for x in os.environ.get(name, "").split(",") if x.strip()]


@dataclass(frozen=True)
class AuthSettings:
    auth_method: str = "auto"
    tenant_id: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    arm_token: Optional[str] = None
    graph_token: Optional[str] = None
    device_client_id: Optional[str] = None
    use_az_token_cache: bool = True


@dataclass(frozen=True)
class ScanSettings:
    auth: AuthSettings
    subscriptions: list[str] = field(default_factory=list)
    all_subscriptions: bool = False
    excluded_subscriptions: list[str] = field(default_factory=list)
    scan_management_groups: bool = True
    management_group: Optional[str] = None
    include_resource_groups: bool = False
    max_parallel: int = DEFAULT_MAX_PARALLEL
    timeout: Optional[float] = None
    out_json: str = DEFAULT_CANDIDATES_PATH
    report_json: Optional[str] = None
    progress: bool = True


@dataclass(frozen=True)
class RemovalSettings:
    auth: AuthSettings
    in_json: str = DEFAULT_CANDIDATES_PATH
    admin_roles: list[str] = field(default_factory=lambda: list(DEFAULT_ADMIN_ROLES))
    dry_run: bool = True
    report_json: Optional[str] = None


def auth_settings_from_args(args: argparse.Namespace) -> AuthSettings:
    """Flags win; AZURE_* environment variables fill the gaps."""
    return AuthSettings(
        auth_method=(args.auth_method or "auto").strip().lower(),
        tenant_id=args.tenant_id or os.environ.get("AZURE_TENANT_ID") or None,
        client_id=args.client_id or os.environ.get("AZURE_CLIENT_ID") or None,
        client_secret=args.client_secret or os.environ.get("AZURE_CLIENT_SECRET") or None,
        arm_token=args.arm_token,
        graph_token=args.graph_token,
        device_client_id=args.device_client_id,
        use_az_token_cache=not args.no_az_token_cache,
    )


def scan_settings_from_args(args: argparse.Namespace) -> ScanSettings:
    max_parallel = args.max_parallel_subscriptions
    if max_parallel is None:
        max_parallel = int(os.environ.get("ORPHANSWEEP_MAX_PARALLEL", str(DEFAULT_MAX_PARALLEL)))
    if max_parallel < 1:
        raise ValueError("--max-parallel-subscriptions must be >= 1")
    if args.timeout is not None and args.timeout < 0:
        raise ValueError("--timeout must be >= 0")

    excluded = list(args.exclude_subscription or []) + _env_list("ORPHANSWEEP_EXCLUDED_SUBSCRIPTIONS")
    return ScanSettings(
        auth=auth_settings_from_args(args),
        subscriptions=[x.strip() for x in (args.subscription or []) if x and x.strip()],
        all_subscriptions=bool(args.all_subscriptions),
        excluded_subscriptions=excluded,
        scan_management_groups=bool(args.scan_management_groups),
        management_group=args.management_group,
        include_resource_groups=bool(args.include_resource_groups),
        max_parallel=max_parallel,
        timeout=args.timeout,
        out_json=args.out_json,
        report_json=args.report_json,
        progress=not args.no_progress,
    )


def removal_settings_from_args(args: argparse.Namespace) -> RemovalSettings:
    roles = list(args.admin_role or []) or _env_list("ORPHANSWEEP_ADMIN_ROLES") or list(DEFAULT_ADMIN_ROLES)
    return RemovalSettings(
        auth=auth_settings_from_args(args),
        in_json=args.in_json,
        admin_roles=roles,
        dry_run=bool(args.dry_run),
        report_json=args.report_json,
    )
