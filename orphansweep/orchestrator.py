from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from orphansweep.errors import FatalSetupError
from orphansweep.hierarchy import walk
from orphansweep.models import AssignmentRecord, ScanResult, ScopeType, is_guid, same_scope, subscription_scope
from orphansweep.progress import ScanProgress

logger = logging.getLogger("orphansweep.orchestrator")

DEFAULT_MAX_PARALLEL = 4

SubscriptionRef = Union[str, tuple[str, Optional[str]]]


def filter_subscriptions(
    subscriptions: Iterable[SubscriptionRef],
    excluded: Iterable[str] = (),
) -> tuple[list[tuple[str, Optional[str]]], list[dict]]:
    """
    Keep well-formed (GUID) subscription ids that are not excluded; de-duplicate
    preserving order. Returns (kept, skipped) where skipped entries carry a reason.
    """
    excluded_ids = {x.strip().lower() for x in excluded if isinstance(x, str) and x.strip()}
    kept: list[tuple[str, Optional[str]]] = []
    skipped: list[dict] = []
    seen: set[str] = set()
    for ref in subscriptions:
        sid, name = (ref, None) if isinstance(ref, str) else ref
        sid = (sid or "").strip()
        if not is_guid(sid):
            logger.warning("Skipping malformed subscription id '%s'", sid)
            skipped.append({"subscription_id": sid, "reason": "malformed-id"})
            continue
        if sid.lower() in excluded_ids:
            logger.warning("Skipping excluded subscription %s", sid, extra={"subscription_id": sid})
            skipped.append({"subscription_id": sid, "reason": "excluded"})
            continue
        if sid.lower() in seen:
            continue
        seen.add(sid.lower())
        kept.append((sid, name))
    return kept, skipped


def _attached_here(r: AssignmentRecord) -> bool:
    return bool(r.target_scope) and same_scope(r.target_scope, r.scope)


def merge_records(*batches: Sequence[AssignmentRecord]) -> list[AssignmentRecord]:
    """
    Concatenate, drop malformed records and de-duplicate by assignment id.
    An inherited assignment is seen from every scope below the one it is
    attached to; the copy produced by scanning the attaching scope wins,
    otherwise the first occurrence does.
    """
    out: list[AssignmentRecord] = []
    index: dict[str, int] = {}
    for batch in batches:
        for r in batch:
            if not r.is_well_formed():
                logger.warning("Dropping malformed candidate %r", r.assignment_id or r)
                continue
            key = r.assignment_id.lower()
            pos = index.get(key)
            if pos is None:
                index[key] = len(out)
                out.append(r)
            elif _attached_here(r) and not _attached_here(out[pos]):
                logger.debug("Candidate %s re-tagged with its attaching scope %s", r.assignment_id, r.scope)
                out[pos] = r
            else:
                logger.debug("Duplicate candidate %s (inherited view) ignored", r.assignment_id)
    return out


def run_scan(
    *,
    scanner: Any,
    subscriptions: Iterable[SubscriptionRef],
    hierarchy_provider: Any = None,
    hierarchy_root: Optional[str] = None,
    max_parallel: int = DEFAULT_MAX_PARALLEL,
    excluded: Iterable[str] = (),
    include_resource_groups: bool = False,
    timeout: Optional[float] = None,
    progress: Optional[ScanProgress] = None,
    clock: Callable[[], float] = time.monotonic,
) -> ScanResult:
    """
    Subscription phase: bounded-parallel scans, one worker per subscription,
    failures isolated per subscription. Hierarchy phase: walk once, then scan
    each management group sequentially. Results are merged after the join.

    The hierarchy is walked before any scanning so a missing prerequisite or
    unresolvable root aborts the run before work is done. A FatalSetupError
    from any scope (lost authentication) aborts the whole run. On timeout the
    unscanned scopes are abandoned and the partial result is returned;
    abandoned workers stop after their in-flight request.
    """
    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")
    if timeout is not None and timeout < 0:
        raise ValueError("timeout must be >= 0")
    deadline = clock() + timeout if timeout is not None else None

    def remaining() -> Optional[float]:
        return None if deadline is None else max(0.0, deadline - clock())

    result = ScanResult()
    kept, result.skipped_subscriptions = filter_subscriptions(subscriptions, excluded)
    result.subscriptions_requested = len(kept)

    if hierarchy_provider is not None and hierarchy_root:
        logger.info("Walking management group hierarchy from %s", hierarchy_root)
        result.nodes = walk(hierarchy_provider, hierarchy_root, errors=result.errors)
        logger.info("Found %d management groups", len(result.nodes))

    sub_batches = _scan_subscriptions(
        scanner=scanner,
        subscriptions=kept,
        max_parallel=max_parallel,
        include_resource_groups=include_resource_groups,
        remaining=remaining,
        progress=progress,
        result=result,
    )

    node_records: list[AssignmentRecord] = []
    for node in result.nodes:
        if deadline is not None and clock() >= deadline:
            result.timed_out = True
            logger.warning("Scan timeout reached; %d management groups left unscanned",
                           len(result.nodes) - result.nodes_scanned)
            break
        errs: list[dict] = []
        try:
            node_records.extend(
                scanner.scan(ScopeType.MANAGEMENT_GROUP, node.name, target_name=node.display_name, errors=errs)
            )
        except FatalSetupError:
            raise
        except Exception as e:
            logger.error("Scan failed for management group %s: %s", node.path, e, extra={"scope": node.scope})
            errs.append({"where": "management_group_scan", "scope": node.scope, "error": str(e)})
        result.errors.extend(errs)
        result.nodes_scanned += 1

    result.records = merge_records(*sub_batches, node_records)
    logger.info(
        "Scan finished: %d candidates, %d/%d subscriptions scanned, %d failed, %d management groups scanned",
        len(result.records),
        result.subscriptions_scanned,
        result.subscriptions_requested,
        result.subscriptions_failed,
        result.nodes_scanned,
    )
    return result


def _scan_subscriptions(
    *,
    scanner: Any,
    subscriptions: list[tuple[str, Optional[str]]],
    max_parallel: int,
    include_resource_groups: bool,
    remaining: Callable[[], Optional[float]],
    progress: Optional[ScanProgress],
    result: ScanResult,
) -> list[list[AssignmentRecord]]:
    if not subscriptions:
        return []

    def worker(sid: str, name: Optional[str]) -> tuple[Optional[list[AssignmentRecord]], list[dict], Optional[Exception]]:
        errs: list[dict] = []
        try:
            recs = scanner.scan(
                ScopeType.SUBSCRIPTION,
                sid,
                target_name=name or sid,
                include_child_resource_groups=include_resource_groups,
                errors=errs,
                stage_cb=progress.callback(sid) if progress else None,
                stop_event=stop,
            )
            if progress:
                progress.finish(sid)
            return recs, errs, None
        except Exception as e:
            if progress:
                progress.finish(sid, failed=True)
            return None, errs, e

    # Each worker owns its own record/error lists; they are combined only after the join.
    stop = threading.Event()
    outcomes: list[Optional[tuple]] = [None] * len(subscriptions)
    ex = ThreadPoolExecutor(max_workers=min(max_parallel, len(subscriptions)))
    futs = {ex.submit(worker, sid, name): i for i, (sid, name) in enumerate(subscriptions)}
    timed_out = False
    fatal: Optional[FatalSetupError] = None
    try:
        for fut in as_completed(futs, timeout=remaining()):
            outcome = fut.result()
            outcomes[futs[fut]] = outcome
            if isinstance(outcome[2], FatalSetupError):
                fatal = outcome[2]
                break
    except FuturesTimeoutError:
        timed_out = True
    finally:
        if timed_out or fatal is not None:
            # Running workers stop at their next check; queued ones are cancelled.
            stop.set()
        ex.shutdown(wait=not timed_out, cancel_futures=True)

    if fatal is not None:
        logger.error("Aborting scan: %s", fatal)
        raise fatal

    batches: list[list[AssignmentRecord]] = []
    for (sid, _name), outcome in zip(subscriptions, outcomes):
        scope = subscription_scope(sid)
        if outcome is None:
            result.errors.append({"where": "subscription_scan", "scope": scope, "error": "timed out before completion"})
            continue
        recs, errs, exc = outcome
        result.errors.extend(errs)
        if exc is not None:
            logger.error("Scan failed for subscription %s: %s", sid, exc, extra={"subscription_id": sid})
            result.errors.append({"where": "subscription_scan", "scope": scope, "error": str(exc)})
            result.subscriptions_failed += 1
            continue
        result.subscriptions_scanned += 1
        batches.append(recs or [])

    if timed_out:
        result.timed_out = True
        logger.warning(
            "Scan timeout reached; %d subscriptions left unscanned",
            sum(1 for o in outcomes if o is None),
        )
    return batches
