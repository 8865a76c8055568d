"""
Ensure / teardown steps of the scan resource lifecycle.

Every step observes the current provider state by deterministic name and
either returns the ready resource, or starts the next provider operation and
raises `RetryableError`, or raises `FatalError`. Nothing here sleeps or
polls; the driving loop calls again after the suggested delay.
"""
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from oobscan.core.exceptions import FatalError, RetryableError
from oobscan.modules.scanning.domain.clients import (
    ComputeClient,
    NetworkInterfaceClient,
    ResourceClient,
    SnapshotClient,
    StagedCopyClient,
    VolumeClient,
)
from oobscan.modules.scanning.domain.models import (
    ComputeHandle,
    NetworkInterfaceHandle,
    Observed,
    ResourceState,
    ScanJobDescriptor,
    SnapshotHandle,
    StagedCopy,
    VolumeHandle,
    VolumeSource,
)
from oobscan.modules.scanning.domain.naming import resource_names

logger = structlog.get_logger()
T = TypeVar("T")


def _raise_classified(client: ResourceClient[Any], exc: Exception, action: str) -> None:
    """Raise the terminal error for `exc`; returns only when it means not-found."""
    verdict = client.classifier.classify(exc, action)
    if verdict.not_found:
        return
    error = verdict.to_error()
    logger.warning(
        "reconcile_step_failed",
        action=action,
        kind=client.kind,
        retryable=error.retryable,
        reason=error.reason,
    )
    if error is exc:
        raise error
    raise error from exc


async def observe(client: ResourceClient[T], name: str, descriptor: ScanJobDescriptor) -> Optional[Observed[T]]:
    """Look `name` up; None when the provider says it does not exist."""
    try:
        observed = await client.lookup(name, descriptor)
    except Exception as exc:
        _raise_classified(client, exc, f"getting {client.kind} {name}")
        return None
    if observed is None or observed.state is ResourceState.ABSENT:
        return None
    return observed


async def _act(client: ResourceClient[Any], action: str, operation: Callable[[], Awaitable[None]]) -> bool:
    """Run a provider action; False when the provider reported not-found."""
    try:
        await operation()
    except Exception as exc:
        _raise_classified(client, exc, action)
        return False
    return True


async def ensure_resource(
    client: ResourceClient[T],
    name: str,
    descriptor: ScanJobDescriptor,
    start: Callable[[], Awaitable[None]],
) -> T:
    """
    The shared ensure/poll contract.

    READY returns the handle, FAILED is fatal, anything in between is a
    retry hint, and a missing resource gets its creation started.
    """
    observed = await observe(client, name, descriptor)
    if observed is None:
        started = await _act(client, f"creating {client.kind} {name}", start)
        if not started:
            # A dependency of the create call is not visible yet.
            raise RetryableError(
                f"{client.kind} {name} cannot be created yet, a dependency is not visible",
                client.provision_delay,
            )
        logger.info(f"{client.kind}_create_started", name=name)
        raise RetryableError(f"{client.kind} {name} creation started", client.provision_delay)

    if observed.state is ResourceState.READY:
        return observed.value
    if observed.state is ResourceState.FAILED:
        raise FatalError(f"{client.kind} {name} failed to provision: {observed.detail}")

    logger.debug(f"{client.kind}_not_ready", name=name, detail=observed.detail)
    raise RetryableError(
        f"{client.kind} {name} is not ready yet, provisioning state: {observed.detail or observed.state.value}",
        client.provision_delay,
    )


async def ensure_snapshot(client: SnapshotClient, descriptor: ScanJobDescriptor) -> SnapshotHandle:
    name = resource_names(descriptor.asset_scan_id).snapshot
    return await ensure_resource(client, name, descriptor, lambda: client.create(name, descriptor))


async def ensure_staged_copy(
    client: StagedCopyClient,
    descriptor: ScanJobDescriptor,
    snapshot: SnapshotHandle,
) -> StagedCopy:
    """
    Replicate `snapshot` into the destination region.

    Absent: grant read access, redeem the one-time URL into a copy, retry
    later. Copying: retry later. Done: revoke the grant, return the copy.
    """
    name = resource_names(descriptor.asset_scan_id).staged_copy
    observed = await observe(client, name, descriptor)

    if observed is None:
        await _start_staged_copy(client, name, descriptor, snapshot)
        raise RetryableError(f"staged copy {name} started", client.provision_delay)

    if observed.state is ResourceState.PROVISIONING:
        logger.debug("staged_copy_in_progress", name=name, detail=observed.detail)
        raise RetryableError(
            f"staged copy {name} is still copying, status: {observed.detail or 'pending'}",
            client.provision_delay,
        )

    # Copy reached a terminal state; the grant has no further purpose either way.
    await _revoke_if_active(client, snapshot)

    if observed.state is ResourceState.FAILED:
        raise FatalError(f"staged copy {name} failed: {observed.detail}")
    return observed.value


async def _start_staged_copy(
    client: StagedCopyClient,
    name: str,
    descriptor: ScanJobDescriptor,
    snapshot: SnapshotHandle,
) -> None:
    grant = None
    try:
        grant = await client.grant_access(snapshot)
    except Exception as exc:
        _raise_classified(client, exc, f"granting read access to snapshot {snapshot.name}")
        raise RetryableError(
            f"snapshot {snapshot.name} is not visible for access grant yet",
            client.provision_delay,
        ) from exc
    if grant is not None:
        logger.info(
            "access_grant_created",
            snapshot=snapshot.name,
            expires_at=grant.expires_at.isoformat(),
        )

    try:
        await client.start_copy(name, descriptor, snapshot, grant)
    except Exception as exc:
        if grant is not None:
            await _revoke_after_failed_copy(client, snapshot)
        _raise_classified(client, exc, f"starting copy into staged copy {name}")
        raise RetryableError(
            f"staged copy {name} destination is not visible yet",
            client.provision_delay,
        ) from exc
    logger.info("staged_copy_started", name=name, snapshot=snapshot.name)


async def _revoke_after_failed_copy(client: StagedCopyClient, snapshot: SnapshotHandle) -> None:
    """
    Close a grant whose copy never started. A failure here is logged and not
    raised: the copy error is what the caller needs, and the grant TTL bounds
    the exposure.
    """
    try:
        await client.revoke_access(snapshot)
    except Exception as exc:
        logger.warning(
            "access_grant_revoke_after_copy_failure_failed",
            snapshot=snapshot.name,
            error=str(exc),
        )
        return
    logger.info("access_grant_revoked", snapshot=snapshot.name, cause="copy_start_failed")


async def _revoke_if_active(client: StagedCopyClient, snapshot: SnapshotHandle) -> None:
    try:
        active = await client.has_active_grant(snapshot)
    except Exception as exc:
        _raise_classified(client, exc, f"reading access state of snapshot {snapshot.name}")
        return
    if not active:
        return
    revoked = await _act(
        client,
        f"revoking read access to snapshot {snapshot.name}",
        lambda: client.revoke_access(snapshot),
    )
    if revoked:
        logger.info("access_grant_revoked", snapshot=snapshot.name)


async def ensure_volume(
    client: VolumeClient,
    descriptor: ScanJobDescriptor,
    source: VolumeSource,
) -> VolumeHandle:
    name = resource_names(descriptor.asset_scan_id).volume
    return await ensure_resource(client, name, descriptor, lambda: client.create(name, descriptor, source))


async def ensure_network_interface(
    client: NetworkInterfaceClient,
    descriptor: ScanJobDescriptor,
) -> NetworkInterfaceHandle:
    name = resource_names(descriptor.asset_scan_id).network_interface
    return await ensure_resource(client, name, descriptor, lambda: client.create(name, descriptor))


async def ensure_compute(
    client: ComputeClient,
    descriptor: ScanJobDescriptor,
    volume: VolumeHandle,
    network_interface: Optional[NetworkInterfaceHandle] = None,
) -> ComputeHandle:
    name = resource_names(descriptor.asset_scan_id).compute
    return await ensure_resource(
        client, name, descriptor, lambda: client.create(name, descriptor, volume, network_interface)
    )


async def ensure_volume_attached(
    client: ComputeClient,
    compute: ComputeHandle,
    volume: VolumeHandle,
) -> None:
    action = f"attaching volume {volume.name} to {compute.name}"
    try:
        state = await client.attachment_state(compute, volume)
    except Exception as exc:
        _raise_classified(client, exc, f"reading attachments of {compute.name}")
        state = ResourceState.ABSENT

    if state is ResourceState.READY:
        return
    if state is ResourceState.FAILED:
        raise FatalError(f"{action} failed")
    if state is ResourceState.PROVISIONING:
        raise RetryableError(f"{action} in progress", client.provision_delay)

    attached = await _act(client, action, lambda: client.attach_volume(compute, volume))
    if not attached:
        raise RetryableError(f"{action} not possible yet, the scanner or volume is not visible", client.provision_delay)
    logger.info("volume_attach_started", compute=compute.name, volume=volume.name)
    raise RetryableError(f"{action} started", client.provision_delay)


async def ensure_absent(client: ResourceClient[Any], name: str, descriptor: ScanJobDescriptor) -> None:
    """Teardown contract: absent is success, present gets its deletion started."""
    observed = await observe(client, name, descriptor)
    if observed is None:
        return
    deleted = await _act(client, f"deleting {client.kind} {name}", lambda: client.delete(name, descriptor))
    if not deleted:
        return
    logger.info(f"{client.kind}_delete_started", name=name)
    raise RetryableError(f"{client.kind} {name} deletion in progress", client.timing.teardown)


async def ensure_snapshot_absent(
    client: SnapshotClient,
    descriptor: ScanJobDescriptor,
    staged_copies: Optional[StagedCopyClient] = None,
) -> None:
    """Delete the scan snapshot, closing any read grant still open on it first."""
    name = resource_names(descriptor.asset_scan_id).snapshot
    observed = await observe(client, name, descriptor)
    if observed is None:
        return
    if staged_copies is not None:
        await _revoke_if_active(staged_copies, observed.value)
    await ensure_absent(client, name, descriptor)
