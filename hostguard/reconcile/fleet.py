"""Run passes against many hosts at once.

Host state is host-local, so passes for different hosts share nothing but the
read-only inventory and can run on separate threads. A failure on one host
never stops the others.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

from hostguard.errors import HostguardError
from hostguard.hosts.base import HostBackend
from hostguard.inventory.models import Host
from hostguard.reconcile.reconciler import HostReport, Reconciler

logger = logging.getLogger(__name__)

BackendFactory = Callable[[Host], HostBackend]

DEFAULT_WORKERS = 4


def reconcile_fleet(
    reconciler: Reconciler,
    hosts: list[Host],
    backend_factory: BackendFactory,
    dry_run: bool = False,
    roles: list[str] | None = None,
    workers: int = DEFAULT_WORKERS,
) -> list[HostReport]:
    """Reconcile each host once; reports come back in the order of ``hosts``."""

    def run(host: Host) -> HostReport:
        try:
            backend = backend_factory(host)
        except HostguardError as e:
            logger.error("[%s] No backend: %s", host.name, e)
            return HostReport(host=host.name, dry_run=dry_run, error=e, failed_step="connect")
        host_roles = None
        if roles is not None:
            host_roles = [r for r in roles if r in host.role_names]
        return reconciler.reconcile(host.name, backend, roles=host_roles, dry_run=dry_run)

    if not hosts:
        return []
    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(hosts)))) as pool:
        return list(pool.map(run, hosts))
