"""containerd cleanup: remove containers, tasks and snapshots, keep images."""

import logging
import time
from dataclasses import dataclass

from actions.base import BaseAction
from common import ApplyError, Probe, ResourceBusy
from host import Host

logger = logging.getLogger(__name__)

# Snapshots form parent chains; children must go first, so removal is retried
_SNAPSHOT_PASSES = 5


@dataclass(frozen=True)
class CleanContainerdAction(BaseAction):
    """Remove runtime state from a containerd namespace without touching images.

    Attributes:
        namespace: containerd namespace (kubelet uses k8s.io)
        settle_seconds: Wait after starting containerd before talking to it
    """
    namespace: str = 'k8s.io'
    settle_seconds: float = 2.0
    category: str = 'container'

    tools = ('ctr',)

    def _leftovers(self, host: Host) -> dict:
        ctr = host.containers.in_namespace(self.namespace)
        return {
            'tasks': ctr.tasks(),
            'containers': ctr.containers(),
            'snapshots': ctr.snapshots(),
        }

    def check(self, host: Host) -> Probe:
        if not host.has_tool('ctr'):
            return Probe.UNKNOWN
        if not host.services.is_active('containerd'):
            return Probe.UNSATISFIED
        return Probe.UNSATISFIED if any(self._leftovers(host).values()) else Probe.SATISFIED

    def apply(self, host: Host) -> str:
        host.require_tool('ctr')
        if not host.services.is_active('containerd'):
            logger.info(f"[{self.name}] Starting containerd for cleanup...")
            host.services.start('containerd')
            if self.settle_seconds:
                time.sleep(self.settle_seconds)

        ctr = host.containers.in_namespace(self.namespace)

        tasks = ctr.tasks()
        logger.info(f"[{self.name}] Removing {len(tasks)} task(s)...")
        for task_id in tasks:
            ctr.kill_task(task_id)
            ctr.delete_task(task_id)

        containers = ctr.containers()
        logger.info(f"[{self.name}] Removing {len(containers)} container(s) (not images)...")
        for container_id in containers:
            ctr.delete_container(container_id)

        remaining = self._remove_snapshots(ctr)
        images = len(ctr.images())
        if remaining:
            raise ResourceBusy(f"{len(remaining)} snapshot(s) could not be removed; images preserved: {images}")
        logger.info(f"[{self.name}] containerd cleaned. Images preserved: {images} image(s)")
        return f"containerd cleaned, {images} image(s) preserved"

    def _remove_snapshots(self, ctr) -> list[str]:
        snapshots = ctr.snapshots()
        for _ in range(_SNAPSHOT_PASSES):
            if not snapshots:
                break
            logger.info(f"[{self.name}] Removing {len(snapshots)} snapshot(s)...")
            for key in reversed(snapshots):
                try:
                    ctr.remove_snapshot(key)
                except ApplyError as e:
                    logger.debug(f"[{self.name}] Snapshot {key} not removed yet: {e}")
            left = ctr.snapshots()
            if len(left) >= len(snapshots):
                snapshots = left
                break
            snapshots = left
        return snapshots
