"""Realtime ESLint job progress updates."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from .channels import ChannelLease, ChannelRegistry

logger = logging.getLogger(__name__)

JOB_UPDATE_EVENT = "job-update"


def job_channel_name(project_id: str) -> str:
    return f"eslint-jobs-{project_id}"


class JobUpdateSubscriber:
    """Follows ESLint job updates for one or more projects.

    Every subscription holds a registry lease; unsubscribe_all() drops them
    all, e.g. when the dashboard view is closed.
    """

    def __init__(self, registry: ChannelRegistry) -> None:
        self.registry = registry
        self._subscriptions: dict[str, tuple[ChannelLease, Callable[[], None]]] = {}

    @property
    def projects(self) -> list[str]:
        return list(self._subscriptions)

    async def subscribe(self, project_id: str, on_job_update: Callable[[Any], Any]) -> None:
        """Call `on_job_update(job)` for every update of the project's jobs."""
        if project_id in self._subscriptions:
            self.unsubscribe(project_id)

        name = job_channel_name(project_id)
        lease = await self.registry.acquire(name)
        remove = lease.channel.on(JOB_UPDATE_EVENT, on_job_update)
        self._subscriptions[project_id] = (lease, remove)
        logger.info(f"Subscribed to ESLint job updates: {name}")

    def unsubscribe(self, project_id: str) -> None:
        subscription = self._subscriptions.pop(project_id, None)
        if subscription is None:
            return
        lease, remove = subscription
        remove()
        lease.release()

    def unsubscribe_all(self) -> None:
        for project_id in list(self._subscriptions):
            self.unsubscribe(project_id)
        logger.info("Unsubscribed from ESLint job updates")


async def publish_job_update(registry: ChannelRegistry, project_id: str, job: dict) -> None:
    """Broadcast a job update to every subscriber of the project."""
    async with await registry.acquire(job_channel_name(project_id)) as lease:
        await lease.channel.send(JOB_UPDATE_EVENT, job)
