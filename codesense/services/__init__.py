"""Collaboration services - channel registry, cursors, presence and sessions."""

from .channels import ChannelAcquireError, ChannelEntry, ChannelLease, ChannelRegistry
from .cursors import CursorStore
from .debug_session import DEBUG_EVENT, DebugSession, session_channel_name
from .job_updates import JOB_UPDATE_EVENT, JobUpdateSubscriber, job_channel_name, publish_job_update
from .presence import render_cursors, roster_from_presence

__all__ = [
    # Channel registry
    "ChannelAcquireError",
    "ChannelEntry",
    "ChannelLease",
    "ChannelRegistry",
    # Cursors and presence
    "CursorStore",
    "render_cursors",
    "roster_from_presence",
    # Debug sessions
    "DEBUG_EVENT",
    "DebugSession",
    "session_channel_name",
    # ESLint job updates
    "JOB_UPDATE_EVENT",
    "JobUpdateSubscriber",
    "job_channel_name",
    "publish_job_update",
]
