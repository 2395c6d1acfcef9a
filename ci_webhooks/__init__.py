"""
CI Webhooks module.

This module contains the event-to-trigger pipeline: handlers for push and
pull_request deliveries, branch resolution, trust evaluation, job naming
and idempotent build scheduling.
"""

from .naming import NameAllocator
from .resolver import RevisionResolver
from .scheduler import BuildScheduler
from .subscribers import (
    EventHandler,
    PullRequestHandler,
    PushHandler,
    WebhookDispatcher,
)
from .trust import TrustEvaluator, is_fork

__all__ = [
    "BuildScheduler",
    "EventHandler",
    "NameAllocator",
    "PullRequestHandler",
    "PushHandler",
    "RevisionResolver",
    "TrustEvaluator",
    "WebhookDispatcher",
    "is_fork",
]
