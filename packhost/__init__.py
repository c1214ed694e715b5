"""
packhost - a multi-tenant pack host with session-keyed flow pause/resume.

Each tenant runs a composed set of content-addressed "packs" (a main pack
plus ordered overlays) that are fetched, verified, cached and hot-swapped
without a restart. Conversations advance one event at a time against the
tenant's live runtime and can suspend mid-flow, persisting a snapshot
that the next event on the same session key resumes from.

Quick Start:
    >>> from packhost import PackHost
    >>> from packhost.config import settings_from_env
    >>>
    >>> host = PackHost.from_settings(settings_from_env())
    >>> await host.start()
    >>> result = await host.handle(envelope)
    >>> result.outcome.status
    <FlowStatus.COMPLETED: 'completed'>
"""

__version__ = "0.1.0"

from packhost.errors import PackHostError
from packhost.host import HandleResult, PackHost

__all__ = [
    "__version__",
    "HandleResult",
    "PackHost",
    "PackHostError",
]
