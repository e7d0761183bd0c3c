"""Discovery of observers and event handlers registered by installed packages.

A package registers a zero-argument factory, usually the class itself, under
one of the entry point groups below::

    [project.entry-points."email_sync.observers"]
    invoices = "acme_mail.observers:InvoiceArchiver"

Entries are loaded in name order. Registration order carries no meaning for
the sync pass; sorting only keeps logs reproducible.
"""

from __future__ import annotations

from importlib.metadata import entry_points
from typing import Any

import structlog

from email_sync.exceptions import ConfigurationError
from email_sync.sync.observer import SyncEventHandler, SyncObserver

logger = structlog.get_logger()

OBSERVER_GROUP = "email_sync.observers"
EVENT_HANDLER_GROUP = "email_sync.event_handlers"


def _load_group(group: str, contract: type) -> list[Any]:
    instances = []
    for entry_point in sorted(entry_points(group=group), key=lambda ep: ep.name):
        try:
            instance = entry_point.load()()
        except Exception as exc:
            logger.exception("plugin_load_failed", group=group, name=entry_point.name, error=str(exc))
            raise ConfigurationError(f"Could not load {group} entry point {entry_point.name!r}: {exc}") from exc

        if not isinstance(instance, contract):
            raise ConfigurationError(
                f"{group} entry point {entry_point.name!r} produced {type(instance).__name__}, "
                f"which does not implement {contract.__name__}"
            )

        logger.info("plugin_loaded", group=group, name=entry_point.name, value=entry_point.value)
        instances.append(instance)
    return instances


def load_observers() -> list[SyncObserver]:
    """Instantiate every observer registered under ``email_sync.observers``.

    Raises:
        ConfigurationError: If an entry point fails to load or does not
            produce a SyncObserver.
    """

    return _load_group(OBSERVER_GROUP, SyncObserver)


def load_event_handlers() -> list[SyncEventHandler]:
    """Instantiate every handler registered under ``email_sync.event_handlers``."""

    return _load_group(EVENT_HANDLER_GROUP, SyncEventHandler)
