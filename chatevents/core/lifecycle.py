"""Lifecycle hooks for startup diagnostics and store teardown."""

from __future__ import annotations

from chatevents.core.container import AppContainer
from chatevents.infra.observability.logger import get_logger

logger = get_logger(__name__)


def on_startup(container: AppContainer) -> None:
    logger.info(
        "Event store ready: %s row_columns=%s strict_agent_events=%s",
        container.store.debug_info(),
        len(container.row_adapter.column_map),
        container.settings.strict_agent_events,
    )


def on_shutdown(container: AppContainer) -> None:
    for session_id in container.ingestors.session_ids():
        container.ingestors.close(session_id)
    container.store.dispose()
    logger.info("chatevents shutdown complete.")
