from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session

from crmcore.context import reset_correlation_id, set_correlation_id
from crmcore.core.config import Settings, get_settings
from crmcore.core.database import Base, engine, get_db
from crmcore.crm.repositories import SqlAlchemyStore
from crmcore.logging import configure_logging
from crmcore.otel import setup_otel


logger = logging.getLogger("crmcore.lifecycle")


def init_runtime(settings: Settings | None = None, *, create_schema: bool = False) -> Settings:
    resolved = settings or get_settings()
    configure_logging(resolved.log_level)
    if resolved.otel_enabled:
        setup_otel("crmcore", True)
    if create_schema:
        Base.metadata.create_all(bind=engine)
    logger.info("runtime.started")
    return resolved


@contextmanager
def store_scope(
    session_source: Callable[[], Iterator[Session]] = get_db,
    correlation_id: str | None = None,
) -> Iterator[SqlAlchemyStore]:
    """Yield a store bound to one session; ``correlation_id`` is bound for logs and audit entries."""

    token = set_correlation_id(correlation_id) if correlation_id else None
    generator = session_source()
    session = next(generator)
    try:
        yield SqlAlchemyStore(session)
    finally:
        try:
            next(generator)
        except StopIteration:
            pass
        if token is not None:
            reset_correlation_id(token)
