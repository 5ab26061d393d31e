import pytest

from propflow.audit import InMemoryAuditRecorder
from propflow.cascade import CascadeApplier, InMemoryEntityStore
from propflow.config import IdempotencyConfig, PropflowConfig
from propflow.contracts import NotificationChannel
from propflow.engine import WorkflowEngine
from propflow.idempotency import InMemoryIdempotencyStore
from propflow.notifications import InMemoryOutbox, NotificationDispatcher


@pytest.fixture
def audit():
    return InMemoryAuditRecorder()


@pytest.fixture
def outbox():
    return InMemoryOutbox()


@pytest.fixture
def entity_store():
    return InMemoryEntityStore()


@pytest.fixture
def idempotency_store():
    return InMemoryIdempotencyStore()


@pytest.fixture
def config():
    return PropflowConfig(idempotency=IdempotencyConfig(in_flight_wait_seconds=2.0))


@pytest.fixture
def engine(audit, outbox, entity_store, idempotency_store, config):
    return WorkflowEngine(
        audit=audit,
        notifications=NotificationDispatcher({c: outbox for c in NotificationChannel}),
        cascades=CascadeApplier(entity_store),
        idempotency=idempotency_store,
        config=config,
    )
