import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional
from uuid import UUID

import structlog

from .errors import NotFoundError
from .models import UserType


logger = structlog.get_logger(__name__)


ADMIN_ID = UUID("00000000-0000-4000-8000-00000000a001")
CLIENT_ALICE_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
CLIENT_BOB_ID = UUID("660e8400-e29b-41d4-a716-446655440001")


class Transaction:
    """One atomic unit of work; callbacks registered here run only after commit."""

    def __init__(self, storage: "InMemoryStorage"):
        self.storage = storage
        self._after_commit: list[tuple[Callable[..., Any], tuple, dict]] = []

    def after_commit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        self._after_commit.append((fn, args, kwargs))

    def _run_after_commit(self) -> None:
        for fn, args, kwargs in self._after_commit:
            try:
                fn(*args, **kwargs)
            except Exception:
                logger.exception("after_commit_callback_failed", callback=getattr(fn, "__name__", repr(fn)))


class InMemoryStorage:
    """
    Row store with serializable transactions.

    Writers are serialized by a re-entrant lock; a snapshot of every table is
    taken when the outermost transaction opens and restored if it raises.
    Nested ``transaction()`` calls join the enclosing unit. Read-only paths
    use ``read()``, which takes the lock but skips the snapshot.
    """

    TABLES = (
        "users",
        "assets",
        "auctions",
        "guarantees",
        "movements",
        "refunds",
        "billings",
        "notifications",
    )

    def __init__(self, seed: bool = True):
        self.users: dict[UUID, dict] = {}
        self.assets: dict[UUID, dict] = {}
        self.auctions: dict[UUID, dict] = {}
        self.guarantees: dict[UUID, dict] = {}
        self.movements: dict[UUID, dict] = {}
        self.refunds: dict[UUID, dict] = {}
        self.billings: dict[UUID, dict] = {}
        self.notifications: dict[UUID, dict] = {}
        self._lock = threading.RLock()
        self._current: Optional[Transaction] = None
        if seed:
            self._seed_data()

    def _seed_data(self):
        now = datetime.now(timezone.utc)
        seeds = [
            (ADMIN_ID, "Admin", "BOB", "admin@bob.pe", UserType.ADMIN, "DNI", "40000001"),
            (CLIENT_ALICE_ID, "Alicia", "Quispe", "alicia@example.com", UserType.CLIENT, "DNI", "45678912"),
            (CLIENT_BOB_ID, "Bruno", "Salazar", "bruno@example.com", UserType.CLIENT, "RUC", "20123456789"),
        ]
        for user_id, first, last, email, user_type, doc_type, doc_number in seeds:
            self.users[user_id] = {
                "id": user_id, "first_name": first, "last_name": last,
                "email": email, "user_type": user_type,
                "document_type": doc_type, "document_number": doc_number,
                "saldo_total": Decimal("0.00"), "saldo_retenido": Decimal("0.00"),
                "created_at": now,
            }

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        with self._lock:
            if self._current is not None:
                yield self._current
                return
            snapshot = self._snapshot()
            tx = Transaction(self)
            self._current = tx
            try:
                yield tx
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._current = None
        tx._run_after_commit()

    @contextmanager
    def read(self) -> Iterator[None]:
        """Hold the store lock without a rollback snapshot.

        For queries and single-field updates that cannot fail halfway.
        """
        with self._lock:
            yield

    def _snapshot(self) -> dict[str, dict]:
        return {name: copy.deepcopy(getattr(self, name)) for name in self.TABLES}

    def _restore(self, snapshot: dict[str, dict]) -> None:
        for name, rows in snapshot.items():
            setattr(self, name, rows)

    def get(self, table: str, row_id: UUID, resource: str) -> dict:
        row = getattr(self, table).get(row_id)
        if row is None:
            raise NotFoundError(resource)
        return row

    def select(self, table: str, predicate: Callable[[dict], bool]) -> list[dict]:
        return [row for row in getattr(self, table).values() if predicate(row)]
