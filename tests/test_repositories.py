"""
Repository tests against SQLite.
"""
import asyncio
import importlib.util
from pathlib import Path
from typing import Any, Callable

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect

from storefront.core.exceptions import ConcurrentUpdateError
from storefront.core.states import PaymentStatus, can_transition, coerce_status
from storefront.database.connection import Database
from storefront.database.models import Base, Order
from storefront.database.repositories import (
    DeadLetterRepository,
    OrderRepository,
    UserRepository,
)


class TestOrderRepository:
    """Optimistic concurrency on orders."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_update_bumps_version(
        self, order_repository: OrderRepository, order: Order
    ) -> None:
        new_version = await order_repository.update_fields(
            "ORD-42", 0, {"payment_status": "COMPLETED"}
        )

        stored = await order_repository.find_by_id("ORD-42")
        assert new_version == 1
        assert stored.version == 1
        assert stored.payment_status == "COMPLETED"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_version_rejected(
        self, order_repository: OrderRepository, order: Order
    ) -> None:
        await order_repository.update_fields("ORD-42", 0, {"status": "PROCESSING"})

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await order_repository.update_fields("ORD-42", 0, {"status": "CANCELLED"})

        assert exc_info.value.http_status == 409
        stored = await order_repository.find_by_id("ORD-42")
        assert stored.status == "PROCESSING"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_writers_single_winner(
        self, order_repository: OrderRepository, order: Order
    ) -> None:
        """Writers racing on the same version produce exactly one winner."""
        results = await asyncio.gather(
            *[
                order_repository.update_fields("ORD-42", 0, {"payment_method": f"m{i}"})
                for i in range(5)
            ],
            return_exceptions=True,
        )

        winners = [r for r in results if r == 1]
        conflicts = [r for r in results if isinstance(r, ConcurrentUpdateError)]
        assert len(winners) == 1
        assert len(conflicts) == 4

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_find_by_payment_intent(
        self, order_repository: OrderRepository, seed: Callable[..., Any]
    ) -> None:
        await seed(Order(id="ORD-1", user_id="u", payment_intent_id="pi_abc"))

        found = await order_repository.find_by_payment_intent("pi_abc")

        assert found.id == "ORD-1"
        assert await order_repository.find_by_payment_intent("pi_missing") is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_order(self, order_repository: OrderRepository) -> None:
        assert await order_repository.find_by_id("nope") is None


class TestOtherRepositories:
    """Users and dead letters."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_user_update_fields(self, database: Database, user: Any) -> None:
        users = UserRepository(database.session_factory)

        await users.update_fields("user_7", {"stripe_customer_id": "cus_9"})

        stored = await users.find_by_id("user_7")
        assert stored.stripe_customer_id == "cus_9"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dead_letters_newest_first(
        self, dead_letter_repository: DeadLetterRepository
    ) -> None:
        for i in range(3):
            await dead_letter_repository.add(
                event_id=f"evt_{i}",
                event_type="payment_intent.succeeded",
                reason="missing_order_id",
                payload={"id": f"evt_{i}"},
            )

        letters = await dead_letter_repository.list_recent(limit=2)

        assert [letter.event_id for letter in letters] == ["evt_2", "evt_1"]
        assert letters[0].payload == {"id": "evt_2"}


class TestPaymentStates:
    """Transition table."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target,allowed",
        [
            (PaymentStatus.PENDING, PaymentStatus.COMPLETED, True),
            (PaymentStatus.PENDING, PaymentStatus.FAILED, True),
            (PaymentStatus.COMPLETED, PaymentStatus.REFUND_PENDING, True),
            (PaymentStatus.REFUND_PENDING, PaymentStatus.REFUNDED, True),
            (PaymentStatus.REFUND_PENDING, PaymentStatus.COMPLETED, True),
            (PaymentStatus.COMPLETED, PaymentStatus.COMPLETED, True),
            (PaymentStatus.COMPLETED, PaymentStatus.FAILED, False),
            (PaymentStatus.REFUNDED, PaymentStatus.COMPLETED, False),
            (PaymentStatus.PENDING, PaymentStatus.REFUNDED, False),
        ],
    )
    def test_can_transition(
        self, current: PaymentStatus, target: PaymentStatus, allowed: bool
    ) -> None:
        assert can_transition(current, target) is allowed

    @pytest.mark.unit
    def test_coerce_status(self) -> None:
        assert coerce_status("COMPLETED") == PaymentStatus.COMPLETED
        assert coerce_status(None) == PaymentStatus.PENDING
        assert coerce_status("LEGACY") == PaymentStatus.PENDING


class TestInitialMigration:
    """The Alembic revision matches the ORM tables."""

    @staticmethod
    def load_revision() -> Any:
        path = (
            Path(__file__).resolve().parent.parent
            / "storefront/database/migrations/versions/001_initial_schema.py"
        )
        spec = importlib.util.spec_from_file_location("initial_schema", path)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    @pytest.mark.unit
    def test_upgrade_and_downgrade(self, tmp_path: Any) -> None:
        revision = self.load_revision()
        engine = create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")

        with engine.begin() as conn:
            with Operations.context(MigrationContext.configure(conn)):
                revision.upgrade()
            tables = set(inspect(conn).get_table_names())
            order_columns = {c["name"] for c in inspect(conn).get_columns("orders")}

            with Operations.context(MigrationContext.configure(conn)):
                revision.downgrade()
            remaining = set(inspect(conn).get_table_names())

        engine.dispose()
        assert tables == set(Base.metadata.tables)
        assert order_columns == set(Base.metadata.tables["orders"].columns.keys())
        assert remaining == set()
