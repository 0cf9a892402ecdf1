#!/usr/bin/env python3
"""Marketplace Escrow Engine — End-to-End Simulation.

Simulates four scenarios with BuyerBot, SellerBot and MediatorBot:

    Scenario 1: Happy Path
        - Seller lists a reservation, buyer offers, seller accepts
        - Buyer pays (PIX), seller confirms transfer, buyer confirms receipt
        - Outbox dispatcher pays the seller's net amount

    Scenario 2: Counter-offer
        - Buyer offers low, seller counters, buyer accepts the counter
        - The transaction is priced at the counter amount

    Scenario 3: Dispute Refund
        - Buyer purchases directly and pays
        - Seller confirms transfer, buyer disputes (transfer rejected)
        - Mediator refunds the buyer in full

    Scenario 4: Acceptance Race
        - Two buyers offer on the same listing
        - Seller accepts one; the other is superseded and cannot be accepted

Usage:
    # SQLite in-memory (default, no Docker needed):
    uv run python simulation.py

    # Against the configured PostgreSQL database:
    docker compose up -d
    uv run python simulation.py --postgres

    # Run a specific scenario:
    uv run python simulation.py --scenario 1
"""

from __future__ import annotations

import argparse
import asyncio
import uuid
from dataclasses import dataclass
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from marketplace_escrow.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

# Module-level state
_engine = None
_session_factory = None
_settings = None
_gateway = None
_notifier = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = True):
    """Initialize database engine, create tables and the collaborators."""
    global _engine, _session_factory, _settings, _gateway, _notifier

    from marketplace_escrow.config import Settings, get_settings
    from marketplace_escrow.infrastructure.gateways import (
        LoggingNotificationDispatcher,
        SimulatedPaymentGateway,
    )

    if use_sqlite:
        from sqlalchemy.ext.asyncio import create_async_engine
        from sqlalchemy.pool import StaticPool

        from marketplace_escrow.infrastructure.database.engine import make_session_factory
        from marketplace_escrow.infrastructure.database.orm_models import Base

        _settings = Settings(
            database_url="sqlite+aiosqlite:///:memory:",
            admin_user_ids="mediator-1",
            kyc_default_level="full",
            gateway_backoff_min_seconds=0,
            gateway_backoff_max_seconds=0,
        )
        _engine = create_async_engine(
            _settings.database_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        _session_factory = make_session_factory(_engine)
        async with _engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized")
    else:
        from marketplace_escrow.infrastructure.database.engine import init_db

        _settings = get_settings()
        await init_db()

    _gateway = SimulatedPaymentGateway(seed=42)
    _notifier = LoggingNotificationDispatcher()


def uow():
    """A unit of work bound to the simulation database."""
    from marketplace_escrow.infrastructure.database.engine import unit_of_work

    return unit_of_work(_session_factory)


async def shutdown_database():
    """Close database connections."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
    else:
        from marketplace_escrow.infrastructure.database.engine import close_db

        await close_db()


async def drain_outbox() -> None:
    """Deliver queued payouts and notifications."""
    from marketplace_escrow.services.effect_dispatcher import EffectDispatcher

    dispatcher = EffectDispatcher(_gateway, _notifier, _session_factory, _settings)
    report = await dispatcher.dispatch_pending()
    logger.info(
        "📬 OUTBOX: drained",
        delivered=report.delivered,
        failed=report.failed,
    )


# ---------------------------------------------------------------------------
# Bots
# ---------------------------------------------------------------------------
@dataclass
class SellerBot:
    """Simulated seller who lists reservations and answers offers."""

    user_id: str = "seller-1"

    async def list_reservation(self, title: str, asking_price: int) -> uuid.UUID:
        from marketplace_escrow.domain.enums import ListingStatus
        from marketplace_escrow.infrastructure.database.orm_models import Listing
        from marketplace_escrow.infrastructure.database.repositories import ListingRepository

        async with uow() as session:
            listing = await ListingRepository(session).create(
                Listing(
                    seller_id=self.user_id,
                    title=title,
                    asking_price=asking_price,
                    original_price=asking_price,
                    negotiable=True,
                    status=ListingStatus.ACTIVE.value,
                )
            )
        logger.info(
            "🟠 SELLER: Listing published", listing_id=str(listing.id), price=asking_price
        )
        return listing.id

    async def respond(
        self,
        offer_id: uuid.UUID,
        action: str,
        counter_amount: int | None = None,
    ) -> Any:
        from marketplace_escrow.services.offer_service import OfferService

        async with uow() as session:
            result = await OfferService(session, _settings).respond(
                offer_id, self.user_id, action, counter_amount=counter_amount
            )
        logger.info(
            "🟠 SELLER: Responded to offer",
            offer_id=str(offer_id),
            action=action,
            offer_status=result.offer.status,
        )
        return result

    async def confirm_transfer(self, transaction_id: uuid.UUID) -> None:
        from marketplace_escrow.services.transaction_service import TransactionService

        async with uow() as session:
            await TransactionService(session, _settings).confirm_transfer(
                transaction_id, self.user_id
            )
        logger.info("🟠 SELLER: Transfer confirmed", transaction_id=str(transaction_id))


@dataclass
class BuyerBot:
    """Simulated buyer who makes offers, pays, and confirms receipt."""

    user_id: str = "buyer-1"

    async def make_offer(self, listing_id: uuid.UUID, amount: int) -> uuid.UUID:
        from marketplace_escrow.services.offer_service import OfferService

        async with uow() as session:
            offer = await OfferService(session, _settings).create_offer(
                listing_id, self.user_id, amount, message="Tenho interesse!"
            )
        logger.info("🔵 BUYER: Offer made", offer_id=str(offer.id), amount=amount)
        return offer.id

    async def accept_counter(self, offer_id: uuid.UUID) -> Any:
        from marketplace_escrow.services.offer_service import OfferService

        async with uow() as session:
            result = await OfferService(session, _settings).accept_counter(
                offer_id, self.user_id
            )
        logger.info("🔵 BUYER: Counter accepted", offer_id=str(offer_id))
        return result

    async def buy_now(self, listing_id: uuid.UUID) -> uuid.UUID:
        from marketplace_escrow.services.transaction_service import TransactionService

        async with uow() as session:
            txn = await TransactionService(session, _settings).create_direct(
                listing_id, self.user_id
            )
        logger.info("🔵 BUYER: Direct purchase", transaction_id=str(txn.id), code=txn.code)
        return txn.id

    async def pay(self, transaction_id: uuid.UUID) -> dict:
        from marketplace_escrow.domain.enums import PaymentMethod
        from marketplace_escrow.orchestration.checkout import run_checkout

        state = await run_checkout(
            transaction_id,
            PaymentMethod.PIX,
            self.user_id,
            _gateway,
            session_factory=_session_factory,
            settings=_settings,
        )
        logger.info(
            "🔵 BUYER: Paid",
            transaction_id=str(transaction_id),
            amount=state["amount"],
            status=state["status"],
        )
        return state

    async def confirm_receipt(self, transaction_id: uuid.UUID) -> None:
        from marketplace_escrow.services.transaction_service import TransactionService

        async with uow() as session:
            await TransactionService(session, _settings).confirm_receipt(
                transaction_id, self.user_id
            )
        logger.info("🔵 BUYER: Receipt confirmed", transaction_id=str(transaction_id))

    async def open_dispute(self, transaction_id: uuid.UUID, reason: str) -> uuid.UUID:
        from marketplace_escrow.services.dispute_service import DisputeService

        async with uow() as session:
            dispute_id = await DisputeService(session, _settings).open(
                transaction_id, self.user_id, reason, "Reserva nao foi transferida"
            )
        logger.info("🔵 BUYER: Dispute opened", dispute_id=str(dispute_id))
        return dispute_id


@dataclass
class MediatorBot:
    """Simulated platform mediator (an admin user)."""

    user_id: str = "mediator-1"

    async def resolve(self, dispute_id: uuid.UUID, resolution: str) -> None:
        from marketplace_escrow.services.dispute_service import DisputeService

        async with uow() as session:
            txn = await DisputeService(session, _settings).resolve(
                dispute_id, resolution, self.user_id
            )
        logger.info("⚖️  MEDIATOR: Dispute resolved", resolution=resolution, status=txn.status)


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def cents(amount: int | None) -> str:
    if amount is None:
        return "—"
    return f"R$ {amount / 100:,.2f}"


async def print_transaction(transaction_id: uuid.UUID) -> None:
    """Print status, fees and fund disposition of a transaction."""
    from marketplace_escrow.presentation.labels import transaction_label
    from marketplace_escrow.services.transaction_service import TransactionService

    async with uow() as session:
        svc = TransactionService(session, _settings)
        txn = await svc.get_transaction(transaction_id)
        status = await svc.get_status(transaction_id)

    label = transaction_label(txn.status)
    print(f"  Code: {txn.code}")
    print(f"  Status: {txn.status} ({label.label}, {label.progress}%)")
    print(f"  Agreed price: {cents(txn.agreed_price)}")
    print(f"  Buyer pays: {cents(txn.total_buyer_payment)} (fee {cents(txn.buyer_fee)})")
    print(f"  Seller receives: {cents(txn.seller_net_amount)} (fee {cents(txn.seller_fee)})")
    print(f"  Platform keeps: {cents(txn.platform_fee)}")
    print(f"  Funds: {status['disposition']}")


async def print_audit_trail(transaction_id: uuid.UUID) -> None:
    """Print the full audit trail for a transaction."""
    from marketplace_escrow.services.transaction_service import TransactionService

    async with uow() as session:
        events = await TransactionService(session, _settings).get_events(transaction_id)
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "—"
        print(f"    {i}. [{evt.event_type}] {old} → {evt.new_status} (by {evt.actor})")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path() -> None:
    banner("SCENARIO 1: Happy Path — offer, pay, transfer, release")
    seller, buyer = SellerBot(), BuyerBot()

    section("Negotiation")
    listing_id = await seller.list_reservation("Pousada em Paraty, 3 noites", 100_000)
    offer_id = await buyer.make_offer(listing_id, 90_000)
    result = await seller.respond(offer_id, "accept")
    transaction_id = result.transaction.id

    section("Payment and transfer")
    await buyer.pay(transaction_id)
    await seller.confirm_transfer(transaction_id)
    await buyer.confirm_receipt(transaction_id)
    await drain_outbox()

    section("Result")
    await print_transaction(transaction_id)
    await print_audit_trail(transaction_id)


# ===========================================================================
# Scenario 2: Counter-offer
# ===========================================================================
async def scenario_2_counter_offer() -> None:
    banner("SCENARIO 2: Counter-offer — priced at the seller's counter")
    seller, buyer = SellerBot(), BuyerBot(user_id="buyer-2")

    listing_id = await seller.list_reservation("Hotel em Gramado, 2 noites", 80_000)
    offer_id = await buyer.make_offer(listing_id, 60_000)
    await seller.respond(offer_id, "counter", counter_amount=72_000)
    result = await buyer.accept_counter(offer_id)

    section("Result")
    print(f"  Buyer offered {cents(result.offer.amount)}, seller countered "
          f"{cents(result.offer.counter_amount)}")
    await print_transaction(result.transaction.id)


# ===========================================================================
# Scenario 3: Dispute Refund
# ===========================================================================
async def scenario_3_dispute_refund() -> None:
    banner("SCENARIO 3: Dispute — transfer rejected, buyer refunded")
    seller, buyer, mediator = SellerBot(), BuyerBot(user_id="buyer-3"), MediatorBot()

    listing_id = await seller.list_reservation("Resort em Porto de Galinhas", 250_000)
    transaction_id = await buyer.buy_now(listing_id)
    await buyer.pay(transaction_id)
    await seller.confirm_transfer(transaction_id)

    section("Dispute")
    dispute_id = await buyer.open_dispute(transaction_id, "transfer_rejected")
    await mediator.resolve(dispute_id, "refund_buyer")
    await drain_outbox()

    section("Result")
    await print_transaction(transaction_id)
    await print_audit_trail(transaction_id)


# ===========================================================================
# Scenario 4: Acceptance Race
# ===========================================================================
async def scenario_4_acceptance_race() -> None:
    banner("SCENARIO 4: Acceptance race — one listing, two offers")
    from marketplace_escrow.domain.exceptions import EscrowEngineError
    from marketplace_escrow.services.offer_service import OfferService

    seller = SellerBot()
    alice, bob = BuyerBot(user_id="buyer-alice"), BuyerBot(user_id="buyer-bob")

    listing_id = await seller.list_reservation("Chale em Campos do Jordao", 120_000)
    alice_offer = await alice.make_offer(listing_id, 110_000)
    bob_offer = await bob.make_offer(listing_id, 115_000)

    result = await seller.respond(bob_offer, "accept")
    print(f"  ✅ Bob's offer accepted -> {result.transaction.code}")

    try:
        await seller.respond(alice_offer, "accept")
        print("  ❌ Alice's offer was accepted too (should never happen)")
    except EscrowEngineError as exc:
        print(f"  🛡️  Alice's offer rejected: {exc.code}")

    async with uow() as session:
        offer = await OfferService(session, _settings).get_offer(alice_offer)
    print(f"  Alice's offer: {offer.status} ({offer.status_reason})")


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_counter_offer,
    3: scenario_3_dispute_refund,
    4: scenario_4_acceptance_race,
}


async def run_all(use_sqlite: bool = True) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "🏨" * 35)
        print("  MARKETPLACE ESCROW ENGINE — SIMULATION")
        db_type = "SQLite (in-memory)" if use_sqlite else "PostgreSQL"
        print(f"  Database: {db_type}")
        print("🏨" * 35 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")

    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = True) -> None:
    """Run a specific scenario."""
    await init_database(use_sqlite=use_sqlite)

    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Marketplace Escrow Engine Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--postgres",
        action="store_true",
        help="Use the configured PostgreSQL database instead of SQLite in-memory.",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=not args.postgres))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=not args.postgres))
