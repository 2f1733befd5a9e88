import logging
from dataclasses import dataclass
from datetime import datetime

from bson import ObjectId
from pymongo import ReturnDocument

from config.constants import PAYOUT_METHODS
from models.driver import EarningStatus
from models.payout import PayoutStatus, RecipientType
from utils.audit import log_audit
from utils.balances import increment_balances, release_pending_payout
from utils.errors import (
    AlreadyPaidError,
    InsufficientFundsError,
    InvalidTransitionError,
    NoPendingFundsError,
    NotFoundError,
    ValidationError,
)
from utils.guards import get_or_404, parse_object_id
from utils.money import round_money, sum_money
from utils.mongo import next_sequence, unit_of_work
from utils.reports import build_record_query, paginate, recipient_summary
from utils.state_machine import PAYOUT_TRANSITIONS, assert_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordSource:
    """Where a recipient's payable records live and how they are batched."""

    name: str
    collection: str
    recipient_field: str
    amount_field: str
    recipient_collection: str
    batch_collection: str
    batch_recipient_field: str
    batch_prefix: str
    open_status: str
    processing_status: str
    paid_status: str
    # batching moves the total out of earnings.current_balance
    reserves_balance: bool = False


SELLER_SOURCE = RecordSource(
    name=RecipientType.SELLER.value,
    collection="seller_payouts",
    recipient_field="seller_id",
    amount_field="net_amount",
    recipient_collection="sellers",
    batch_collection="payouts",
    batch_recipient_field="recipient_id",
    batch_prefix="SPO",
    open_status=PayoutStatus.PENDING.value,
    processing_status=PayoutStatus.PROCESSING.value,
    paid_status=PayoutStatus.PAID.value,
)

PROMOTOR_SOURCE = RecordSource(
    name=RecipientType.PROMOTOR.value,
    collection="promotor_payouts",
    recipient_field="promotor_id",
    amount_field="commission_amount",
    recipient_collection="promotors",
    batch_collection="payouts",
    batch_recipient_field="recipient_id",
    batch_prefix="PPO",
    open_status=PayoutStatus.PENDING.value,
    processing_status=PayoutStatus.PROCESSING.value,
    paid_status=PayoutStatus.PAID.value,
)

DRIVER_SOURCE = RecordSource(
    name="driver",
    collection="driver_earnings",
    recipient_field="driver_id",
    amount_field="amount",
    recipient_collection="drivers",
    batch_collection="driver_payouts",
    batch_recipient_field="driver_id",
    batch_prefix="DPO",
    open_status=EarningStatus.EARNED.value,
    processing_status=EarningStatus.PAYOUT_PROCESSING.value,
    paid_status=EarningStatus.PAYOUT_PAID.value,
    reserves_balance=True,
)


class PayoutBatcher:
    """
    Groups a recipient's open records into one disbursement.

    A record belongs to at most one live batch: members are claimed by
    a conditional update on `payout_batch_id: None`, so two concurrent
    batch creations can never share a record.
    """

    def __init__(self, source: RecordSource):
        self.source = source

    @property
    def name(self) -> str:
        return self.source.name

    def _records(self, db):
        return db[self.source.collection]

    def _batches(self, db):
        return db[self.source.batch_collection]

    async def _get_batch(self, db, batch_id) -> dict:
        batch_oid = parse_object_id(batch_id, "batch_id")
        batch = await self._batches(db).find_one({"_id": batch_oid, "recipient_type": self.source.name})
        if not batch:
            raise NotFoundError(
                "Payout batch not found",
                entity="payout",
                id=str(batch_oid),
                recipient_type=self.source.name,
            )
        return batch

    async def _affordable_ids(self, db, recipient: dict, claim: dict) -> list:
        """
        Open records whose total fits the recipient's current balance.
        Penalties always ride along; credits are taken oldest first.
        """
        balance = float((recipient.get("earnings") or {}).get("current_balance") or 0)
        records = await self._records(db).find(claim).sort("created_at", 1).to_list(None)
        amounts = [(r["_id"], float(r[self.source.amount_field])) for r in records]

        ids = [oid for oid, amount in amounts if amount < 0]
        running = sum(amount for _, amount in amounts if amount < 0)
        for oid, amount in amounts:
            if amount >= 0 and round_money(running + amount) <= balance:
                running += amount
                ids.append(oid)
        return ids

    async def create_batch(
        self,
        db,
        recipient_id,
        *,
        record_ids: list | None = None,
        payout_method: str | None = None,
        notes: str | None = None,
        actor: dict | None = None,
        actor_role: str = "admin",
    ) -> dict:
        """
        `record_ids` narrows the batch to those open records; they are
        matched against the recipient, so foreign ids are simply skipped.
        """
        src = self.source
        recipient_oid = parse_object_id(recipient_id, src.recipient_field)
        recipient = await get_or_404(db[src.recipient_collection], recipient_oid, src.name.title())

        if payout_method and payout_method not in PAYOUT_METHODS:
            raise ValidationError(f"Unknown payout method '{payout_method}'", field="payout_method")

        claim = {src.recipient_field: recipient_oid, "status": src.open_status, "payout_batch_id": None}
        if record_ids is not None:
            claim["_id"] = {"$in": [parse_object_id(r, "record_ids") for r in record_ids]}
        if src.reserves_balance:
            claim["_id"] = {"$in": await self._affordable_ids(db, recipient, claim)}

        batch_oid = ObjectId()
        now = datetime.utcnow()

        async with unit_of_work(db, f"{src.name} payout batch") as uow:
            await self._records(db).update_many(
                claim,
                {"$set": {
                    "status": src.processing_status,
                    "payout_batch_id": batch_oid,
                    "updated_at": now,
                }},
                **uow.kw,
            )
            uow.on_rollback(
                self._records(db).update_many,
                {"payout_batch_id": batch_oid},
                {"$set": {"status": src.open_status, "payout_batch_id": None}},
            )

            members = await self._records(db).find({"payout_batch_id": batch_oid}, **uow.kw).to_list(None)
            total = sum_money(m[src.amount_field] for m in members)
            if not members or total <= 0:
                raise NoPendingFundsError(
                    f"No pending funds for this {src.name}",
                    recipient_type=src.name,
                    recipient_id=str(recipient_oid),
                    records=len(members),
                    total_amount=total,
                )

            if src.reserves_balance:
                reserved = await increment_balances(
                    db,
                    src.recipient_collection,
                    recipient_oid,
                    {"current_balance": -total},
                    require={"current_balance": total},
                    session=uow.session,
                )
                if not reserved:
                    raise InsufficientFundsError(
                        "Batch total exceeds the current balance",
                        recipient_type=src.name,
                        recipient_id=str(recipient_oid),
                        requested=total,
                    )
                uow.on_rollback(
                    increment_balances, db, src.recipient_collection, recipient_oid,
                    {"current_balance": total},
                )

            day = now.strftime("%Y%m%d")
            seq = await next_sequence(db, f"{src.batch_prefix}-{day}", session=uow.session)

            batch = {
                "_id": batch_oid,
                "batch_id": f"{src.batch_prefix}-{day}-{seq:04d}",
                "recipient_type": src.name,
                src.batch_recipient_field: recipient_oid,
                "total_amount": total,
                "record_count": len(members),
                "record_ids": [m["_id"] for m in members],
                "order_ids": [m["order_id"] for m in members if m.get("order_id")],
                "status": PayoutStatus.PENDING.value,
                "payout_method": payout_method,
                "transaction_id": None,
                "notes": notes,
                "created_by": actor["_id"] if actor else None,
                "created_at": now,
                "updated_at": now,
                "paid_at": None,
            }
            await self._batches(db).insert_one(batch, **uow.kw)

        await log_audit(
            db,
            actor=actor,
            actor_role=actor_role,
            action="PAYOUT_BATCH_CREATED",
            target_type=f"{src.name}_payout",
            target_id=batch_oid,
            metadata={"recipient_id": str(recipient_oid), "total_amount": total, "records": len(members)},
        )
        logger.info(
            "PAYOUT_BATCH_CREATED type=%s batch=%s recipient=%s total=%s records=%s",
            src.name, batch["batch_id"], recipient_oid, total, len(members),
        )
        return batch

    async def mark_paid(
        self,
        db,
        batch_id,
        *,
        payment_method: str,
        transaction_id: str | None = None,
        notes: str | None = None,
        admin: dict | None = None,
    ) -> dict:
        src = self.source
        batch = await self._get_batch(db, batch_id)
        batch_oid = batch["_id"]

        if batch["status"] == PayoutStatus.PAID.value:
            raise AlreadyPaidError(
                "Payout batch is already paid",
                batch_id=batch["batch_id"],
                paid_at=batch.get("paid_at").isoformat() if batch.get("paid_at") else None,
            )
        assert_transition(PAYOUT_TRANSITIONS, batch["status"], PayoutStatus.PAID, entity="payout")

        if payment_method not in PAYOUT_METHODS:
            raise ValidationError(f"Unknown payment method '{payment_method}'", field="payment_method")

        now = datetime.utcnow()
        total = float(batch["total_amount"])
        recipient_oid = batch[src.batch_recipient_field]

        async with unit_of_work(db, f"{src.name} payout settlement") as uow:
            updated = await self._batches(db).find_one_and_update(
                {"_id": batch_oid, "status": batch["status"]},
                {"$set": {
                    "status": PayoutStatus.PAID.value,
                    "payout_method": payment_method,
                    "transaction_id": transaction_id,
                    "notes": notes if notes is not None else batch.get("notes"),
                    "paid_at": now,
                    "paid_by": admin["_id"] if admin else None,
                    "updated_at": now,
                }},
                return_document=ReturnDocument.AFTER,
                **uow.kw,
            )
            if not updated:
                current = await self._batches(db).find_one({"_id": batch_oid})
                if current and current["status"] == PayoutStatus.PAID.value:
                    raise AlreadyPaidError("Payout batch is already paid", batch_id=batch["batch_id"])
                raise InvalidTransitionError(
                    "Payout batch was modified concurrently",
                    entity="payout",
                    current=current["status"] if current else None,
                    target=PayoutStatus.PAID.value,
                )
            uow.on_rollback(
                self._batches(db).update_one,
                {"_id": batch_oid},
                {"$set": {"status": batch["status"], "paid_at": None, "transaction_id": None}},
            )

            await self._records(db).update_many(
                {"payout_batch_id": batch_oid},
                {"$set": {"status": src.paid_status, "paid_at": now, "updated_at": now}},
                **uow.kw,
            )
            uow.on_rollback(
                self._records(db).update_many,
                {"payout_batch_id": batch_oid},
                {"$set": {"status": src.processing_status, "paid_at": None}},
            )

            await release_pending_payout(
                db,
                src.recipient_collection,
                recipient_oid,
                total,
                extra={"total_payouts": total},
                set_fields={"earnings.last_payout_date": now},
                session=uow.session,
            )

        await log_audit(
            db,
            actor=admin,
            actor_role="admin",
            action="PAYOUT_BATCH_PAID",
            target_type=f"{src.name}_payout",
            target_id=batch_oid,
            metadata={"total_amount": total, "payment_method": payment_method, "transaction_id": transaction_id},
        )
        logger.info("PAYOUT_BATCH_PAID type=%s batch=%s total=%s", src.name, batch["batch_id"], total)
        return updated

    async def update_status(
        self,
        db,
        batch_id,
        *,
        status: str,
        notes: str | None = None,
        admin: dict | None = None,
    ) -> dict:
        src = self.source
        target = getattr(status, "value", status)
        if target == PayoutStatus.PAID.value:
            raise ValidationError("Use mark-paid to settle a payout batch", code="USE_MARK_PAID", field="status")

        batch = await self._get_batch(db, batch_id)
        batch_oid = batch["_id"]
        current = batch["status"]
        assert_transition(PAYOUT_TRANSITIONS, current, target, entity="payout")

        now = datetime.utcnow()
        released = 0
        async with unit_of_work(db, f"{src.name} payout status update") as uow:
            updated = await self._batches(db).find_one_and_update(
                {"_id": batch_oid, "status": current},
                {"$set": {
                    "status": target,
                    "notes": notes if notes is not None else batch.get("notes"),
                    "updated_at": now,
                }},
                return_document=ReturnDocument.AFTER,
                **uow.kw,
            )
            if not updated:
                raise InvalidTransitionError(
                    "Payout batch was modified concurrently",
                    entity="payout",
                    current=current,
                    target=target,
                )
            uow.on_rollback(self._batches(db).update_one, {"_id": batch_oid}, {"$set": {"status": current}})

            if target in {PayoutStatus.FAILED.value, PayoutStatus.CANCELLED.value}:
                # members become batchable again
                result = await self._records(db).update_many(
                    {"payout_batch_id": batch_oid, "status": src.processing_status},
                    {"$set": {"status": src.open_status, "payout_batch_id": None, "updated_at": now}},
                    **uow.kw,
                )
                released = result.modified_count
                if src.reserves_balance:
                    refund = float(batch["total_amount"])
                    await increment_balances(
                        db,
                        src.recipient_collection,
                        batch[src.batch_recipient_field],
                        {"current_balance": refund},
                        session=uow.session,
                    )
                    uow.on_rollback(
                        increment_balances, db, src.recipient_collection, batch[src.batch_recipient_field],
                        {"current_balance": -refund},
                    )

        await log_audit(
            db,
            actor=admin,
            actor_role="admin",
            action=f"PAYOUT_BATCH_{target.upper()}",
            target_type=f"{src.name}_payout",
            target_id=batch_oid,
            metadata={"from": current, "released_records": released},
        )
        logger.info("PAYOUT_BATCH_STATUS batch=%s %s->%s released=%s", batch["batch_id"], current, target, released)
        return updated

    # ==============================
    # Reads
    # ==============================

    async def list_batches(self, db, *, recipient_id=None, status=None, date_from=None, date_to=None, page=1, limit=20) -> dict:
        query = build_record_query(
            recipient_field=self.source.batch_recipient_field,
            recipient_id=recipient_id,
            status=status,
            date_from=date_from,
            date_to=date_to,
            extra={"recipient_type": self.source.name},
        )
        return await paginate(self._batches(db), query, page=page, limit=limit)

    async def list_records(self, db, *, recipient_id=None, status=None, date_from=None, date_to=None, page=1, limit=20) -> dict:
        query = build_record_query(
            recipient_field=self.source.recipient_field,
            recipient_id=recipient_id,
            status=status,
            date_from=date_from,
            date_to=date_to,
        )
        return await paginate(self._records(db), query, page=page, limit=limit)

    async def summary(self, db, recipient_id) -> dict:
        src = self.source
        return await recipient_summary(db, src.collection, src.recipient_field, recipient_id, src.amount_field)


seller_batcher = PayoutBatcher(SELLER_SOURCE)
promotor_batcher = PayoutBatcher(PROMOTOR_SOURCE)
driver_batcher = PayoutBatcher(DRIVER_SOURCE)


def batcher_for(recipient_type: str) -> PayoutBatcher:
    recipient_type = getattr(recipient_type, "value", recipient_type)
    batchers = {
        seller_batcher.name: seller_batcher,
        promotor_batcher.name: promotor_batcher,
        driver_batcher.name: driver_batcher,
    }
    if recipient_type not in batchers:
        raise ValidationError(f"Unknown recipient type '{recipient_type}'", field="recipient_type")
    return batchers[recipient_type]
