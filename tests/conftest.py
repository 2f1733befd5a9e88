import os

# settings are read at import time
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/fastkart_test")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("BANK_DATA_ENCRYPTION_KEY", "test-bank-key")
os.environ["MONGO_TRANSACTIONS"] = "false"

from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from utils.indexes import ensure_indexes
from utils.jwt import issue_actor_token
from utils.order_service import accept_order, create_order, mark_delivered, mark_picked_up, verify_secret_code
from utils.pricing import create_coupon

PINCODE = "560001"

ADDRESS = {
    "address_line": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": PINCODE,
    "country": "India",
    "phone": "9876543210",
}


class Seeder:
    """Inserts collaborator records (users, sellers, products, ...) the engine reads."""

    def __init__(self, db):
        self.db = db

    async def _insert(self, collection, doc):
        now = datetime.utcnow()
        doc = {"_id": ObjectId(), "created_at": now, "updated_at": now, **doc}
        await self.db[collection].insert_one(doc)
        return doc

    async def user(self, wallet=0.0, role="user"):
        return await self._insert("users", {"name": "Asha", "role": role, "wallet": float(wallet)})

    async def admin(self):
        return await self.user(role="admin")

    async def promotor(self, commission_type="percentage", commission_rate=5):
        return await self._insert("promotors", {
            "name": "Ravi",
            "commission_type": commission_type,
            "commission_rate": commission_rate,
            "earnings": {"total_earnings": 0.0, "pending_payout": 0.0, "total_payouts": 0.0},
        })

    async def seller(self, promotor=None, state="Karnataka"):
        return await self._insert("sellers", {
            "business_name": "Green Grocers",
            "gst_number": "29ABCDE1234F1Z5",
            "address": {"city": "Bengaluru", "state": state},
            "promotor_id": promotor["_id"] if promotor else None,
            "products": [],
            "earnings": {"total_earnings": 0.0, "pending_payout": 0.0, "total_payouts": 0.0},
        })

    async def product(self, seller, price=500.0, pincodes=(PINCODE,), gst_rate=18, tax_type="inclusive", name="Basmati Rice"):
        product = await self._insert("products", {
            "name": name,
            "seller_id": seller["_id"],
            "price": float(price),
            "gst_rate": gst_rate,
            "tax_type": tax_type,
            "serviceable_pincodes": list(pincodes) if pincodes is not None else None,
        })
        await self.db.sellers.update_one({"_id": seller["_id"]}, {"$push": {"products": product["_id"]}})
        return product

    async def driver(self, availability="online", **earnings):
        return await self._insert("drivers", {
            "name": "Kiran",
            "work_info": {"availability": availability, "current_order": None},
            "earnings": {
                "total_earnings": 0.0,
                "current_balance": 0.0,
                "pending_payout": 0.0,
                "today_earnings": 0.0,
                "total_payouts": 0.0,
                **{k: float(v) for k, v in earnings.items()},
            },
        })

    async def coupon(self, code="SAVE100", **overrides):
        now = datetime.utcnow()
        data = {
            "code": code,
            "description": "Flat discount",
            "discount_type": "fixed",
            "discount_value": 100,
            "min_order_amount": 0,
            "max_discount_amount": None,
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
            "usage_limit": None,
            "per_user_limit": 1,
            "is_active": True,
            **overrides,
        }
        return await create_coupon(self.db, data)

    async def order(self, user, product, *, quantity=1, price=None, payment_method="cod", use_wallet=False, coupon=None):
        return await create_order(
            self.db,
            user,
            items=[{
                "product_id": str(product["_id"]),
                "quantity": quantity,
                "price": price if price is not None else product["price"],
            }],
            shipping_address=dict(ADDRESS),
            payment_method=payment_method,
            use_wallet=use_wallet,
            coupon=coupon,
        )

    async def picked_up(self, order, driver):
        await accept_order(self.db, order["_id"], driver)
        await mark_picked_up(self.db, order["_id"], driver)
        return await verify_secret_code(self.db, order["_id"], driver, order["secret_code"])

    async def delivered(self, order, driver, paid_amount=None):
        await self.picked_up(order, driver)
        if paid_amount is None and order["payment_method"] == "cod":
            paid_amount = order["cash_on_delivery"]
        return await mark_delivered(self.db, order["_id"], driver, paid_amount)


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()["fastkart_test"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def auth():
    def headers(actor, role):
        return {"Authorization": f"Bearer {issue_actor_token(actor['_id'], role)}"}

    return headers


@pytest.fixture
async def client(db):
    from database import get_db
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
