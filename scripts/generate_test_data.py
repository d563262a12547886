"""
Seeds the database with demo transactions for a demo merchant.

Distribution:
- ~60 gateway transactions across STRIPE, PAYPAL, BRAINTREE
- Statuses: mostly COMPLETED, some PENDING / PROCESSING / FAILED / CANCELLED
- ~15 manual cash / check payments (created COMPLETED)
- Refunds booked through the reconciliation engine: full and partial
- Prints a merchant token for trying the API
"""
import sys
import os
import random
from datetime import datetime, timedelta

# Allow running from project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import engine, SessionLocal
from app import models
from app.repository import TransactionRepository
from app.security import create_merchant_token
from app.services.reconciliation import ReconciliationEngine, local_event

random.seed(42)

DEMO_MERCHANT = "merchant_demo"
GATEWAY_METHODS = {
    models.STRIPE: "CARD",
    models.PAYPAL: "PAYPAL",
    models.BRAINTREE: "CARD",
}
FEE_RATES = {
    models.STRIPE: (0.029, 0.30),
    models.PAYPAL: (0.0349, 0.49),
    models.BRAINTREE: (0.0259, 0.49),
}
STATUSES = (
    [models.COMPLETED] * 70 +
    [models.PENDING] * 8 +
    [models.PROCESSING] * 7 +
    [models.FAILED] * 10 +
    [models.CANCELLED] * 5
)
CUSTOMERS = [
    ("Ana Torres", "ana@example.com", "+1-555-0101"),
    ("Ben Okafor", "ben@example.com", "+1-555-0102"),
    ("Chen Wei", "chen@example.com", None),
    ("Dana Smith", None, "+1-555-0104"),
    (None, None, None),
]

BASE_TIME = datetime(2024, 1, 15, 8, 0, 0)


def gateway_ids(gateway, index):
    if gateway == models.STRIPE:
        return f"pi_demo{index:04d}", f"ch_demo{index:04d}"
    if gateway == models.PAYPAL:
        return f"ORDER{index:06d}", f"CAPTURE{index:06d}"
    return f"bt_demo{index:04d}", f"bt_demo{index:04d}"


def make_transaction(index, gateway, status, amount, created_at):
    name, email, phone = random.choice(CUSTOMERS)
    order_id, capture_id = gateway_ids(gateway, index)
    txn = models.Transaction(
        id=models.generate_transaction_id(),
        merchant_id=DEMO_MERCHANT,
        sale_id=f"sale_{index:04d}",
        type=models.SALE,
        status=status,
        payment_method=GATEWAY_METHODS.get(gateway, random.choice(["CASH", "CHECK"])),
        gateway=gateway,
        amount=amount,
        currency="USD",
        fee_amount=0.0,
        net_amount=amount,
        gateway_order_id=order_id if gateway != models.MANUAL else None,
        customer_name=name,
        customer_email=email,
        customer_phone=phone,
        metadata_={},
        notes="",
        created_at=created_at,
        updated_at=created_at,
    )
    if status == models.COMPLETED:
        if gateway != models.MANUAL:
            rate, fixed = FEE_RATES[gateway]
            txn.fee_amount = round(amount * rate + fixed, 2)
            txn.fee_type = "PROCESSING_FEE"
            txn.gateway_capture_id = capture_id
        txn.net_amount = round(amount - txn.fee_amount, 2)
        txn.processed_at = created_at + timedelta(minutes=random.randint(1, 30))
    elif status == models.FAILED:
        txn.metadata_ = {"failure_reason": "card_declined"}
    txn.append_note(f"Seeded {status} {gateway} transaction", at=created_at)
    return txn


def generate_transactions():
    transactions = []

    # --- 1. Gateway transactions ---
    for i in range(60):
        gateway = random.choice(list(GATEWAY_METHODS))
        status = random.choice(STATUSES)
        amount = round(random.uniform(5, 500), 2)
        created_at = BASE_TIME + timedelta(hours=random.uniform(0, 72))
        transactions.append(make_transaction(i, gateway, status, amount, created_at))

    # --- 2. Manual payments ---
    for i in range(60, 75):
        amount = round(random.uniform(5, 200), 2)
        created_at = BASE_TIME + timedelta(hours=random.uniform(0, 72))
        txn = make_transaction(i, models.MANUAL, models.COMPLETED, amount, created_at)
        txn.metadata_ = {"created_via": "seed", "created_by": DEMO_MERCHANT}
        transactions.append(txn)

    return transactions


def main():
    print("Creating database tables...")
    models.Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        existing = db.query(models.Transaction).count()
        if existing > 0:
            print(f"Database already has {existing} transactions. Skipping seed.")
            return

        print("Generating transactions...")
        transactions = generate_transactions()
        db.add_all(transactions)
        db.commit()

        # --- 3. Refunds, booked the way live refunds are ---
        reconciler = ReconciliationEngine(TransactionRepository(db))
        completed = [
            t for t in transactions
            if t.status == models.COMPLETED and t.gateway != models.MANUAL
        ]
        for txn in completed[:4]:
            reconciler.record_refund(
                txn, txn.amount, f"re_demo_full_{txn.sale_id}",
                local_event("refund.requested", reason="customer returned items"),
            )
        for txn in completed[4:8]:
            reconciler.record_refund(
                txn, round(txn.amount * 0.3, 2), f"re_demo_partial_{txn.sale_id}",
                local_event("refund.requested", reason="partial return"),
            )

        count = db.query(models.Transaction).count()
        print(f"Successfully seeded {count} transactions.")

        # Print summary
        from sqlalchemy import func as sqlfunc
        statuses = db.query(
            models.Transaction.status,
            sqlfunc.count(models.Transaction.id)
        ).group_by(models.Transaction.status).all()
        print("\nStatus distribution:")
        for status, cnt in statuses:
            print(f"  {status}: {cnt}")

        gateways = db.query(
            models.Transaction.gateway,
            sqlfunc.count(models.Transaction.id)
        ).group_by(models.Transaction.gateway).all()
        print("\nGateway distribution:")
        for gateway, cnt in gateways:
            print(f"  {gateway}: {cnt}")

        print(f"\nDemo merchant token ({DEMO_MERCHANT}):")
        print(create_merchant_token(DEMO_MERCHANT, expires_delta=timedelta(days=30)))

    finally:
        db.close()


if __name__ == "__main__":
    main()
