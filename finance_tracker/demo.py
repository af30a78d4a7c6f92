import logging

from werkzeug.security import generate_password_hash

from .db import utc_timestamp
from .importer import import_transactions, prepare_csv_import
from .ledger import create_account_balance, create_bank_account
from .sharing import backfill_shared_transactions, has_accepted_invitation

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "password123"
DEMO_USERS = [
    ("Test User", "test@example.com"),
    ("Connected User", "connected@example.com"),
]
DEMO_ACCOUNT_NAME = "Primary Checking"

SAMPLE_CSV = """date,vendor,amount,category,transaction_type
2024-01-01,Job,2000.00,Job,Credit
2024-01-05,Grocery Store,150.00,Food & Dining,Debit
2024-01-10,Gas Station,60.00,Transportation,Debit
2024-01-12,Netflix,15.99,Entertainment,Debit
2024-01-15,Restaurant,45.00,Food & Dining,Debit
2024-01-18,Amazon,200.00,Shopping,Debit
2024-01-20,Utility Company,90.00,Bills & Utilities,Debit
2024-01-22,Refund,50.00,Refund,Credit
2024-01-25,Rent Payment,1200.00,Housing,Debit
2024-01-28,Pharmacy,25.00,Health & Medical,Debit
2024-02-02,Coffee Shop,5.00,Food & Dining,Debit
2024-02-05,Mobile Phone,70.00,Bills & Utilities,Debit
2024-02-08,Gym Membership,50.00,Health & Fitness,Debit
2024-02-10,Online Course,200.00,Education,Debit
2024-02-12,Car Insurance,125.00,Insurance,Debit
2024-02-15,Hardware Store,75.00,Home Improvement,Debit
2024-02-18,Freelance Work,500.00,Job,Credit
2024-02-20,Supermarket,100.00,Food & Dining,Debit
2024-02-22,Taxi,30.00,Transportation,Debit
2024-02-25,Concert,50.00,Entertainment,Debit
2024-02-28,Clothing Store,150.00,Shopping,Debit
2024-02-28,Side Hustle,150.00,Job,Credit
2024-03-01,Electricity Bill,100.00,Bills & Utilities,Debit
2024-03-05,Water Bill,30.00,Bills & Utilities,Debit
2024-03-05,Refund,25.00,Refund,Credit
2024-03-08,Doctor Visit,75.00,Health & Medical,Debit
2024-03-10,Bookstore,40.00,Education,Debit
2024-03-10,Side Hustle,200.00,Job,Credit
2024-03-12,Home Decor,60.00,Home Improvement,Debit
2024-03-15,Part-time Job,300.00,Job,Credit
"""

DEMO_BALANCES = [
    (2400.0, "2024-02-01T09:00:00+00:00"),
    (2500.0, "2024-03-01T09:00:00+00:00"),
]


def _ensure_user(db, name, email):
    row = db.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
    if row is not None:
        return row["id"]
    db.execute(
        "INSERT INTO users (name, email, password_hash) VALUES (?, ?, ?)",
        (name, email, generate_password_hash(DEMO_PASSWORD)),
    )
    user_id = db.last_insert_id()
    db.commit()
    return user_id


def seed_demo_data(db):
    """Load the demo users, their connection, sample transactions and a checking account.

    Safe to run repeatedly: users, the invitation and the account are only
    created once and re-imported transactions are skipped as duplicates.
    """
    user_ids = [_ensure_user(db, name, email) for name, email in DEMO_USERS]
    main_id, connected_id = user_ids

    if not has_accepted_invitation(db, main_id, connected_id):
        now = utc_timestamp()
        db.execute(
            """
            INSERT INTO invitations (email, status, sender_id, recipient_id, created_at, updated_at)
            VALUES (?, 'accepted', ?, ?, ?, ?)
            """,
            (DEMO_USERS[1][1], main_id, connected_id, now, now),
        )
        db.commit()

    imported = import_transactions(db, main_id, prepare_csv_import(SAMPLE_CSV))
    shared = backfill_shared_transactions(db, main_id, connected_id)

    account = db.execute(
        "SELECT id FROM bank_accounts WHERE user_id = ? AND name = ?",
        (main_id, DEMO_ACCOUNT_NAME),
    ).fetchone()
    if account is None:
        account = create_bank_account(
            db,
            main_id,
            {
                "name": DEMO_ACCOUNT_NAME,
                "account_type": "Checking",
                "bank_name": "Example Bank",
                "account_number": "123456789",
            },
        )
        for balance, timestamp in DEMO_BALANCES:
            create_account_balance(
                db,
                main_id,
                {"account_id": account["id"], "balance": balance, "timestamp": timestamp},
            )

    logger.info(
        "Demo data ready: created=%s skipped=%s shared=%s",
        imported["created"],
        imported["skipped"],
        shared,
    )
    return {
        "user_ids": user_ids,
        "created": imported["created"],
        "skipped": imported["skipped"],
        "shared": shared,
        "account_id": account["id"],
    }
