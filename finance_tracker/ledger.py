from datetime import datetime, timezone

from .db import INTEGRITY_ERRORS, row_to_dict, utc_timestamp
from .errors import DuplicateTransactionError, ValidationError
from .importer import is_iso_date, missing_transaction_fields, normalize_transaction
from .ownership import coerce_id, require_owner

TRANSACTION_COLUMNS = [
    "id",
    "user_id",
    "date",
    "vendor",
    "amount",
    "category",
    "transaction_type",
    "created_at",
    "updated_at",
]
UPDATABLE_TRANSACTION_FIELDS = ("date", "vendor", "amount", "category", "transaction_type")
TRANSACTION_FILTER_FIELDS = ("category", "vendor", "transaction_type")
BANK_ACCOUNT_FIELDS = ("name", "account_type", "bank_name", "account_number", "routing_number", "notes")
MISSING_FIELDS_MESSAGE = "Missing required fields: date, vendor, category, and transaction_type are required"
DATE_FORMAT_MESSAGE = "date must use the YYYY-MM-DD format"


def _select_columns(alias):
    return ", ".join(f"{alias}.{column}" for column in TRANSACTION_COLUMNS)


def get_transaction(db, transaction_id):
    return db.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,)).fetchone()


def find_duplicate_transaction(db, user_id, record, exclude_id=None):
    sql = """
        SELECT id FROM transactions
        WHERE user_id = ? AND date = ? AND vendor = ? AND amount = ? AND transaction_type = ?
    """
    params = [user_id, record["date"], record["vendor"], record["amount"], record["transaction_type"]]
    if exclude_id is not None:
        sql += " AND id != ?"
        params.append(exclude_id)
    return db.execute(sql, params).fetchone()


def _check_date(value):
    if value is None or value == "":
        return
    if not is_iso_date(str(value).strip()):
        raise ValidationError(DATE_FORMAT_MESSAGE)


def create_transaction(db, acting_user_id, data):
    if not isinstance(data, dict):
        raise ValidationError("Transaction must be a JSON object")
    _check_date(data.get("date"))
    record = normalize_transaction(data)
    if missing_transaction_fields(record):
        raise ValidationError(MISSING_FIELDS_MESSAGE)

    duplicate = find_duplicate_transaction(db, acting_user_id, record)
    if duplicate is not None:
        raise DuplicateTransactionError(duplicate_id=duplicate["id"])

    try:
        db.execute(
            """
            INSERT INTO transactions (user_id, date, vendor, amount, category, transaction_type)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                acting_user_id,
                record["date"],
                record["vendor"],
                record["amount"],
                record["category"],
                record["transaction_type"],
            ),
        )
        transaction_id = db.last_insert_id()
        db.commit()
    except INTEGRITY_ERRORS:
        db.rollback()
        duplicate = find_duplicate_transaction(db, acting_user_id, record)
        raise DuplicateTransactionError(duplicate_id=duplicate["id"] if duplicate else None)

    return row_to_dict(get_transaction(db, transaction_id))


def update_transaction(db, acting_user_id, transaction_id, changes):
    if not isinstance(changes, dict):
        raise ValidationError("Transaction must be a JSON object")
    transaction = require_owner(
        get_transaction(db, transaction_id),
        acting_user_id,
        not_found="Transaction not found",
        forbidden="You don't have permission to update this transaction",
    )
    if "date" in changes:
        _check_date(changes["date"])

    merged = row_to_dict(transaction)
    merged.update({field: changes[field] for field in UPDATABLE_TRANSACTION_FIELDS if field in changes})
    record = normalize_transaction(merged)
    if missing_transaction_fields(record):
        raise ValidationError(MISSING_FIELDS_MESSAGE)

    duplicate = find_duplicate_transaction(db, acting_user_id, record, exclude_id=transaction["id"])
    if duplicate is not None:
        raise DuplicateTransactionError(duplicate_id=duplicate["id"])

    try:
        db.execute(
            """
            UPDATE transactions
            SET date = ?, vendor = ?, amount = ?, category = ?, transaction_type = ?, updated_at = ?
            WHERE id = ? AND user_id = ?
            """,
            (
                record["date"],
                record["vendor"],
                record["amount"],
                record["category"],
                record["transaction_type"],
                utc_timestamp(),
                transaction["id"],
                acting_user_id,
            ),
        )
        db.commit()
    except INTEGRITY_ERRORS:
        db.rollback()
        raise DuplicateTransactionError()

    return row_to_dict(get_transaction(db, transaction["id"]))


def delete_transaction(db, acting_user_id, transaction_id):
    transaction = require_owner(
        get_transaction(db, transaction_id),
        acting_user_id,
        not_found="Transaction not found",
        forbidden="Unauthorized: You can only delete your own transactions",
    )
    # shared_transactions rows go with it (ON DELETE CASCADE)
    db.execute("DELETE FROM transactions WHERE id = ? AND user_id = ?", (transaction["id"], acting_user_id))
    db.commit()


def _transaction_filter_sql(filters, alias):
    clauses = []
    params = []
    for field in TRANSACTION_FILTER_FIELDS:
        value = filters.get(field)
        if value:
            clauses.append(f"{alias}.{field} = ?")
            params.append(value)

    amount = filters.get("amount")
    if amount not in (None, ""):
        try:
            amount_value = float(amount)
        except (TypeError, ValueError):
            raise ValidationError("amount must be a number")
        clauses.append(f"{alias}.amount = ?")
        params.append(amount_value)

    start_date = filters.get("start_date")
    end_date = filters.get("end_date")
    if start_date:
        clauses.append(f"{alias}.date >= ?")
        params.append(start_date)
    if end_date:
        clauses.append(f"{alias}.date <= ?")
        params.append(end_date)

    return "".join(f" AND {clause}" for clause in clauses), params


def query_transactions(db, acting_user_id, filters=None):
    """Return the caller's transactions, optionally followed by ones shared with them.

    Every row carries ``is_shared`` and ``shared_by``; ``shared_by`` is
    ``None`` for the caller's own rows.
    """
    filters = filters or {}
    filter_sql, filter_params = _transaction_filter_sql(filters, "t")

    own_rows = db.execute(
        f"""
        SELECT {_select_columns("t")}
        FROM transactions t
        WHERE t.user_id = ?{filter_sql}
        ORDER BY t.date DESC, t.id DESC
        """,
        [acting_user_id, *filter_params],
    ).fetchall()
    transactions = []
    for row in own_rows:
        item = row_to_dict(row)
        item["is_shared"] = False
        item["shared_by"] = None
        transactions.append(item)

    if not filters.get("include_shared"):
        return transactions

    shared_rows = db.execute(
        f"""
        SELECT {_select_columns("t")},
               u.id AS shared_by_id, u.name AS shared_by_name, u.email AS shared_by_email
        FROM shared_transactions st
        JOIN transactions t ON t.id = st.transaction_id
        JOIN users u ON u.id = st.shared_by_id
        WHERE st.shared_with_id = ?{filter_sql}
        ORDER BY t.date DESC, t.id DESC
        """,
        [acting_user_id, *filter_params],
    ).fetchall()
    for row in shared_rows:
        item = row_to_dict(row)
        shared_by_id = item.pop("shared_by_id")
        shared_by_name = item.pop("shared_by_name")
        shared_by_email = item.pop("shared_by_email")
        item["is_shared"] = True
        item["shared_by"] = {"id": shared_by_id, "name": shared_by_name or shared_by_email}
        transactions.append(item)
    return transactions


def calculate_category_totals(transactions):
    grand_total = sum(item["amount"] for item in transactions)
    totals = {}
    for item in transactions:
        totals[item["category"]] = totals.get(item["category"], 0.0) + item["amount"]
    return [
        {
            "category": category,
            "total": round(total, 2),
            "percentage": round(total / grand_total * 100, 2) if grand_total else 0.0,
        }
        for category, total in totals.items()
    ]


def calculate_monthly_spending(transactions):
    monthly = {}
    for item in transactions:
        month = item["date"][:7]
        monthly[month] = monthly.get(month, 0.0) + item["amount"]
    return [{"month": month, "total": round(total, 2)} for month, total in sorted(monthly.items())]


def spending_summary(db, acting_user_id, filters=None):
    filters = dict(filters or {})
    filters["include_shared"] = False
    transactions = query_transactions(db, acting_user_id, filters)
    return {
        "category_totals": calculate_category_totals(transactions),
        "monthly_spending": calculate_monthly_spending(transactions),
    }


def _optional_text(value):
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def get_bank_account(db, account_id):
    return db.execute("SELECT * FROM bank_accounts WHERE id = ?", (account_id,)).fetchone()


def _bank_account_payload(db, account_id):
    row = db.execute(
        """
        SELECT ba.*,
               (SELECT ab.balance FROM account_balances ab
                WHERE ab.account_id = ba.id
                ORDER BY ab.timestamp DESC, ab.id DESC LIMIT 1) AS latest_balance,
               (SELECT ab.timestamp FROM account_balances ab
                WHERE ab.account_id = ba.id
                ORDER BY ab.timestamp DESC, ab.id DESC LIMIT 1) AS latest_balance_at
        FROM bank_accounts ba
        WHERE ba.id = ?
        """,
        (account_id,),
    ).fetchone()
    return row_to_dict(row)


def create_bank_account(db, acting_user_id, data):
    if not isinstance(data, dict):
        raise ValidationError("Bank account must be a JSON object")
    values = {field: _optional_text(data.get(field)) for field in BANK_ACCOUNT_FIELDS}
    if not values["name"]:
        raise ValidationError("Account name is required")

    now = utc_timestamp()
    db.execute(
        """
        INSERT INTO bank_accounts (
            user_id, name, account_type, bank_name, account_number, routing_number, notes, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (acting_user_id, *(values[field] for field in BANK_ACCOUNT_FIELDS), now, now),
    )
    account_id = db.last_insert_id()
    db.commit()
    return _bank_account_payload(db, account_id)


def list_bank_accounts(db, acting_user_id, account_type=None):
    sql = "SELECT id FROM bank_accounts WHERE user_id = ?"
    params = [acting_user_id]
    if account_type:
        sql += " AND account_type = ?"
        params.append(account_type)
    sql += " ORDER BY created_at DESC, id DESC"
    return [_bank_account_payload(db, row["id"]) for row in db.execute(sql, params).fetchall()]


def update_bank_account(db, acting_user_id, account_id, changes):
    if not isinstance(changes, dict):
        raise ValidationError("Bank account must be a JSON object")
    account = require_owner(
        get_bank_account(db, account_id),
        acting_user_id,
        not_found="Account not found",
        forbidden="Unauthorized or account not found",
    )
    updates = {field: _optional_text(changes[field]) for field in BANK_ACCOUNT_FIELDS if field in changes}
    if "name" in updates and not updates["name"]:
        raise ValidationError("Account name is required")

    if updates:
        set_sql = ", ".join(f"{field} = ?" for field in updates)
        db.execute(
            f"UPDATE bank_accounts SET {set_sql}, updated_at = ? WHERE id = ?",
            [*updates.values(), utc_timestamp(), account["id"]],
        )
        db.commit()
    return _bank_account_payload(db, account["id"])


def delete_bank_account(db, acting_user_id, account_id):
    account = require_owner(
        get_bank_account(db, account_id),
        acting_user_id,
        not_found="Account not found",
        forbidden="Unauthorized or account not found",
    )
    # account_balances rows go with it (ON DELETE CASCADE)
    db.execute("DELETE FROM bank_accounts WHERE id = ?", (account["id"],))
    db.commit()


def _parse_balance(value):
    if value is None or value == "" or isinstance(value, bool):
        raise ValidationError("balance must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError("balance must be a number")


def _parse_timestamp(value):
    if value is None or value == "":
        return utc_timestamp()
    text = str(value).strip()
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        raise ValidationError("timestamp must be an ISO 8601 date or datetime")
    # stored as UTC so ORDER BY timestamp is chronological
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc).isoformat(timespec="seconds")


def _owned_account(db, acting_user_id, raw_account_id):
    account_id = coerce_id(raw_account_id)
    if account_id is None:
        raise ValidationError("account_id is required")
    return require_owner(
        get_bank_account(db, account_id),
        acting_user_id,
        not_found="Account not found",
        forbidden="Account not found or unauthorized",
    )


def get_account_balance(db, balance_id):
    return db.execute("SELECT * FROM account_balances WHERE id = ?", (balance_id,)).fetchone()


def create_account_balance(db, acting_user_id, data):
    if not isinstance(data, dict):
        raise ValidationError("Account balance must be a JSON object")
    account = _owned_account(db, acting_user_id, data.get("account_id"))
    balance = _parse_balance(data.get("balance"))
    timestamp = _parse_timestamp(data.get("timestamp"))

    db.execute(
        "INSERT INTO account_balances (account_id, user_id, balance, timestamp) VALUES (?, ?, ?, ?)",
        (account["id"], acting_user_id, balance, timestamp),
    )
    balance_id = db.last_insert_id()
    db.commit()
    return row_to_dict(get_account_balance(db, balance_id))


def list_account_balances(db, acting_user_id, account_id=None):
    sql = "SELECT * FROM account_balances WHERE user_id = ?"
    params = [acting_user_id]
    if account_id not in (None, ""):
        parsed_id = coerce_id(account_id)
        if parsed_id is None:
            raise ValidationError("account_id must be an integer")
        sql += " AND account_id = ?"
        params.append(parsed_id)
    sql += " ORDER BY timestamp DESC, id DESC"
    return [row_to_dict(row) for row in db.execute(sql, params).fetchall()]


def update_account_balance(db, acting_user_id, balance_id, changes):
    if not isinstance(changes, dict):
        raise ValidationError("Account balance must be a JSON object")
    existing = require_owner(
        get_account_balance(db, balance_id),
        acting_user_id,
        not_found="Balance not found",
        forbidden="Unauthorized or balance not found",
    )

    account_id = existing["account_id"]
    if "account_id" in changes:
        account_id = _owned_account(db, acting_user_id, changes["account_id"])["id"]
    balance = _parse_balance(changes["balance"]) if "balance" in changes else existing["balance"]
    timestamp = _parse_timestamp(changes["timestamp"]) if "timestamp" in changes else existing["timestamp"]

    db.execute(
        "UPDATE account_balances SET account_id = ?, balance = ?, timestamp = ? WHERE id = ?",
        (account_id, balance, timestamp, existing["id"]),
    )
    db.commit()
    return row_to_dict(get_account_balance(db, existing["id"]))


def delete_account_balance(db, acting_user_id, balance_id):
    existing = require_owner(
        get_account_balance(db, balance_id),
        acting_user_id,
        not_found="Balance not found",
        forbidden="Unauthorized or balance not found",
    )
    db.execute("DELETE FROM account_balances WHERE id = ?", (existing["id"],))
    db.commit()
