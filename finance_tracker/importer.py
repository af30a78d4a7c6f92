import logging
import re
from datetime import datetime

from .errors import ValidationError

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    "date",
    "vendor",
    "amount",
    "category",
    "transaction_type",
    "account_name",
    "labels",
    "notes",
]
REQUIRED_TRANSACTION_FIELDS = ("date", "vendor", "category", "transaction_type")
CSV_DATE_FORMATS = ["%m/%d/%Y", "%Y-%m-%d"]
TRANSFER_CATEGORY = "transfer"
TRANSFER_TYPES = {"credit", "debit"}
LEADING_NUMBER_RE = re.compile(r"-?(?:\d+\.?\d*|\.\d+)")
# rows per multi-row INSERT; 6 parameters each keeps under SQLite's 999 variable limit
IMPORT_CHUNK_SIZE = 150


def decode_csv_bytes(file_bytes):
    for encoding in ["utf-8-sig", "utf-8", "cp1252", "latin-1"]:
        try:
            return file_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue
    return None


def split_csv_line(line):
    """Split one CSV line on commas that are not inside double quotes.

    Quote characters only toggle the quoted state and are dropped from the
    field value. Each field is whitespace-stripped.
    """
    fields = []
    cell = []
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
            continue
        if char == "," and not in_quotes:
            fields.append("".join(cell).strip())
            cell = []
            continue
        cell.append(char)
    fields.append("".join(cell).strip())
    return fields


def format_csv_date(value):
    cleaned = (value or "").strip()
    if not cleaned:
        return ""
    for fmt in CSV_DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date().isoformat()
        except ValueError:
            continue
    return ""


def is_iso_date(value):
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except (TypeError, ValueError):
        return False
    return True


def clean_amount(value):
    cleaned = re.sub(r"[^\d.\-]", "", value or "")
    match = LEADING_NUMBER_RE.match(cleaned)
    if not match:
        return 0.0
    return float(match.group(0))


def coerce_amount(value):
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    return clean_amount(str(value))


def _text(value):
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    return str(value).strip()


def parse_csv(text):
    """Turn exported CSV text into candidate transaction records.

    The first line is a header and is ignored. Columns are read by position:
    date, vendor, amount, category, transaction type; any further columns
    (account name, labels, notes) are ignored. Missing trailing columns are
    read as empty strings, and such rows are rejected later by the import
    validation instead of here.
    """
    lines = (text or "").strip().split("\n")
    records = []
    for raw_line in lines[1:]:
        line = raw_line.rstrip("\r")
        if not line.strip():
            continue
        fields = split_csv_line(line)
        if len(fields) < len(CSV_COLUMNS):
            fields.extend([""] * (len(CSV_COLUMNS) - len(fields)))
        row = dict(zip(CSV_COLUMNS, fields))
        records.append(
            {
                "date": format_csv_date(row["date"]),
                "vendor": row["vendor"],
                "amount": clean_amount(row["amount"]),
                "category": row["category"],
                "transaction_type": row["transaction_type"],
            }
        )
    return records


def is_transfer(record):
    return _text(record.get("category")).lower() == TRANSFER_CATEGORY


def is_transfer_pair(first, second):
    if first.get("amount") != second.get("amount"):
        return False
    return {first.get("transaction_type"), second.get("transaction_type")} == TRANSFER_TYPES


def filter_duplicate_transfers(records):
    """Drop offsetting transfer pairs from one import batch.

    Pairing is greedy: each unmatched transfer takes the first later
    unmatched transfer with the same amount and the opposite credit/debit
    type. Non-transfers come first in the result, followed by the transfers
    that found no partner, both in input order.
    """
    non_transfers = [record for record in records if not is_transfer(record)]
    transfers = [record for record in records if is_transfer(record)]

    matched = set()
    for i in range(len(transfers)):
        if i in matched:
            continue
        for j in range(i + 1, len(transfers)):
            if j in matched:
                continue
            if is_transfer_pair(transfers[i], transfers[j]):
                matched.update((i, j))
                break

    if matched:
        logger.debug("Removed %s paired transfer rows", len(matched))
    return non_transfers + [record for idx, record in enumerate(transfers) if idx not in matched]


def prepare_csv_import(text):
    return filter_duplicate_transfers(parse_csv(text))


def normalize_transaction(data):
    record = {field: _text(data.get(field)) for field in REQUIRED_TRANSACTION_FIELDS}
    if record["date"] and not is_iso_date(record["date"]):
        record["date"] = ""
    record["amount"] = coerce_amount(data.get("amount"))
    return record


def missing_transaction_fields(record):
    return [field for field in REQUIRED_TRANSACTION_FIELDS if not record.get(field)]


def duplicate_key(record):
    amount = record["amount"] if record["amount"] is not None else 0
    return f"{record['date']}|{record['vendor']}|{float(amount)}|{record['transaction_type']}"


def select_new_transactions(existing_keys, candidates):
    """Split candidates into records to insert and records already stored.

    Candidates missing a required field are dropped and counted nowhere.
    Every accepted key joins the lookup set, so a repeated row later in the
    same batch is skipped as well.
    """
    seen = set(existing_keys)
    accepted = []
    skipped = []
    for candidate in candidates:
        if not isinstance(candidate, dict):
            continue
        record = normalize_transaction(candidate)
        if missing_transaction_fields(record):
            continue
        key = duplicate_key(record)
        if key in seen:
            skipped.append(record)
            continue
        seen.add(key)
        accepted.append(record)
    return accepted, skipped


def import_transactions(db, acting_user_id, candidates):
    existing_rows = db.execute(
        "SELECT date, vendor, amount, transaction_type FROM transactions WHERE user_id = ?",
        (acting_user_id,),
    ).fetchall()
    existing_keys = {
        duplicate_key(
            {
                "date": row["date"],
                "vendor": row["vendor"],
                "amount": row["amount"],
                "transaction_type": row["transaction_type"],
            }
        )
        for row in existing_rows
    }

    accepted, skipped = select_new_transactions(existing_keys, candidates)
    if not accepted and not skipped:
        raise ValidationError(
            "No valid transactions found. Required fields: date, vendor, category, and transaction_type"
        )

    created = 0
    for start in range(0, len(accepted), IMPORT_CHUNK_SIZE):
        chunk = accepted[start:start + IMPORT_CHUNK_SIZE]
        values_sql = ", ".join(["(?, ?, ?, ?, ?, ?)"] * len(chunk))
        params = [
            value
            for record in chunk
            for value in (
                acting_user_id,
                record["date"],
                record["vendor"],
                record["amount"],
                record["category"],
                record["transaction_type"],
            )
        ]
        cursor = db.execute(
            f"""
            INSERT INTO transactions (user_id, date, vendor, amount, category, transaction_type)
            VALUES {values_sql}
            ON CONFLICT DO NOTHING
            """,
            params,
        )
        created += max(cursor.rowcount, 0)
    db.commit()

    logger.info(
        "Imported transactions for user_id=%s created=%s skipped=%s",
        acting_user_id,
        created,
        len(skipped),
    )
    return {"created": created, "skipped": len(skipped), "total": len(accepted) + len(skipped)}
