"""Invitations between users and sharing of transaction history.

Accepting an invitation copies every transaction the sender owns into
``shared_transactions`` for the recipient. The status change and that copy
are two separate commits: the backfill is best-effort and a failure there
never undoes the acceptance. ``backfill_accepted_invitations`` re-runs the
copy for every accepted invitation.
"""

import logging

from .db import row_to_dict, utc_timestamp
from .errors import EntityNotFound, InvalidTransitionError, PermissionDenied, ValidationError
from .ownership import coerce_id, require_owner

logger = logging.getLogger(__name__)

RESPONSE_STATUSES = ("accepted", "rejected")
INVITATION_LIST_KINDS = ("sent", "received", "all")


def normalize_email(value):
    return (value or "").strip().lower() if isinstance(value, str) else ""


def user_summary(row):
    if row is None:
        return None
    return {"id": row["id"], "name": row["name"], "email": row["email"]}


def get_user_summary(db, user_id):
    if user_id is None:
        return None
    row = db.execute("SELECT id, name, email FROM users WHERE id = ?", (user_id,)).fetchone()
    return user_summary(row)


def has_accepted_invitation(db, user_id, other_user_id):
    row = db.execute(
        """
        SELECT 1
        FROM invitations
        WHERE status = 'accepted'
          AND ((sender_id = ? AND recipient_id = ?) OR (sender_id = ? AND recipient_id = ?))
        LIMIT 1
        """,
        (user_id, other_user_id, other_user_id, user_id),
    ).fetchone()
    return row is not None


def invitation_payload(db, invitation):
    payload = row_to_dict(invitation)
    payload["sender"] = get_user_summary(db, invitation["sender_id"])
    payload["recipient"] = get_user_summary(db, invitation["recipient_id"])
    return payload


def _get_invitation_row(db, invitation_id):
    invitation = db.execute("SELECT * FROM invitations WHERE id = ?", (invitation_id,)).fetchone()
    if invitation is None:
        raise EntityNotFound("Invitation not found")
    return invitation


def create_invitation(db, acting_user, email):
    email = normalize_email(email)
    if not email:
        raise ValidationError("Email is required")
    if email == normalize_email(acting_user["email"]):
        raise ValidationError("You cannot invite yourself")

    existing = db.execute(
        "SELECT id FROM invitations WHERE sender_id = ? AND email = ? AND status = 'pending'",
        (acting_user["id"], email),
    ).fetchone()
    if existing is not None:
        raise ValidationError("An invitation has already been sent to this email")

    recipient = db.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
    now = utc_timestamp()
    db.execute(
        """
        INSERT INTO invitations (email, status, sender_id, recipient_id, created_at, updated_at)
        VALUES (?, 'pending', ?, ?, ?, ?)
        """,
        (email, acting_user["id"], recipient["id"] if recipient else None, now, now),
    )
    invitation_id = db.last_insert_id()
    db.commit()
    logger.info("Invitation %s sent by user_id=%s", invitation_id, acting_user["id"])
    return invitation_payload(db, _get_invitation_row(db, invitation_id))


def link_pending_invitations(db, user_id, email):
    """Attach invitations addressed to ``email`` to a newly registered user."""
    db.execute(
        "UPDATE invitations SET recipient_id = ? WHERE email = ? AND recipient_id IS NULL",
        (user_id, normalize_email(email)),
    )


def list_invitations(db, acting_user, kind="all"):
    if kind not in INVITATION_LIST_KINDS:
        raise ValidationError("type must be one of: sent, received, all")

    user_id = acting_user["id"]
    email = normalize_email(acting_user["email"])
    if kind == "sent":
        where_sql = "sender_id = ?"
        params = [user_id]
    elif kind == "received":
        where_sql = "recipient_id = ? OR (email = ? AND recipient_id IS NULL)"
        params = [user_id, email]
    else:
        where_sql = "sender_id = ? OR recipient_id = ? OR (email = ? AND recipient_id IS NULL)"
        params = [user_id, user_id, email]

    rows = db.execute(
        f"SELECT * FROM invitations WHERE {where_sql} ORDER BY created_at DESC, id DESC",
        params,
    ).fetchall()
    return [invitation_payload(db, row) for row in rows]


def get_invitation(db, invitation_id, acting_user):
    invitation = _get_invitation_row(db, invitation_id)
    if (
        invitation["sender_id"] != acting_user["id"]
        and invitation["recipient_id"] != acting_user["id"]
        and invitation["email"] != normalize_email(acting_user["email"])
    ):
        raise PermissionDenied("You are not authorized to view this invitation")
    return invitation_payload(db, invitation)


def backfill_shared_transactions(db, sender_id, recipient_id):
    cursor = db.execute(
        """
        INSERT INTO shared_transactions (transaction_id, shared_by_id, shared_with_id)
        SELECT id, ?, ? FROM transactions WHERE user_id = ?
        ON CONFLICT DO NOTHING
        """,
        (sender_id, recipient_id, sender_id),
    )
    created = max(cursor.rowcount, 0)
    db.commit()
    logger.info(
        "Share backfill sender_id=%s recipient_id=%s created=%s",
        sender_id,
        recipient_id,
        created,
    )
    return created


def backfill_accepted_invitations(db):
    invitations = db.execute(
        """
        SELECT sender_id, recipient_id
        FROM invitations
        WHERE status = 'accepted' AND recipient_id IS NOT NULL
        ORDER BY id
        """
    ).fetchall()
    return sum(
        backfill_shared_transactions(db, invitation["sender_id"], invitation["recipient_id"])
        for invitation in invitations
    )


def respond_to_invitation(db, invitation_id, acting_user, status):
    if status not in RESPONSE_STATUSES:
        raise ValidationError("Invalid status")

    invitation = _get_invitation_row(db, invitation_id)
    user_id = acting_user["id"]
    if invitation["recipient_id"] is not None and invitation["recipient_id"] != user_id:
        raise PermissionDenied("You are not authorized to respond to this invitation")
    if invitation["recipient_id"] is None and invitation["email"] != normalize_email(acting_user["email"]):
        raise PermissionDenied("You are not authorized to respond to this invitation")

    current_status = invitation["status"]
    # re-accepting is allowed so a failed backfill can be retried
    if current_status != "pending" and not (current_status == "accepted" and status == "accepted"):
        raise InvalidTransitionError(f"Invitation has already been {current_status}")

    db.execute(
        "UPDATE invitations SET status = ?, recipient_id = ?, updated_at = ? WHERE id = ?",
        (status, user_id, utc_timestamp(), invitation_id),
    )
    db.commit()

    if status == "accepted":
        try:
            backfill_shared_transactions(db, invitation["sender_id"], user_id)
        except Exception:
            db.rollback()
            logger.exception(
                "Share backfill failed for invitation_id=%s sender_id=%s recipient_id=%s",
                invitation_id,
                invitation["sender_id"],
                user_id,
            )

    return invitation_payload(db, _get_invitation_row(db, invitation_id))


def accepted_connections(db, acting_user_id):
    invitations = db.execute(
        """
        SELECT *
        FROM invitations
        WHERE status = 'accepted' AND (sender_id = ? OR recipient_id = ?)
        ORDER BY id
        """,
        (acting_user_id, acting_user_id),
    ).fetchall()

    connections = []
    seen = set()
    for invitation in invitations:
        if invitation["sender_id"] == acting_user_id:
            other = get_user_summary(db, invitation["recipient_id"])
        else:
            other = get_user_summary(db, invitation["sender_id"])
        if other is None or other["id"] in seen:
            continue
        seen.add(other["id"])
        connections.append(
            {
                "id": other["id"],
                "name": other["name"] or "User",
                "email": other["email"] or invitation["email"],
            }
        )
    return connections


def _get_transaction_row(db, transaction_id):
    return db.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,)).fetchone()


def share_transaction(db, transaction_id, acting_user, user_ids):
    """Share one owned transaction with every requested user that has consented.

    A recipient counts as consenting when an accepted invitation exists
    between them and the owner, in either direction. Unknown users and users
    without consent are left out of ``shared_with``.
    """
    if not isinstance(user_ids, list) or not user_ids:
        raise ValidationError("Invalid request data")

    transaction = require_owner(
        _get_transaction_row(db, transaction_id),
        acting_user["id"],
        not_found="Transaction not found",
        forbidden="Not authorized to share this transaction",
    )

    shared_users = []
    for raw_id in user_ids:
        user_id = coerce_id(raw_id)
        if user_id is None:
            continue
        user = get_user_summary(db, user_id)
        if user is None:
            logger.info("Share target user_id=%s not found", user_id)
            continue
        if not has_accepted_invitation(db, acting_user["id"], user_id):
            logger.warning(
                "No accepted invitation between user_id=%s and user_id=%s; transaction_id=%s not shared",
                acting_user["id"],
                user_id,
                transaction["id"],
            )
            continue
        db.execute(
            """
            INSERT INTO shared_transactions (transaction_id, shared_by_id, shared_with_id)
            VALUES (?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (transaction["id"], acting_user["id"], user_id),
        )
        if user not in shared_users:
            shared_users.append(user)
    db.commit()

    return {
        "id": transaction["id"],
        "is_shared": bool(shared_users),
        "shared_with": shared_users,
        "shared_by": {"id": acting_user["id"], "name": acting_user["name"] or acting_user["email"]},
    }


def shared_with_users(db, transaction_id, acting_user_id):
    require_owner(
        _get_transaction_row(db, transaction_id),
        acting_user_id,
        not_found="Transaction not found",
        forbidden="You don't have permission to view this information",
    )
    rows = db.execute(
        """
        SELECT u.id, u.name, u.email
        FROM shared_transactions st
        JOIN users u ON u.id = st.shared_with_id
        WHERE st.transaction_id = ? AND st.shared_by_id = ?
        ORDER BY st.id
        """,
        (transaction_id, acting_user_id),
    ).fetchall()
    return [user_summary(row) for row in rows]


def shared_with_users_batch(db, acting_user_id, transaction_ids):
    if not isinstance(transaction_ids, list):
        transaction_ids = []
    ids = list(dict.fromkeys(i for i in (coerce_id(raw) for raw in transaction_ids) if i is not None))
    if not ids:
        raise ValidationError("No transaction IDs provided")

    placeholders = ", ".join(["?"] * len(ids))
    owned_ids = {
        row["id"]
        for row in db.execute(
            f"SELECT id FROM transactions WHERE user_id = ? AND id IN ({placeholders})",
            [acting_user_id, *ids],
        ).fetchall()
    }
    foreign_ids = [i for i in ids if i not in owned_ids]
    if foreign_ids:
        logger.warning(
            "user_id=%s requested share lists for transactions they don't own: %s",
            acting_user_id,
            foreign_ids,
        )

    result = {}
    if not owned_ids:
        return result

    owned = sorted(owned_ids)
    owned_placeholders = ", ".join(["?"] * len(owned))
    rows = db.execute(
        f"""
        SELECT st.transaction_id AS transaction_id, u.id AS id, u.name AS name, u.email AS email
        FROM shared_transactions st
        JOIN users u ON u.id = st.shared_with_id
        WHERE st.shared_by_id = ? AND st.transaction_id IN ({owned_placeholders})
        ORDER BY st.id
        """,
        [acting_user_id, *owned],
    ).fetchall()
    for row in rows:
        result.setdefault(row["transaction_id"], []).append(user_summary(row))
    return result
