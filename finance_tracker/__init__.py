import os
from functools import wraps

import click
from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

from .db import DATABASE_ERRORS, INTEGRITY_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .demo import seed_demo_data
from .errors import AuthenticationRequired, DatabaseInitError, ValidationError, error_payload
from .importer import decode_csv_bytes, import_transactions, prepare_csv_import
from .ledger import (
    create_account_balance,
    create_bank_account,
    create_transaction,
    delete_account_balance,
    delete_bank_account,
    delete_transaction,
    list_account_balances,
    list_bank_accounts,
    query_transactions,
    spending_summary,
    update_account_balance,
    update_bank_account,
    update_transaction,
)
from .sharing import (
    accepted_connections,
    backfill_accepted_invitations,
    create_invitation,
    get_invitation,
    link_pending_invitations,
    list_invitations,
    normalize_email,
    respond_to_invitation,
    share_transaction,
    shared_with_users,
    shared_with_users_batch,
    user_summary,
)

API_PREFIX = "/api/v1"
TRUE_VALUES = {"1", "true", "yes", "on"}
TRANSACTION_QUERY_ARGS = ("category", "vendor", "transaction_type", "amount", "start_date", "end_date")


def transaction_filters_from_args(args):
    filters = {key: args.get(key, "").strip() for key in TRANSACTION_QUERY_ARGS}
    filters["include_shared"] = args.get("include_shared", "").strip().lower() in TRUE_VALUES
    return filters


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "finance_tracker.sqlite"),
        MAX_CONTENT_LENGTH=5 * 1024 * 1024,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    def database_config():
        return parse_database_config(app.config["DATABASE"])

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(database_config())
            except DATABASE_ERRORS + (OSError, RuntimeError) as exc:
                message = f"Unable to open database {database_config()['database_name']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        config = database_config()
        try:
            apply_migrations(config)
            app.config["DB_INIT_ERROR"] = None
        except DATABASE_ERRORS + (OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {config['database_name']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        click.echo("Initialized the database.")

    @app.cli.command("backfill-shares")
    def backfill_shares_command():
        created = backfill_accepted_invitations(get_db())
        click.echo(f"Backfilled {created} shared transactions.")

    @app.cli.command("seed-demo")
    def seed_demo_command():
        result = seed_demo_data(get_db())
        click.echo(
            f"Demo data ready: {result['created']} created, {result['skipped']} skipped. "
            "Login with test@example.com / password123"
        )

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(database_config()))
        except DATABASE_ERRORS as exc:
            app.logger.error("Database health check failed: %s", exc)
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify(error_payload(exc)), exc.code

    @app.before_request
    def reject_when_db_failed():
        if app.config.get("DB_INIT_ERROR"):
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500

    def api_login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            user_id = session.get("user_id")
            user = None
            if user_id is not None:
                user = get_db().execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            if user is None:
                raise AuthenticationRequired()
            return view(user, **kwargs)

        return wrapped_view

    def json_body():
        return request.get_json(silent=True)

    def json_object():
        data = json_body()
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")
        return data

    @app.post(f"{API_PREFIX}/auth/register")
    def register():
        data = json_object()
        name = str(data.get("name") or "").strip() or None
        email = normalize_email(data.get("email"))
        password = data.get("password")
        if not email:
            raise ValidationError("Email is required")
        if not isinstance(password, str) or not password:
            raise ValidationError("Password is required")

        db = get_db()
        try:
            db.execute(
                "INSERT INTO users (name, email, password_hash) VALUES (?, ?, ?)",
                (name, email, generate_password_hash(password)),
            )
            user_id = db.last_insert_id()
            link_pending_invitations(db, user_id, email)
            db.commit()
        except INTEGRITY_ERRORS:
            db.rollback()
            raise ValidationError("User already exists")

        app.logger.info("Registered user_id=%s", user_id)
        user = db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return jsonify(user_summary(user)), 201

    @app.post(f"{API_PREFIX}/auth/login")
    def login():
        data = json_object()
        email = normalize_email(data.get("email"))
        password = data.get("password")
        user = get_db().execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        if user is None or not isinstance(password, str) or not check_password_hash(user["password_hash"], password):
            raise AuthenticationRequired("Incorrect email or password")

        session.clear()
        session["user_id"] = user["id"]
        return jsonify(user_summary(user))

    @app.post(f"{API_PREFIX}/auth/logout")
    def logout():
        session.clear()
        return jsonify({"success": True})

    @app.get(f"{API_PREFIX}/auth/me")
    @api_login_required
    def current_user(acting_user):
        return jsonify(user_summary(acting_user))

    @app.post(f"{API_PREFIX}/transactions")
    @api_login_required
    def create_transactions(acting_user):
        data = json_body()
        if isinstance(data, list):
            return jsonify(import_transactions(get_db(), acting_user["id"], data))
        return jsonify(create_transaction(get_db(), acting_user["id"], data)), 201

    @app.post(f"{API_PREFIX}/transactions/import")
    @api_login_required
    def import_csv(acting_user):
        upload = request.files.get("file")
        raw = upload.read() if upload is not None else request.get_data()
        if not raw:
            raise ValidationError("No file uploaded")
        candidates = prepare_csv_import(decode_csv_bytes(raw))
        return jsonify(import_transactions(get_db(), acting_user["id"], candidates))

    @app.get(f"{API_PREFIX}/transactions")
    @api_login_required
    def list_transactions(acting_user):
        filters = transaction_filters_from_args(request.args)
        return jsonify(query_transactions(get_db(), acting_user["id"], filters))

    @app.get(f"{API_PREFIX}/transactions/summary")
    @api_login_required
    def transactions_summary(acting_user):
        filters = transaction_filters_from_args(request.args)
        return jsonify(spending_summary(get_db(), acting_user["id"], filters))

    @app.put(f"{API_PREFIX}/transactions/<int:transaction_id>")
    @api_login_required
    def edit_transaction(acting_user, transaction_id):
        return jsonify(update_transaction(get_db(), acting_user["id"], transaction_id, json_body()))

    @app.delete(f"{API_PREFIX}/transactions/<int:transaction_id>")
    @api_login_required
    def remove_transaction(acting_user, transaction_id):
        delete_transaction(get_db(), acting_user["id"], transaction_id)
        return jsonify({"success": True})

    @app.post(f"{API_PREFIX}/transactions/<int:transaction_id>/share")
    @api_login_required
    def share(acting_user, transaction_id):
        user_ids = json_object().get("user_ids")
        result = share_transaction(get_db(), transaction_id, acting_user, user_ids)
        app.logger.info(
            "transaction_id=%s shared by user_id=%s with %s users",
            transaction_id,
            acting_user["id"],
            len(result["shared_with"]),
        )
        return jsonify(result)

    @app.get(f"{API_PREFIX}/transactions/<int:transaction_id>/shared-with")
    @api_login_required
    def transaction_shared_with(acting_user, transaction_id):
        return jsonify({"users": shared_with_users(get_db(), transaction_id, acting_user["id"])})

    @app.post(f"{API_PREFIX}/transactions/shared-with/batch")
    @api_login_required
    def transactions_shared_with_batch(acting_user):
        transaction_ids = json_object().get("transaction_ids")
        shared = shared_with_users_batch(get_db(), acting_user["id"], transaction_ids)
        # JSON object keys are strings
        return jsonify({"shared_users": {str(key): users for key, users in shared.items()}})

    @app.post(f"{API_PREFIX}/invitations")
    @api_login_required
    def send_invitation(acting_user):
        invitation = create_invitation(get_db(), acting_user, json_object().get("email"))
        return jsonify(invitation), 201

    @app.get(f"{API_PREFIX}/invitations")
    @api_login_required
    def invitations(acting_user):
        kind = request.args.get("type", "all").strip().lower() or "all"
        return jsonify(list_invitations(get_db(), acting_user, kind))

    @app.get(f"{API_PREFIX}/invitations/<int:invitation_id>")
    @api_login_required
    def invitation_detail(acting_user, invitation_id):
        return jsonify(get_invitation(get_db(), invitation_id, acting_user))

    @app.patch(f"{API_PREFIX}/invitations/<int:invitation_id>")
    @api_login_required
    def respond_invitation(acting_user, invitation_id):
        status = json_object().get("status")
        return jsonify(respond_to_invitation(get_db(), invitation_id, acting_user, status))

    @app.get(f"{API_PREFIX}/connections/accepted")
    @api_login_required
    def connections(acting_user):
        return jsonify({"connections": accepted_connections(get_db(), acting_user["id"])})

    @app.post(f"{API_PREFIX}/bank-accounts")
    @api_login_required
    def add_bank_account(acting_user):
        return jsonify(create_bank_account(get_db(), acting_user["id"], json_body())), 201

    @app.get(f"{API_PREFIX}/bank-accounts")
    @api_login_required
    def bank_accounts(acting_user):
        account_type = request.args.get("account_type", "").strip() or None
        return jsonify(list_bank_accounts(get_db(), acting_user["id"], account_type))

    @app.put(f"{API_PREFIX}/bank-accounts/<int:account_id>")
    @api_login_required
    def edit_bank_account(acting_user, account_id):
        return jsonify(update_bank_account(get_db(), acting_user["id"], account_id, json_body()))

    @app.delete(f"{API_PREFIX}/bank-accounts/<int:account_id>")
    @api_login_required
    def remove_bank_account(acting_user, account_id):
        delete_bank_account(get_db(), acting_user["id"], account_id)
        return jsonify({"success": True})

    @app.post(f"{API_PREFIX}/account-balances")
    @api_login_required
    def add_account_balance(acting_user):
        return jsonify(create_account_balance(get_db(), acting_user["id"], json_body())), 201

    @app.get(f"{API_PREFIX}/account-balances")
    @api_login_required
    def account_balances(acting_user):
        account_id = request.args.get("account_id", "").strip() or None
        return jsonify(list_account_balances(get_db(), acting_user["id"], account_id))

    @app.put(f"{API_PREFIX}/account-balances/<int:balance_id>")
    @api_login_required
    def edit_account_balance(acting_user, balance_id):
        return jsonify(update_account_balance(get_db(), acting_user["id"], balance_id, json_body()))

    @app.delete(f"{API_PREFIX}/account-balances/<int:balance_id>")
    @api_login_required
    def remove_account_balance(acting_user, balance_id):
        delete_account_balance(get_db(), acting_user["id"], balance_id)
        return jsonify({"success": True})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    return app
