from finance_tracker import create_app
from finance_tracker.demo import DEMO_PASSWORD, DEMO_USERS, seed_demo_data


def main():
    app = create_app()
    with app.app_context():
        app.init_db()
        result = seed_demo_data(app.get_db())

    print(
        f"Sample data generated ({result['created']} new transactions, {result['shared']} shared). "
        f"Login with {DEMO_USERS[0][1]} / {DEMO_PASSWORD}"
    )


if __name__ == "__main__":
    main()
