from app.db.engine import get_engine
from app.db.schema import metadata, seed_default_accounts

def main():
    engine = get_engine()
    metadata.drop_all(engine)
    metadata.create_all(engine)
    with engine.begin() as conn:
        seed_default_accounts(conn)
    print("DB schema created and default accounts seeded.")

if __name__ == "__main__":
    main()
