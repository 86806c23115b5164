# init_db.py
import argparse

from snapmatch.config import settings
from snapmatch.db import Base, make_engine, make_session_factory
from snapmatch.services.ownership import migrate_legacy_owners


def init(migrate_owners: bool = False):
    engine = make_engine(settings.DATABASE_URL)
    print("Creating tables in the database...")
    Base.metadata.create_all(bind=engine)
    print("✅ Tables created!")
    if migrate_owners:
        touched = migrate_legacy_owners(make_session_factory(engine))
        print(f"✅ Backfilled owner fields on {touched} events.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument(
        "--migrate-owners",
        action="store_true",
        help="copy the owner of old events into owner_id and every legacy owner field",
    )
    args = parser.parse_args()
    init(args.migrate_owners)
