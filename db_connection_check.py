import argparse

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from isp_crm import models  # noqa: F401  registers tables on Base.metadata
from isp_crm.config import settings
from isp_crm.db import Base
from isp_crm.logging_config import get_logger, setup_logging
from isp_crm.models import User
from isp_crm.security import hash_password

logger = get_logger("isp_crm.db_connection_check")


def create_admin(engine, name: str, email: str, password: str) -> None:
    session = sessionmaker(bind=engine)()
    try:
        if session.query(User.id).filter(User.email == email).first():
            logger.info("Admin %s already exists", email)
            return
        session.add(User(name=name, email=email, role="admin", password_hash=hash_password(password)))
        session.commit()
        logger.info("Created admin user %s", email)
    finally:
        session.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Check the ISP CRM database connection.")
    parser.add_argument("--create-tables", action="store_true", help="create any missing tables")
    parser.add_argument("--create-admin", metavar="EMAIL", help="create an admin user with this email")
    parser.add_argument("--admin-password", default="admin123", help="password for --create-admin")
    parser.add_argument("--admin-name", default="Administrator")
    args = parser.parse_args()

    setup_logging()
    database_url = settings.database_url
    logger.info("DATABASE_URL=%s", database_url)
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("DB connection OK")
        if args.create_tables:
            Base.metadata.create_all(bind=engine)
            logger.info("Tables created")
        if args.create_admin:
            create_admin(engine, args.admin_name, args.create_admin, args.admin_password)
    except SQLAlchemyError as exc:
        logger.error("DB connection FAILED: %s", exc)


if __name__ == "__main__":
    main()
