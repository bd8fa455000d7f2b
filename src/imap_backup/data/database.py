"""
Database bootstrap for the IMAP Backup account registry.
"""

from pathlib import Path
from typing import Union
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ..utils.logging_setup import get_logger
from .models.accounts import Base

logger = get_logger(__name__)

DATABASE_FILENAME = "imap_backup.db"


def create_session_factory(db_path: Union[Path, str]) -> sessionmaker:
    """
    Set up the database and return a session factory.

    Args:
        db_path: SQLite file path, or ``":memory:"`` for an in-memory database.

    Returns:
        sessionmaker: Database session factory.
    """
    try:
        if str(db_path) == ":memory:":
            url = "sqlite://"
        else:
            db_path = Path(db_path)
            db_path.parent.mkdir(parents=True, exist_ok=True)
            url = f"sqlite:///{db_path}"

        logger.info(f"Using database at: {db_path}")

        engine = create_engine(url, echo=False)
        Base.metadata.create_all(engine)

        Session = sessionmaker(bind=engine)

        logger.info("Database initialized successfully")
        return Session

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise
