import logging
import os
from typing import Optional

import database
from catalog import Catalog
from config import settings
from database import initialize_database
from loans import LoanService
from users import UserService

logger = logging.getLogger(__name__)


class Library:
    """Entry point to the library: owns the database location and the services.

    ``Library(db_file=...)`` points every service at that sqlite file; the
    CLI, the API and the tests all go through this class.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        # Module-level helpers in database.py read DATABASE_FILE, so set it before initializing.
        database.DATABASE_FILE = db_file or os.environ.get("LIBRARY_DB_FILE") or settings.database_file
        initialize_database()

        self.catalog = Catalog()
        self.loans = LoanService()
        self.users = UserService()
        logger.debug("Library ready (db=%s)", database.DATABASE_FILE)

    @property
    def db_file(self) -> str:
        return database.DATABASE_FILE
