# create_tables.py
import logging
import sys
import os

# Lets the script run from the repository root without installing the package
sys.path.append(os.getcwd())

from storefront.db.session import Base, engine
from storefront import models  # noqa: F401 - registers every table on Base.metadata

logger = logging.getLogger(__name__)


def main():
    """
    Creates any missing table. Existing tables are left as they are.
    """
    logger.info(f"Creating tables on {engine.url.render_as_string(hide_password=True)}...")
    Base.metadata.create_all(bind=engine)
    logger.info(f"Done. Tables: {', '.join(sorted(Base.metadata.tables))}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, stream=sys.stdout, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    main()
