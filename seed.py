"""Seed the shared savings-instrument table.

Run once after `alembic upgrade head`:

    python seed.py
"""

import logging

from database import session_scope
from services import SavingsInstrumentService

logger = logging.getLogger(__name__)


def seed_savings_instruments() -> int:
    with session_scope() as session:
        return SavingsInstrumentService(session).ensure_defaults()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    created = seed_savings_instruments()
    logger.info(f"seed_completed: savings_instruments={created}")


if __name__ == "__main__":
    main()
