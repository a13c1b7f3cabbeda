from collections.abc import Generator

from .session import SessionLocalSettlement


def get_settlement_db() -> Generator:
    db = SessionLocalSettlement()
    try:
        yield db
    finally:
        db.close()
