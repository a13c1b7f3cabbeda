from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import GEAR_SETTLEMENT_DB_URL


def build_engine(db_url: str):
    connect_args = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(
        db_url,
        pool_pre_ping=True,
        connect_args=connect_args,
        future=True,
    )


def build_session_factory(engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


engine_settlement = build_engine(GEAR_SETTLEMENT_DB_URL)

SessionLocalSettlement = build_session_factory(engine_settlement)
