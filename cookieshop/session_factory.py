from sqlalchemy.orm import Session

from cookieshop.db import SessionLocal


def session_factory() -> Session:
    return SessionLocal()
