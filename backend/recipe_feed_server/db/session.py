from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from recipe_feed_server.core.config import settings


def build_engine(database_url: str):
    kwargs: dict = {'pool_pre_ping': True, 'future': True}
    if database_url.startswith('sqlite'):
        # Store calls run in worker threads via asyncio.to_thread.
        kwargs['connect_args'] = {'check_same_thread': False}
    return create_engine(database_url, **kwargs)


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
    pass

def init_db(bind=None) -> None:
    # Import models so they register on Base.metadata before create_all.
    from recipe_feed_server.models import engagement  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
