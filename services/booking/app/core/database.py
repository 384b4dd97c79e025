from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from shared import load_service_config

_config = load_service_config("booking")

engine = create_engine(
    _config.database.url,
    future=True,
    pool_pre_ping=True,
)
# Objects stay readable after commit: notifications are built from them once the transaction is closed.
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
Base = declarative_base()
