from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from exam_engine.core.config import settings

connect_args = {"check_same_thread": False, "timeout": 30} if settings.is_sqlite() else {}
engine = create_engine(settings.DATABASE_URL, future=True, pool_pre_ping=True, echo=settings.DATABASE_ECHO, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_db(bind=None):
    """Create tables if they don't exist. Production deployments run migrations instead."""
    from exam_engine.models.orm import Base
    Base.metadata.create_all(bind=bind or engine)
