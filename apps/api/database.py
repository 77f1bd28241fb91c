from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, declarative_base

from config import DATABASE_URL

# Create engine
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(DATABASE_URL, connect_args={"check_same_thread": False})
else:
    # pool_pre_ping drops connections the server closed while idle
    engine = create_engine(DATABASE_URL, pool_size=10, pool_pre_ping=True)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()

def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def create_tables(bind=None):
    """Create all database tables"""
    import models  # noqa: F401 - registers the mapped classes on Base
    Base.metadata.create_all(bind=bind or engine)

def check_connection(db) -> bool:
    """Run a trivial query to confirm the datastore is reachable"""
    db.execute(text("SELECT 1"))
    return True
