from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker
from orderflow.config import settings

connect_args = {}
if settings.database_url.startswith("sqlite"):
    # Sessions are handed across request threads; wait on writer locks instead of failing
    connect_args = {"check_same_thread": False, "timeout": 30}

engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

def ping_db() -> bool:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return True
