from .base import Base, TimestampMixin, ModelMixin, utcnow, to_naive_utc
from .session import SessionLocal, DBSessionManager, build_engine, engine, get_db, init_db
