from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from booking_errors import TransientError

Base = declarative_base()


class Database:
    """
    Engine + session factory. Built once per process and handed to the
    components that need storage.
    """

    def __init__(self, url: str, echo: bool = False):
        kwargs = {"echo": echo, "future": True}
        if url.startswith("sqlite"):
            # For SQLite, check_same_thread=False is required for multithreaded web servers
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url or url == "sqlite://":
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
        self.engine = create_engine(url, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False)

    def init_db(self):
        # Import models here so they get registered with Base before creating tables
        import persistence.models  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self):
        """
        Yield a session; roll back on any error and translate connection
        failures into TransientError. The caller commits.
        """
        db = self.SessionLocal()
        try:
            yield db
        except OperationalError as e:
            db.rollback()
            raise TransientError(f"Database unavailable: {e.orig}") from e
        except DBAPIError as e:
            db.rollback()
            if e.connection_invalidated:
                raise TransientError("Database connection lost") from e
            raise
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self):
        self.engine.dispose()
