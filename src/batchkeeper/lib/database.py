import logging
from contextlib import contextmanager
import os
from pathlib import Path
from urllib.parse import quote_plus, unquote_plus, urlparse, urlunparse

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, event, inspect
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parents[1] / "migrations"


class DatabaseCheckError(Exception):
    """Raised when the database does not match the expected schema."""
    pass


def get_engine(url: str | None = None):
    """Create a SQLAlchemy engine. Defaults to in-memory SQLite when url is None."""
    url = url or "sqlite:///:memory:"
    # Normalize semicolon-style MySQL connection strings or plain paths
    url = normalize_db_url(url)
    # Enable pool_pre_ping to reduce spurious auth/connection issues on some servers
    engine = create_engine(url, echo=False, future=True, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        _configure_sqlite(engine)
    return engine


def _configure_sqlite(engine):
    """Make concurrent SQLite writers queue up instead of failing.

    pysqlite opens transactions lazily and lets two writers deadlock on lock
    upgrade; starting every transaction with BEGIN IMMEDIATE serializes them
    behind the busy timeout.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def normalize_db_url(value: str) -> str:
    """Normalize different DB connection representations into a SQLAlchemy URL.

    - If value already looks like a URL (contains '://'), return as-is.
    - If value is a semicolon-separated MySQL-style string (key=val;...), convert
      to a mysql+pymysql SQLAlchemy URL.
    - If value looks like a filesystem path, convert to sqlite URL.
    """
    if not value:
        return value

    if "://" in value:
        try:
            parsed = urlparse(value)
        except ValueError:
            return value

        # Unquote first to avoid double-encoding when callers already pass
        # percent-encoded credentials (e.g., SqlP%40ss8).
        if parsed.username or parsed.password:
            username = quote_plus(unquote_plus(parsed.username)) if parsed.username else None
            password = quote_plus(unquote_plus(parsed.password)) if parsed.password else None
            hostport = parsed.hostname or ""
            if parsed.port:
                hostport = f"{hostport}:{parsed.port}"
            userinfo = ""
            if username is not None:
                userinfo = username
                if password is not None:
                    userinfo = f"{userinfo}:{password}"
                userinfo = f"{userinfo}@"
            return urlunparse(parsed._replace(netloc=f"{userinfo}{hostport}"))

        return value

    # semicolon-delimited key=value pairs (common Windows MySQL-style DSN)
    if "=" in value and ";" in value:
        kv = {}
        for part in (p.strip() for p in value.split(";")):
            if "=" in part:
                k, v = part.split("=", 1)
                kv[k.strip().lower()] = v.strip()

        host = kv.get("server") or kv.get("host")
        user = kv.get("user") or kv.get("uid") or kv.get("username")
        password = kv.get("password") or kv.get("pwd")
        port = kv.get("port")
        database = kv.get("database") or kv.get("initial catalog") or kv.get("dbname")
        sslmode = kv.get("sslmode") or kv.get("ssl")

        if host and user and database:
            pwd_q = quote_plus(password) if password is not None else ""
            port_part = f":{port}" if port else ""
            url = f"mysql+pymysql://{quote_plus(user)}:{pwd_q}@{host}{port_part}/{database}"
            if sslmode and sslmode.lower() not in ("none", "disable", "disabled", "false"):
                url = url + f"?ssl_mode={quote_plus(sslmode)}"
            return url

    # treat as a filesystem path -> sqlite
    v = value.replace("\\", "/")
    if os.path.exists(v) or "/" in v or v.endswith(".db"):
        return f"sqlite:///{v}"

    return value


def get_sessionmaker(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_db(engine):
    """Create all tables using metadata from the models package.

    Meant for tests and throwaway databases; real deployments go through
    `Database.run_migrations`.
    """
    # Import models lazily to avoid circular imports at package import time
    from batchkeeper.models import Base

    Base.metadata.create_all(engine)


def _alembic_config(engine) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    # '%' must be escaped for ConfigParser interpolation
    cfg.set_main_option("sqlalchemy.url", engine.url.render_as_string(hide_password=False).replace("%", "%%"))
    return cfg


class Database:
    """Engine plus session factory for one database.

    Usage:
        db = Database("sqlite:///batchkeeper.db")
        db.run_migrations()
        with db.session() as session:
            ...
    """

    def __init__(self, url: str | None = None):
        self.engine = get_engine(url)
        self.Session = get_sessionmaker(self.engine)

    def session(self):
        return self.Session()

    def init_db(self):
        init_db(self.engine)

    def run_migrations(self):
        """Upgrade the schema to the latest migration."""
        cfg = _alembic_config(self.engine)
        with self.engine.begin() as conn:
            cfg.attributes["connection"] = conn
            logger.info("Running migrations against %s", self.engine.url.render_as_string(hide_password=True))
            command.upgrade(cfg, "head")

    def current_revision(self) -> str | None:
        with self.engine.connect() as conn:
            return MigrationContext.configure(conn).get_current_revision()

    def head_revision(self) -> str | None:
        return ScriptDirectory.from_config(_alembic_config(self.engine)).get_current_head()

    def check_db(self):
        """Verify the schema after migrations.

        Raises:
            DatabaseCheckError: If the schema revision is not the migration
                head or a model table is missing.
        """
        from batchkeeper.models import Base

        current = self.current_revision()
        head = self.head_revision()
        if current != head:
            raise DatabaseCheckError(f"Database is at revision {current!r}, expected {head!r}")

        existing = set(inspect(self.engine).get_table_names())
        missing = sorted(t for t in Base.metadata.tables if t not in existing)
        if missing:
            raise DatabaseCheckError(f"Missing tables: {', '.join(missing)}")

        logger.info("Database check passed (revision %s)", current)


class InMemoryAdapter(Database):
    """Lightweight in-memory DB adapter for tests.

    Usage:
        adapter = InMemoryAdapter()
        session = adapter.session()
    """

    def __init__(self):
        super().__init__("sqlite:///:memory:")
        self.init_db()


@contextmanager
def session_scope(session_factory, session=None):
    """Yield `session` when the caller already runs a transaction, otherwise
    open a new session and commit on success."""
    if session is not None:
        yield session
        return
    with session_factory() as new_session, new_session.begin():
        yield new_session
