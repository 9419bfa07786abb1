from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from config import settings


_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    echo=False,
)


if _is_sqlite:
    # Enable WAL mode for better concurrent read performance
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_startup_migrations(bind=None) -> None:
    """Apply lightweight schema fixes for databases created by older builds."""
    bind = bind or engine
    inspector = inspect(bind)

    def _table_columns(table_name: str) -> set[str]:
        try:
            return {col["name"] for col in inspector.get_columns(table_name)}
        except Exception:
            return set()

    user_columns = _table_columns("users")
    questionnaire_columns = _table_columns("questionnaires")
    if not user_columns:
        # Tables may not exist yet on first boot.
        return

    alter_statements: list[str] = []
    if "deleted_at" not in user_columns:
        alter_statements.append("ALTER TABLE users ADD COLUMN deleted_at DATETIME")
    if "token_version" not in user_columns:
        alter_statements.append("ALTER TABLE users ADD COLUMN token_version INTEGER DEFAULT 0")
    if questionnaire_columns and "deleted_at" not in questionnaire_columns:
        alter_statements.append("ALTER TABLE questionnaires ADD COLUMN deleted_at DATETIME")

    with bind.begin() as conn:
        for stmt in alter_statements:
            conn.execute(text(stmt))

        conn.execute(text("UPDATE users SET token_version = COALESCE(token_version, 0)"))
        conn.execute(text("CREATE INDEX IF NOT EXISTS idx_users_subscription_plan ON users (subscription_plan)"))
        conn.execute(text(
            """
            CREATE INDEX IF NOT EXISTS idx_subscription_requests_user_status
            ON subscription_requests (user_id, status)
            """
        ))
        conn.execute(text(
            """
            CREATE INDEX IF NOT EXISTS idx_subscription_requests_status_created
            ON subscription_requests (status, created_at)
            """
        ))
        conn.execute(text(
            """
            CREATE INDEX IF NOT EXISTS idx_responses_questionnaire_date
            ON responses (questionnaire_id, response_date)
            """
        ))
        conn.execute(text(
            """
            CREATE INDEX IF NOT EXISTS idx_answers_question
            ON answers (question_id)
            """
        ))
        conn.execute(text(
            """
            CREATE INDEX IF NOT EXISTS idx_admin_activities_admin_created
            ON admin_activities (admin_user_id, created_at)
            """
        ))
        conn.execute(text(
            """
            CREATE INDEX IF NOT EXISTS idx_rate_limit_audit_endpoint
            ON rate_limit_audit_events (endpoint, created_at)
            """
        ))
