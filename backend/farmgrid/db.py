from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from pathlib import Path

from farmgrid.config import settings
from farmgrid.models.base import Base

# 1) DATABASE_URL が指定されていれば優先（例: postgresql+psycopg://...）
# 2) それ以外は SQLite を使用
if settings.DATABASE_URL:
    SQLALCHEMY_DATABASE_URL = settings.DATABASE_URL
    _is_sqlite = SQLALCHEMY_DATABASE_URL.startswith("sqlite")
else:
    _container_data = Path("/app/data")
    if _container_data.exists():
        db_path = _container_data / "farmgrid.db"
    else:
        # backend/farmgrid/db.py → ../.. = <repo root>
        repo_root = Path(__file__).resolve().parents[2]
        db_path = repo_root / "data" / "farmgrid.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    SQLALCHEMY_DATABASE_URL = f"sqlite:///{db_path}"
    _is_sqlite = True

_connect_args = {"check_same_thread": False} if _is_sqlite else {}

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args=_connect_args,
    pool_pre_ping=not _is_sqlite,
)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def import_models() -> None:
    # 各モデルモジュールを明示 import してメタデータ登録を確実化
    import farmgrid.models.farm  # noqa: F401
    import farmgrid.models.grid_block  # noqa: F401
    import farmgrid.models.report  # noqa: F401
    import farmgrid.models.sampling_session  # noqa: F401
    import farmgrid.models.session_block  # noqa: F401
    import farmgrid.models.upload  # noqa: F401
    import farmgrid.models.image  # noqa: F401
    import farmgrid.models.audit_log  # noqa: F401


def init_db(bind=None) -> None:
    import_models()
    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db: Session = SessionLocal()
    try:
        yield db
    finally:
        db.close()
