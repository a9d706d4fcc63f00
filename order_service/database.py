from common.database import Database
from order_service.config import settings
from order_service.models import Base


def build_database(url: str = None) -> Database:
    return Database(url or settings.DATABASE_URL, Base.metadata)
