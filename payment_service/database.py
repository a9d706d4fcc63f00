from common.database import Database
from payment_service.config import settings
from payment_service.models import Base


def build_database(url: str = None) -> Database:
    return Database(url or settings.DATABASE_URL, Base.metadata)
