from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


class Database:
    """Async engine and session factory for one service's own database."""

    def __init__(self, url: str, metadata: MetaData, echo: bool = False):
        self.url = url
        self.metadata = metadata
        self.engine = create_async_engine(url, echo=echo, future=True)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(self.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
