"""Read-only access to per-page bot configuration."""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.page import PageSettings
from app.schemas.conversation import PageConfig

logger = logging.getLogger(__name__)


class PageConfigStore:
    """Loads page configuration snapshots written by the dashboard."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]) -> None:
        self._session_maker = session_maker

    async def get(self, page_id: str) -> PageConfig | None:
        """Get the configuration for a page, or None if the page is unknown."""
        async with self._session_maker() as db:
            result = await db.execute(
                select(PageSettings).where(PageSettings.page_id == page_id)
            )
            row = result.scalar_one_or_none()

        if row is None:
            logger.warning(f"No configuration found for page {page_id}")
            return None

        return PageConfig(
            page_id=row.page_id,
            user_id=row.user_id,
            bot_name=row.bot_name,
            text_prompt=row.text_prompt,
            image_prompt=row.image_prompt,
            chat_model=row.chat_model,
            provider=row.provider,
            api_key=row.api_key,
            cheap_engine=row.cheap_engine,
            is_external_api=row.is_external_api,
            page_access_token=row.page_access_token,
        )
