from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from postflow.models import Brand, SocialAccount


class SocialAccountDirectory:
    """Workspace-scoped lookups of brands and connected social accounts."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_brand(self, brand_id: str, workspace_id: str) -> Brand | None:
        result = await self.session.execute(
            sa.select(Brand).where(Brand.id == brand_id, Brand.workspace_id == workspace_id)
        )
        return result.scalar_one_or_none()

    async def find_by_id_and_workspace(self, account_id: str, workspace_id: str) -> SocialAccount | None:
        result = await self.session.execute(
            sa.select(SocialAccount)
            .where(SocialAccount.id == account_id, SocialAccount.workspace_id == workspace_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
