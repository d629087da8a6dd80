import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import col, select
from sqlmodel.ext.asyncio.session import AsyncSession

from taskhub.core.errors import ConflictError, InternalError, NotFoundError
from taskhub.models import Tag, TagCreate, TagResponse

logger = logging.getLogger(__name__)


class TagService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_tag(self, tag_data: TagCreate) -> TagResponse:
        existing = (await self.db.exec(select(Tag).where(Tag.name == tag_data.name))).first()
        if existing is not None:
            raise ConflictError(f"tag {tag_data.name} already exists")

        tag = Tag.model_validate(tag_data)
        try:
            self.db.add(tag)
            await self.db.commit()
            await self.db.refresh(tag)
        except IntegrityError as exc:
            await self.db.rollback()
            raise ConflictError(f"tag {tag_data.name} already exists") from exc
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.error("Creating tag %s failed: %s", tag_data.name, exc)
            raise InternalError("failed to create tag") from exc

        return TagResponse.model_validate(tag)

    async def list_tags(self) -> list[TagResponse]:
        tags = (await self.db.exec(select(Tag).order_by(col(Tag.name)))).all()
        return [TagResponse.model_validate(t) for t in tags]

    async def get_tag(self, tag_id: int) -> TagResponse:
        tag = await self.db.get(Tag, tag_id)
        if tag is None:
            raise NotFoundError(f"tag {tag_id} not found")
        return TagResponse.model_validate(tag)
