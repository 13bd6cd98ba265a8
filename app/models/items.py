"""SQLAlchemy ORM model for the single ``items`` table.

Every entity of the LMS lives in this one table, addressed by a composite
``(pk, sk)`` key. A second key pair (``gsi1pk``, ``gsi1sk``) is indexed so it
can serve as the secondary index. Entity fields are kept in the ``attributes``
JSON bag; the columns below hold only what the store itself needs.
"""
from __future__ import annotations
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column, declarative_base
from sqlalchemy import Index, Integer, JSON, String

Base = declarative_base()

# attribute-bag names for the physical columns
PK = "PK"
SK = "SK"
GSI1PK = "GSI1PK"
GSI1SK = "GSI1SK"
ENTITY_TYPE = "entityType"
SCHEMA_VERSION = "schemaVersion"
CREATED_AT = "createdAt"
UPDATED_AT = "updatedAt"


class ItemRecord(Base):
    __tablename__ = "items"

    pk: Mapped[str] = mapped_column(String(255), primary_key=True)
    sk: Mapped[str] = mapped_column(String(255), primary_key=True)
    gsi1pk: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gsi1sk: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    entity_type: Mapped[str] = mapped_column(String(64))
    schema_version: Mapped[int] = mapped_column(Integer, default=1)
    version: Mapped[int] = mapped_column(Integer, default=1)
    attributes: Mapped[dict] = mapped_column(JSON, nullable=False)
    created_at: Mapped[str] = mapped_column(String(40))
    updated_at: Mapped[str] = mapped_column(String(40))

    __table_args__ = (
        Index("ix_items_gsi1", "gsi1pk", "gsi1sk"),
    )

    def to_item(self) -> dict:
        """Rebuild the full attribute bag (keys, tag and timestamps included)."""
        item = dict(self.attributes or {})
        item[PK] = self.pk
        item[SK] = self.sk
        if self.gsi1pk is not None:
            item[GSI1PK] = self.gsi1pk
            item[GSI1SK] = self.gsi1sk
        item[ENTITY_TYPE] = self.entity_type
        item[SCHEMA_VERSION] = self.schema_version
        item[CREATED_AT] = self.created_at
        item[UPDATED_AT] = self.updated_at
        return item

    @staticmethod
    def column_values(item: dict) -> dict:
        """Split an attribute bag into column values for insert/update."""
        attributes = {
            k: v for k, v in item.items()
            if k not in (PK, SK, GSI1PK, GSI1SK, ENTITY_TYPE, SCHEMA_VERSION, CREATED_AT, UPDATED_AT)
        }
        return {
            "pk": item[PK],
            "sk": item[SK],
            "gsi1pk": item.get(GSI1PK),
            "gsi1sk": item.get(GSI1SK),
            "entity_type": item[ENTITY_TYPE],
            "schema_version": item.get(SCHEMA_VERSION, 1),
            "attributes": attributes,
            "created_at": item[CREATED_AT],
            "updated_at": item[UPDATED_AT],
        }
