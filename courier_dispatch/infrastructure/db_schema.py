from sqlalchemy import Table, Column, String, DateTime, MetaData
from sqlalchemy.sql import func

metadata = MetaData()


# Локальное хранилище стадий доставки курьера (ключ delivery_stage:{order_id})
job_stages_tbl = Table(
    "job_stages",
    metadata,
    Column("key", String, primary_key=True),
    Column("value", String, nullable=False),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)
