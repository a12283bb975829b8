from __future__ import annotations
import uuid
from datetime import datetime
from sqlalchemy import String, DateTime, Enum, ForeignKey, Text
from sqlalchemy.orm import Mapped, mapped_column
from genbuilder.db.session import Base
from genbuilder.core.workflow import GenerationStage, JobStatus

def _enum_values(enum_cls):
    return [member.value for member in enum_cls]

class GeneratedApp(Base):
    __tablename__ = "generated_apps"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    source_dir: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, values_callable=_enum_values, length=20),
        default=JobStatus.PENDING, nullable=False,
    )
    current_stage: Mapped[GenerationStage] = mapped_column(
        Enum(GenerationStage, native_enum=False, values_callable=_enum_values, length=20),
        default=GenerationStage.PENDING, nullable=False,
    )
    current_detail: Mapped[str | None] = mapped_column(Text, nullable=True)

    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

class AppIteration(Base):
    __tablename__ = "app_iterations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    generation_id: Mapped[str] = mapped_column(String(36), ForeignKey("generated_apps.id"), nullable=False, index=True)

    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, values_callable=_enum_values, length=20),
        default=JobStatus.PENDING, nullable=False,
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
