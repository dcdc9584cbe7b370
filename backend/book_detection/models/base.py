"""Abstract base for job store tables"""

import uuid
from datetime import datetime
from sqlalchemy import Column, DateTime, Uuid
from book_detection.database import Base


class BaseModel(Base):
    """UUID primary key plus creation and last-write timestamps"""

    __abstract__ = True

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    # Refreshed by every pipeline write; the timeout reaper measures staleness from it
    updated_at = Column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )
