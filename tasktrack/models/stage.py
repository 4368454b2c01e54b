from sqlalchemy import Column, Integer, String, Text, func
from tasktrack.db import Base, UTCDateTime


class Stage(Base):
    __tablename__ = "stages"

    stage_id = Column(Integer, primary_key=True, autoincrement=True)
    stage_name = Column(String(255), nullable=False, unique=True)
    stage_order = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.current_timestamp())
    updated_at = Column(UTCDateTime, nullable=False, server_default=func.current_timestamp())
