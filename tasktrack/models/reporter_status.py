from sqlalchemy import Column, Integer, String, Boolean
from tasktrack.db import Base, UTCDateTime


class ReporterStatus(Base):
    __tablename__ = "reporter_status"

    # one reporter per host
    hostname = Column(String(255), primary_key=True)
    process_id = Column(Integer, nullable=False)
    started_at = Column(UTCDateTime, nullable=False)
    last_heartbeat = Column(UTCDateTime, nullable=False)
    version = Column(String(32), nullable=True)
    shutdown_requested = Column(Boolean, nullable=False, default=False)
