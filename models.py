from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
import uuid_utils
import uuid


def generate_uuid7():
    """Generate UUIDv7 and convert to standard Python UUID"""
    uuid7_obj = uuid_utils.uuid7()
    return uuid.UUID(str(uuid7_obj))

Base = declarative_base()


class Account(Base):
    __tablename__ = 'accounts'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    username = Column(String(200), unique=True, nullable=False)
    country = Column(String(8), index=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    screenshots = relationship("Screenshot", back_populates="account")

    def __repr__(self):
        return f"<Account(id={self.id}, username='{self.username}', country='{self.country}')>"


class Screenshot(Base):
    __tablename__ = 'screenshots'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    account_id = Column(Uuid(as_uuid=True), ForeignKey('accounts.id', ondelete='SET NULL'))
    username = Column(String(200), nullable=False, index=True)
    country = Column(String(8))
    storage_path = Column(String(500), nullable=False)
    public_url = Column(String(2000))
    size_bytes = Column(Integer)
    capture_method = Column(String(50))
    captured_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=func.now(), nullable=False)

    account = relationship("Account", back_populates="screenshots")

    def __repr__(self):
        return f"<Screenshot(id={self.id}, username='{self.username}', path='{self.storage_path}')>"


class SchedulerLog(Base):
    __tablename__ = 'scheduler_logs'

    id = Column(Uuid(as_uuid=True), primary_key=True, default=generate_uuid7)
    username = Column(String(200), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    message = Column(Text)
    screenshot_id = Column(Uuid(as_uuid=True))
    error_message = Column(Text)
    duration_ms = Column(Integer, nullable=False, default=0)
    black_warnings = Column(Integer, nullable=False, default=0)
    render_timeouts = Column(Integer, nullable=False, default=0)
    recovered_captures = Column(Integer, nullable=False, default=0)
    details = Column(JSON)
    created_at = Column(DateTime, nullable=False, index=True)

    # Policy mining reads the newest rows per username.
    __table_args__ = (
        Index('ix_scheduler_logs_username_created', 'username', 'created_at'),
    )

    def __repr__(self):
        return f"<SchedulerLog(id={self.id}, username='{self.username}', status='{self.status}')>"


def generate_screenshot_path(username: str, epoch_ms: int, extension: str = "png") -> str:
    """Generate object storage path following the naming convention"""
    safe_name = "".join(
        char if char.isascii() and (char.isalnum() or char in "_.-") else "_"
        for char in f"{username}_{epoch_ms}.{extension}"
    )
    return f"screenshots/{safe_name}"
