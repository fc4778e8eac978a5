import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, BigInteger, Column, Index, Text, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def new_id() -> str:
    return uuid.uuid4().hex


# Parent side of every ownership relation. Rows are removed by ON DELETE CASCADE
# in the database; the ORM only cascades what it already has loaded.
_OWNED = {"cascade": "all, delete", "passive_deletes": True}


class EmailImportStatus(str, enum.Enum):
    IMPORTED = "IMPORTED"
    ARCHIVED = "ARCHIVED"
    TRASHED = "TRASHED"


class EmailActionType(str, enum.Enum):
    ARCHIVE = "ARCHIVE"
    TRASH = "TRASH"
    UNSUBSCRIBE_ATTEMPT = "UNSUBSCRIBE_ATTEMPT"


class EmailActionStatus(str, enum.Enum):
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class User(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: Optional[str] = None
    email: str = Field(index=True, unique=True)
    email_verified: Optional[datetime] = None
    image: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow, sa_column_kwargs={"onupdate": datetime.utcnow}
    )

    accounts: List["Account"] = Relationship(back_populates="user", sa_relationship_kwargs=_OWNED)
    sessions: List["UserSession"] = Relationship(back_populates="user", sa_relationship_kwargs=_OWNED)
    gmail_accounts: List["GmailAccount"] = Relationship(
        back_populates="user", sa_relationship_kwargs=_OWNED
    )
    categories: List["Category"] = Relationship(back_populates="user", sa_relationship_kwargs=_OWNED)
    email_messages: List["EmailMessage"] = Relationship(
        back_populates="user", sa_relationship_kwargs=_OWNED
    )


class Account(SQLModel, table=True):
    """OAuth provider linkage for a User."""

    __table_args__ = (
        UniqueConstraint("provider", "provider_account_id", name="uq_account_provider"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True, ondelete="CASCADE")
    type: str = "oauth"
    provider: str
    provider_account_id: str
    refresh_token: Optional[str] = Field(default=None, sa_column=Column(Text))
    access_token: Optional[str] = Field(default=None, sa_column=Column(Text))
    expires_at: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None
    id_token: Optional[str] = Field(default=None, sa_column=Column(Text))
    session_state: Optional[str] = None

    user: Optional[User] = Relationship(back_populates="accounts")


class UserSession(SQLModel, table=True):
    """Login session keyed by the token kept in the browser cookie."""

    __tablename__ = "session"

    id: str = Field(default_factory=new_id, primary_key=True)
    session_token: str = Field(unique=True, index=True)
    user_id: str = Field(foreign_key="user.id", index=True, ondelete="CASCADE")
    expires: datetime

    user: Optional[User] = Relationship(back_populates="sessions")


class VerificationToken(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("identifier", "token", name="uq_verificationtoken_identifier_token"),
    )

    identifier: str = Field(primary_key=True)
    token: str = Field(primary_key=True, unique=True)
    expires: datetime


class GmailAccount(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("user_id", "email", name="uq_gmailaccount_user_email"),
        UniqueConstraint("user_id", "google_sub", name="uq_gmailaccount_user_sub"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True, ondelete="CASCADE")
    email: str = Field(index=True)
    google_sub: str
    # Both tokens are stored Fernet-encrypted (see crypto.py).
    refresh_token: str = Field(sa_column=Column(Text, nullable=False))
    access_token: Optional[str] = Field(default=None, sa_column=Column(Text))
    token_expiry: Optional[datetime] = None
    last_history_id: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow, sa_column_kwargs={"onupdate": datetime.utcnow}
    )

    user: Optional[User] = Relationship(back_populates="gmail_accounts")
    email_messages: List["EmailMessage"] = Relationship(
        back_populates="gmail_account", sa_relationship_kwargs=_OWNED
    )


class Category(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_category_user_name"),)

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True, ondelete="CASCADE")
    name: str
    description: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow, sa_column_kwargs={"onupdate": datetime.utcnow}
    )

    user: Optional[User] = Relationship(back_populates="categories")
    email_messages: List["EmailMessage"] = Relationship(
        back_populates="category", sa_relationship_kwargs=_OWNED
    )


class EmailMessage(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint(
            "gmail_account_id", "gmail_message_id", name="uq_emailmessage_account_message"
        ),
        Index("ix_emailmessage_user_category", "user_id", "category_id"),
    )

    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(foreign_key="user.id", index=True, ondelete="CASCADE")
    gmail_account_id: str = Field(foreign_key="gmailaccount.id", index=True, ondelete="CASCADE")
    category_id: str = Field(foreign_key="category.id", index=True, ondelete="CASCADE")

    gmail_message_id: str
    gmail_thread_id: Optional[str] = None
    internal_date_ms: Optional[int] = Field(default=None, sa_column=Column(BigInteger))

    from_name: Optional[str] = None
    from_email: Optional[str] = None
    subject: Optional[str] = None
    snippet: Optional[str] = None

    body_text: Optional[str] = Field(default=None, sa_column=Column(Text))
    body_html: Optional[str] = Field(default=None, sa_column=Column(Text))

    summary: Optional[str] = Field(default=None, sa_column=Column(Text))
    import_status: EmailImportStatus = Field(default=EmailImportStatus.IMPORTED)

    list_unsubscribe: Optional[str] = Field(default=None, sa_column=Column(Text))
    unsubscribe_links: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow, sa_column_kwargs={"onupdate": datetime.utcnow}
    )

    user: Optional[User] = Relationship(back_populates="email_messages")
    gmail_account: Optional[GmailAccount] = Relationship(back_populates="email_messages")
    category: Optional[Category] = Relationship(back_populates="email_messages")
    actions: List["EmailAction"] = Relationship(
        back_populates="email_message", sa_relationship_kwargs=_OWNED
    )


class EmailAction(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    email_message_id: str = Field(foreign_key="emailmessage.id", index=True, ondelete="CASCADE")
    type: EmailActionType
    status: EmailActionStatus = Field(default=EmailActionStatus.PENDING)
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow, sa_column_kwargs={"onupdate": datetime.utcnow}
    )

    email_message: Optional[EmailMessage] = Relationship(back_populates="actions")
