from sqlalchemy import Column, Integer, String, DateTime, Date, DECIMAL, Text, UniqueConstraint, Index
from sqlalchemy.sql import func
import enum
from backend.database import Base


class BankProviderName(str, enum.Enum):
    TRUELAYER = "truelayer"


class TransactionSource(str, enum.Enum):
    BANK = "bank"
    MANUAL = "manual"


class TransactionType(str, enum.Enum):
    EXPENSE = "expense"
    INCOME = "income"


class BankConnection(Base):
    __tablename__ = "bank_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_bank_connections_user_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default=BankProviderName.TRUELAYER.value)

    # OAuth tokens (encrypted)
    encrypted_refresh_token = Column(Text, nullable=True)
    encrypted_access_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class BankAccount(Base):
    __tablename__ = "bank_accounts"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "provider", "provider_account_id",
            name="uq_bank_accounts_user_provider_account"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    provider = Column(String(50), nullable=False)
    provider_account_id = Column(String(255), nullable=False)
    account_name = Column(String(255), nullable=True)
    currency = Column(String(3), nullable=True)
    balance = Column(DECIMAL(15, 2), nullable=True)
    available_balance = Column(DECIMAL(15, 2), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "provider_transaction_id", name="uq_transactions_user_provider_tx"),
        Index("idx_transactions_user_source", "user_id", "source"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    # NULL for manually entered rows
    provider_transaction_id = Column(String(255), nullable=True)
    provider_account_id = Column(String(255), nullable=True)
    type = Column(String(20), nullable=False)
    amount = Column(DECIMAL(15, 2), nullable=False)
    currency = Column(String(3), nullable=True)
    date = Column(Date, nullable=False)
    category = Column(String(100), nullable=False, default="Other")
    description = Column(String(500), nullable=False, default="")
    source = Column(String(20), nullable=False, default=TransactionSource.MANUAL.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
