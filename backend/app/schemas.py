from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import date, datetime


class TokenData(BaseModel):
    sub: Optional[str] = None


# Bank connection schemas

class ConnectResponse(BaseModel):
    url: str


class SyncParams(BaseModel):
    from_date: Optional[date] = Field(None, alias="fromDate")
    to_date: Optional[date] = Field(None, alias="toDate")

    class Config:
        populate_by_name = True


class DateRange(BaseModel):
    from_date: date = Field(alias="from")
    to_date: date = Field(alias="to")

    class Config:
        populate_by_name = True


class SyncResponse(BaseModel):
    ok: bool = True
    mode: str
    accounts: int
    inserted: int
    skipped: int
    date_range: DateRange = Field(alias="dateRange")
    failed_accounts: List[str] = Field(default_factory=list, alias="failedAccounts")

    class Config:
        populate_by_name = True


class SyncErrorResponse(BaseModel):
    error: str
    message: str
    requires_reconnect: bool = Field(False, alias="requiresReconnect")

    class Config:
        populate_by_name = True


class ConnectionStatus(BaseModel):
    connected: bool
    provider: Optional[str] = None
    connected_at: Optional[datetime] = Field(None, alias="connectedAt")
    token_expires_at: Optional[datetime] = Field(None, alias="tokenExpiresAt")

    class Config:
        populate_by_name = True


class AccountBalanceItem(BaseModel):
    name: Optional[str] = None
    balance: Optional[float] = None
    available: Optional[float] = None
    currency: Optional[str] = None


class BalanceResponse(BaseModel):
    total_balance: Optional[float] = Field(None, alias="totalBalance")
    available_balance: Optional[float] = Field(None, alias="availableBalance")
    currency: str = "GBP"
    last_synced_at: Optional[datetime] = Field(None, alias="lastSyncedAt")
    accounts: List[AccountBalanceItem] = []
    source: str

    class Config:
        populate_by_name = True
