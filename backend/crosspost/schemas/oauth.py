"""Pydantic schemas for platform connections"""
from typing import List, Optional

from pydantic import BaseModel


class AuthUrlResponse(BaseModel):
    url: str


class ConnectionStatus(BaseModel):
    platform: str
    status: str
    connected: bool
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    account_handle: Optional[str] = None
    expires_at: Optional[str] = None
    last_sync_at: Optional[str] = None


class ConnectionsResponse(BaseModel):
    connections: List[ConnectionStatus]
