from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


class ProcessMessageRequest(BaseModel):
    """Inbound message relayed by a transport gateway."""
    sender: str = Field(alias="from")
    text: Optional[str] = ""
    user_name: Optional[str] = Field(default=None, alias="userName")


class ProcessMessageResponse(BaseModel):
    """Reply payload; an absent reply tells the gateway to send nothing."""
    reply: Optional[Union[str, List[str]]] = None
    options: Optional[Dict[str, Any]] = None


class AddKeyRequest(BaseModel):
    """Admin request to add one keyword reply to a category."""
    category: str = ""
    key: str = ""
    value: str = ""


class DeleteKeyRequest(BaseModel):
    """Admin request to remove one keyword reply from a category."""
    category: str = ""
    key: str = ""


class AdminResult(BaseModel):
    success: bool
    message: Optional[str] = None
