from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Union


@dataclass(frozen=True)
class NoReply:
    """Send nothing back to the sender."""

    def payload(self) -> None:
        return None


@dataclass(frozen=True)
class SingleMessage:
    """One outbound bubble."""
    text: str

    def payload(self) -> str:
        return self.text


@dataclass(frozen=True)
class MultiMessage:
    """Several bubbles, delivered in order by the gateway."""
    texts: List[str] = field(default_factory=list)

    def payload(self) -> List[str]:
        return list(self.texts)


Reply = Union[NoReply, SingleMessage, MultiMessage]


def reply_payload(reply: Reply) -> Optional[Union[str, List[str]]]:
    """Return the wire value of a reply: None, a string, or a list of strings."""
    return reply.payload()
