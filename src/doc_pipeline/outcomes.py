"""
Processing outcomes.

Every delivery ends in exactly one of these. The dispatcher publishes the
outcome's outbound messages and only then acknowledges the delivery, so the
ack decision is made once, in one place.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class OutboundMessage:
    queue: str
    body: bytes
    kind: str


@dataclass(frozen=True)
class Success:
    outbound: tuple[OutboundMessage, ...] = ()


@dataclass(frozen=True)
class Retry:
    attempts: int
    error: str
    outbound: tuple[OutboundMessage, ...] = ()


@dataclass(frozen=True)
class DeadLetter:
    attempts: int
    error: str
    outbound: tuple[OutboundMessage, ...] = ()


@dataclass(frozen=True)
class Drop:
    reason: str
    outbound: tuple[OutboundMessage, ...] = ()


Outcome = Union[Success, Retry, DeadLetter, Drop]
