#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Ticket-based session held by the hypervisor client."""
import dataclasses
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

# Proxmox tickets are valid for 2 hours
TICKET_LIFETIME = timedelta(hours=2)


class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


@dataclasses.dataclass
class HypervisorSession:
    """Ticket + anti-forgery token pair with its expiry."""

    ticket: Optional[str] = None
    csrf_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def issue(cls, ticket: str, csrf_token: str, now: Optional[datetime] = None) -> "HypervisorSession":
        now = now or datetime.now(timezone.utc)
        return cls(ticket=ticket, csrf_token=csrf_token, expires_at=now + TICKET_LIFETIME)

    def state(self, now: Optional[datetime] = None) -> SessionState:
        if not self.ticket or self.expires_at is None:
            return SessionState.UNAUTHENTICATED
        now = now or datetime.now(timezone.utc)
        if now >= self.expires_at:
            return SessionState.EXPIRED
        return SessionState.AUTHENTICATED

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.state(now) is SessionState.AUTHENTICATED
