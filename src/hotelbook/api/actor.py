"""Caller identity for reservation routes.

Authentication happens upstream; the gateway forwards who is calling in
two headers:
- X-Actor-Id: guest id or employee id
- X-Actor-Role: "guest" or "employee"
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from fastapi import Depends, Header, HTTPException

ActorRole = Literal["guest", "employee"]

_ROLES: dict[str, ActorRole] = {"guest": "guest", "employee": "employee"}


@dataclass
class Actor:
    id: str
    role: ActorRole

    @property
    def is_employee(self) -> bool:
        return self.role == "employee"


def get_actor(
    x_actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> Actor:
    if not x_actor_id:
        raise HTTPException(status_code=401, detail="Missing actor")
    role = _ROLES.get(x_actor_role or "")
    if role is None:
        raise HTTPException(status_code=401, detail="Invalid actor role")
    return Actor(id=x_actor_id, role=role)


def require_employee(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_employee:
        raise HTTPException(status_code=403, detail="Employees only")
    return actor
