"""
Role binding registry.

The registry is the only mutable state the relay shares across
connections.  Every read-modify-write happens under one ``asyncio.Lock`` so
"bind and look up the counterpart" can never interleave with a concurrent
disconnect clearing the same slot.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Generic, List, Optional, Tuple, TypeVar

ConnT = TypeVar("ConnT")


class Role(str, Enum):
    CONTROLLER = "controller"
    RESPONDER = "responder"

    @property
    def counterpart(self) -> "Role":
        return Role.RESPONDER if self is Role.CONTROLLER else Role.CONTROLLER


@dataclass(frozen=True)
class BindResult(Generic[ConnT]):
    superseded: Optional[ConnT]
    controller: Optional[ConnT]
    responder: Optional[ConnT]

    @property
    def paired(self) -> bool:
        return self.controller is not None and self.responder is not None


@dataclass(frozen=True)
class Release(Generic[ConnT]):
    """A role that was cleared by a release together with who is left behind."""

    role: Role
    survivor: Optional[ConnT]


class RoleRegistry(Generic[ConnT]):
    """
    Enum-keyed map from :class:`Role` to the connection currently bound to it.

    Connections are compared by identity; the registry never calls into them.
    """

    def __init__(self) -> None:
        self._bindings: Dict[Role, Optional[ConnT]] = {role: None for role in Role}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------ helpers

    def _roles_of_locked(self, conn: ConnT) -> List[Role]:
        return [role for role, bound in self._bindings.items() if bound is conn]

    # ------------------------------------------------------------------ public API

    async def bind(self, role: Role, conn: ConnT) -> BindResult[ConnT]:
        """Bind ``role`` to ``conn``; last writer wins."""

        async with self._lock:
            # A connection speaks for a single peer; moving it to a new role
            # vacates the one it held before.
            for held in self._roles_of_locked(conn):
                if held is not role:
                    self._bindings[held] = None
            previous = self._bindings[role]
            self._bindings[role] = conn
            return BindResult(
                superseded=previous if previous is not None and previous is not conn else None,
                controller=self._bindings[Role.CONTROLLER],
                responder=self._bindings[Role.RESPONDER],
            )

    async def route(self, conn: ConnT) -> Tuple[Optional[Role], Optional[ConnT]]:
        """
        Resolve the sender's role and the connection bound to the opposite role.

        Both values come from the same snapshot of the table.
        """

        async with self._lock:
            roles = self._roles_of_locked(conn)
            if not roles:
                return None, None
            role = roles[0]
            return role, self._bindings[role.counterpart]

    async def release(self, conn: ConnT) -> List[Release[ConnT]]:
        """
        Clear every role bound to ``conn``.

        A connection that was already superseded holds no role, so releasing
        it leaves newer bindings untouched and returns an empty list.
        """

        async with self._lock:
            roles = self._roles_of_locked(conn)
            for role in roles:
                self._bindings[role] = None
            return [Release(role=role, survivor=self._bindings[role.counterpart]) for role in roles]

    def snapshot(self) -> Dict[Role, Optional[ConnT]]:
        return dict(self._bindings)


__all__ = ["BindResult", "Release", "Role", "RoleRegistry"]
