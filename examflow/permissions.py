"""Capability checks and the explicit session context for the current actor."""

from __future__ import annotations

from typing import Dict, Optional

import structlog

from examflow.errors import SessionClosedError
from examflow.models import Actor, Capability, Stage
from examflow.time_utils import now_iso

logger = structlog.get_logger(__name__)

STAGE_CAPABILITIES: Dict[Stage, Capability] = {
    Stage.OBSERVATION: Capability.OBSERVE,
    Stage.RECORDING: Capability.RECORD,
    Stage.ANALYSIS: Capability.ANALYZE,
    Stage.INTERPRETATION: Capability.INTERPRET,
    # Closing the exam belongs to whoever interprets it.
    Stage.COMPLETED: Capability.INTERPRET,
}


def stage_to_capability(stage: Stage) -> Optional[Capability]:
    return STAGE_CAPABILITIES.get(stage)


def has_capability(actor: Optional[Actor], capability: Capability) -> bool:
    """Return ``True`` when ``actor`` holds ``capability``; administrators hold all."""

    if actor is None:
        return False
    if actor.is_administrator:
        return True
    return capability in actor.capabilities


def can_submit(actor: Optional[Actor], stage: Stage) -> bool:
    """Return whether ``actor`` may submit the form that moves a record into ``stage``.

    ``Pending`` has no capability, so it (like any unknown stage) is only
    open to administrators.
    """

    if actor is None:
        return False
    if actor.is_administrator:
        return True
    capability = STAGE_CAPABILITIES.get(stage) if isinstance(stage, Stage) else None
    if capability is None:
        return False
    return capability in actor.capabilities


class SessionContext:
    """Holds the logged-in actor for one client session.

    The context is created by :meth:`login` and must be torn down with
    :meth:`logout`; it can also be used as a context manager.
    """

    def __init__(self) -> None:
        self._actor: Optional[Actor] = None
        self._token: Optional[str] = None
        self.started_at: Optional[str] = None

    @classmethod
    def login(cls, actor: Actor, token: Optional[str] = None) -> "SessionContext":
        session = cls()
        session._actor = actor
        session._token = token
        session.started_at = now_iso()
        logger.info("session_login", actor_id=actor.id, role=actor.role.value)
        return session

    def logout(self) -> None:
        if self._actor is not None:
            logger.info("session_logout", actor_id=self._actor.id)
        self._actor = None
        self._token = None

    @property
    def active(self) -> bool:
        return self._actor is not None

    @property
    def actor(self) -> Actor:
        if self._actor is None:
            raise SessionClosedError("session has been closed")
        return self._actor

    @property
    def token(self) -> Optional[str]:
        return self._token

    def replace_actor(self, actor: Optional[Actor]) -> None:
        """Swap in a refreshed actor; ``None`` (deleted actor) closes the session."""

        if actor is None:
            self.logout()
            return
        self._actor = actor

    def can_submit(self, stage: Stage) -> bool:
        return can_submit(self._actor, stage)

    def __enter__(self) -> "SessionContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.logout()


__all__ = [
    "STAGE_CAPABILITIES",
    "stage_to_capability",
    "has_capability",
    "can_submit",
    "SessionContext",
]
