"""Process-wide session: the actor credential pair plus settings.

Created once by :func:`init_session` and passed explicitly to every
component that writes on behalf of the actor.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Protocol

from timeline_comments.core.errors import TimelineError
from timeline_comments.core.settings import Settings
from timeline_comments.core.storage import DB, SETTING_DISPLAY_NAME
from timeline_comments.providers.credentials import Actor
from timeline_comments.providers.remote_store import RemoteStoreClient

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    async def sign_up(self) -> Actor: ...


@dataclass(frozen=True)
class SessionContext:
    actor: Actor
    settings: Settings

    @property
    def actor_id(self) -> str:
        return self.actor.id

    @property
    def token(self) -> str:
        return self.actor.token


async def init_session(
    db: DB,
    settings: Settings,
    provider: CredentialProvider,
    remote: RemoteStoreClient | None = None,
) -> SessionContext:
    """Restore the stored actor, or sign up exactly once and store it.

    A freshly signed-up actor also gets a ``users/{actorId}`` profile. Profile
    creation is best effort: the credential is usable without it.
    """
    stored = db.get_credentials()
    if stored:
        actor_id, token = stored
        logger.info(f"Restored actor {actor_id}")
        return SessionContext(actor=Actor(id=actor_id, token=token), settings=settings)

    actor = await provider.sign_up()
    db.save_credentials(actor.id, actor.token)
    display_name = f"User{random.randint(0, 9999)}"
    db.set_setting(SETTING_DISPLAY_NAME, display_name)

    if remote is not None:
        profile = {
            "displayName": display_name,
            "createdAt": int(time.time() * 1000),
            "commentCount": 0,
            "isAnonymous": True,
        }
        try:
            await remote.put(f"users/{actor.id}", profile, auth=actor.token)
        except TimelineError as e:
            logger.warning(f"Could not create profile for {actor.id}: {e}")

    logger.info(f"Authenticated as {actor.id}")
    return SessionContext(actor=actor, settings=settings)
