"""Wiring for one process: storage, remote client, session, store and router."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from timeline_comments.core.admission import WriteGate
from timeline_comments.core.annotation_store import AnnotationStore
from timeline_comments.core.identity import PageProbe
from timeline_comments.core.messaging import LocalChannel, MessageRouter
from timeline_comments.core.moderation import ModerationEngine
from timeline_comments.core.orchestrator import SyncOrchestrator
from timeline_comments.core.rate_limiter import RateLimiter
from timeline_comments.core.session import SessionContext, init_session
from timeline_comments.core.settings import Settings
from timeline_comments.core.storage import DB, init_db
from timeline_comments.providers.credentials import AnonymousCredentialProvider
from timeline_comments.providers.remote_store import RemoteStoreClient

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    db: DB
    remote: RemoteStoreClient
    session: SessionContext
    store: AnnotationStore
    gate: WriteGate

    def router(self, gated: bool) -> MessageRouter:
        """Router for a transport. Untrusted transports get the write gate."""
        return MessageRouter(self.store, self.session, gate=self.gate if gated else None)

    def orchestrator(self, probe: PageProbe, **kwargs) -> SyncOrchestrator:
        """Page-side orchestrator talking to this runtime over an in-process channel.

        The orchestrator gates writes itself, so its router is ungated.
        """
        channel = LocalChannel(self.router(gated=False))
        return SyncOrchestrator(
            probe,
            channel,
            self.gate,
            self.session,
            enabled=self.db.is_enabled(),
            **kwargs,
        )

    async def close(self) -> None:
        await self.remote.close()


async def create_runtime(
    settings: Settings | None = None,
    *,
    db: DB | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Runtime:
    s = settings or Settings.from_env()
    db = db or init_db(s)
    remote = RemoteStoreClient(s.remote_database_url, timeout=s.remote_timeout, transport=transport)
    provider = AnonymousCredentialProvider(
        s.identity_api_key, s.identity_base_url, timeout=s.remote_timeout, transport=transport
    )
    session = await init_session(db, s, provider, remote)
    gate = WriteGate(ModerationEngine(), RateLimiter.from_settings(s.rate_limits))
    return Runtime(
        settings=s,
        db=db,
        remote=remote,
        session=session,
        store=AnnotationStore(remote, db),
        gate=gate,
    )


_runtime: Runtime | None = None


async def init_runtime(settings: Settings | None = None) -> Runtime:
    global _runtime
    _runtime = await create_runtime(settings)
    return _runtime


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> Runtime:
    if _runtime is None:
        raise RuntimeError("Runtime not initialized. Call init_runtime first.")
    return _runtime


def runtime_initialized() -> bool:
    return _runtime is not None
