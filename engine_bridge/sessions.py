"""Registry of live MCP sessions multiplexed over one HTTP endpoint."""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from mcp.types import Implementation

from engine_bridge.engine import Engine
from engine_bridge.errors import SESSION_ERROR, BridgeError, ProtocolError
from engine_bridge.mcp_bridge import McpSession, ToolServer, is_initialize_request

logger = logging.getLogger("engine_bridge.sessions")


class SessionCreationError(BridgeError):
    """Building a session's tool server or handshake failed."""

    status_code = 500


@dataclass
class SessionReply:
    session_id: str
    body: Any
    created: bool = False


class SessionRegistry:
    """
    Owns the mapping from session id to an isolated MCP session.

    Each session gets its own tool server built from a fresh snapshot of the
    engine's tools. Sessions never share mutable state; the session map is
    the only shared structure and is guarded by a lock for insert/remove.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        server_name: str,
        server_version: str,
        tools_model: Optional[str] = None,
        rebindable: Iterable[str] = (),
        enable_model_proxy: bool = False,
    ):
        self.engine = engine
        self.server_info = Implementation(name=server_name, version=server_version)
        self.tools_model = tools_model
        self.rebindable = tuple(rebindable)
        self.enable_model_proxy = enable_model_proxy
        self._sessions: dict[str, McpSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: Optional[str]) -> Optional[McpSession]:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    async def handle(self, session_id: Optional[str], payload: Any) -> SessionReply:
        """Route one MCP POST payload.

        Args:
            session_id: Value of the ``Mcp-Session-Id`` header, if any.
            payload: The decoded JSON-RPC message or batch.

        Returns:
            The reply and the id of the session that produced it.

        Raises:
            ProtocolError: unknown/absent session with a non-initialize payload.
            SessionCreationError: a new session could not be built.
        """
        session = self.get(session_id)
        if session is not None:
            logger.debug("Reusing session %s", session_id)
            return SessionReply(session_id=session.session_id, body=await session.handle(payload))

        if not is_initialize_request(payload):
            logger.error("Bad Request: missing or unknown session id %r for non-initialize request", session_id)
            raise ProtocolError(
                "Bad Request: No valid session ID provided",
                code=SESSION_ERROR,
            )

        return await self._create(payload)

    async def _create(self, payload: Any) -> SessionReply:
        new_id = str(uuid.uuid4())
        logger.debug("Creating new session %s for initialize request", new_id)
        try:
            tool_server = ToolServer.from_engine(
                self.engine,
                tools_model=self.tools_model,
                rebindable=self.rebindable,
                enable_model_proxy=self.enable_model_proxy,
            )
            session = McpSession(new_id, tool_server, self.server_info)
            body = await session.handle(payload)
        except Exception as exc:
            logger.exception("Error creating new MCP session")
            raise SessionCreationError("Failed to create session", original_exc=exc) from exc

        if not session.initialized:
            # Handshake answered with an error; nothing to keep
            return SessionReply(session_id=new_id, body=body, created=False)

        async with self._lock:
            self._sessions[new_id] = session
        logger.info("Session initialized: %s (%d tools)", new_id, len(tool_server.tools))
        return SessionReply(session_id=new_id, body=body, created=True)

    async def close(self, session_id: Optional[str]) -> bool:
        """Drop a session when its transport closes. Returns False if unknown."""
        if not session_id:
            return False
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        logger.info("Session %s closed", session_id)
        return True

    async def close_all(self) -> None:
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
        if sessions:
            logger.info("Closed %d sessions", len(sessions))
