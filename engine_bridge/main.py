"""FastAPI transport exposing an engine over MCP and the OpenAI chat API."""
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from mcp.types import PARSE_ERROR

from engine_bridge.chat import SSE_HEADERS, create_chat_router, openai_error_response
from engine_bridge.config import Config
from engine_bridge.engine import Engine, load_engine
from engine_bridge.errors import SESSION_ERROR, ProtocolError, jsonrpc_error
from engine_bridge.sessions import SessionCreationError, SessionRegistry

logger = logging.getLogger("engine_bridge")

SESSION_HEADER = "mcp-session-id"
MCP_METHODS = ["GET", "POST", "DELETE", "OPTIONS", "HEAD"]
HEARTBEAT_SECONDS = 30


def configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def create_app(engine: Engine, config: type[Config] = Config) -> FastAPI:
    """Build the bridge application around ``engine``."""
    registry = SessionRegistry(
        engine,
        server_name=config.SERVER_NAME,
        server_version=config.VERSION,
        tools_model=config.TOOLS_DEFAULT_MODEL,
        rebindable=config.REBINDABLE_TOOLS,
        enable_model_proxy=config.ENABLE_MODEL_PROXY_TOOL,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        logger.info("Starting %s on %s:%s", config.SERVER_NAME, config.HOST, config.PORT)
        logger.info("MCP endpoint: /mcp, OpenAI endpoint: /v1")
        yield
        await registry.close_all()
        logger.info("Shutting down %s", config.SERVER_NAME)

    app = FastAPI(
        title="Engine MCP Bridge",
        description="MCP and OpenAI-compatible transport for a conversational engine",
        version=config.VERSION,
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.ALLOWED_ORIGINS or ["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Mcp-Session-Id"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        if logger.isEnabledFor(logging.DEBUG) and request.method in ("POST", "PUT", "PATCH"):
            body = (await request.body()).decode("utf-8", errors="replace")
            if body:
                if len(body) > config.LOG_BODY_LIMIT:
                    body = body[: config.LOG_BODY_LIMIT] + "..."
                logger.debug("Body: %s", body)
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request: {location}: {first.get('msg', 'malformed body')}" if location else "Invalid request body"
        return openai_error_response(400, message, "invalid_request_error", "invalid_request")

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {
            "service": config.SERVER_NAME,
            "status": "running",
            "version": config.VERSION,
            "sessions": len(registry),
        }

    @app.api_route("/mcp", methods=MCP_METHODS)
    async def mcp_endpoint(request: Request):
        """
        Unified MCP endpoint (Streamable HTTP).

        - POST: JSON-RPC messages; ``initialize`` without a session opens one
        - GET: keep-alive SSE stream for an existing session
        - DELETE: close the session
        - OPTIONS / HEAD: preflight and connection checks
        """
        session_id: Optional[str] = request.headers.get(SESSION_HEADER)

        if request.method == "OPTIONS":
            return JSONResponse(
                content={"status": "ok"},
                headers={
                    "Allow": ", ".join(MCP_METHODS),
                    "Access-Control-Allow-Methods": ", ".join(MCP_METHODS),
                    "Access-Control-Allow-Headers": "*",
                },
            )

        if request.method == "HEAD":
            return Response(headers={"Allow": ", ".join(MCP_METHODS)})

        if request.method == "DELETE":
            if await registry.close(session_id):
                return Response(status_code=204)
            return JSONResponse(
                jsonrpc_error(SESSION_ERROR, "Session not found"),
                status_code=404,
            )

        if request.method == "GET":
            return _session_stream(request, registry, session_id)

        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return JSONResponse(jsonrpc_error(PARSE_ERROR, "Parse error"), status_code=400)

        try:
            reply = await registry.handle(session_id, payload)
        except ProtocolError as exc:
            return JSONResponse(jsonrpc_error(exc.code, exc.message), status_code=exc.status_code)
        except SessionCreationError as exc:
            if exc.original_exc is not None:
                logger.error("Session creation failed: %s", exc.original_exc)
            return JSONResponse({"error": exc.message}, status_code=exc.status_code)

        headers = {"Mcp-Session-Id": reply.session_id} if reply.created or session_id else {}
        if reply.body is None:
            return Response(status_code=202, headers=headers)
        return JSONResponse(reply.body, headers=headers)

    app.include_router(create_chat_router(engine, config.AVAILABLE_MODELS))
    return app


def _session_stream(request: Request, registry: SessionRegistry, session_id: Optional[str]):
    session = registry.get(session_id)
    if session is None:
        return JSONResponse(
            jsonrpc_error(SESSION_ERROR, "Bad Request: No valid session ID provided"),
            status_code=400,
        )

    async def event_stream():
        """Keep-alive stream for server-to-client messages."""
        logger.debug("SSE stream established for session %s", session.session_id)
        while not session.abort_signal.is_set():
            if await request.is_disconnected():
                logger.debug("SSE client for session %s disconnected", session.session_id)
                break
            try:
                await asyncio.wait_for(session.abort_signal.wait(), timeout=HEARTBEAT_SECONDS)
            except asyncio.TimeoutError:
                yield ": heartbeat\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "Mcp-Session-Id": session.session_id},
    )


def build_app_from_env() -> FastAPI:
    """Entry point for ``uvicorn --factory engine_bridge.main:build_app_from_env``."""
    configure_logging(Config.DEBUG)
    if not Config.ENGINE_FACTORY:
        raise RuntimeError("ENGINE_FACTORY is not set; expected 'module:callable'")
    return create_app(load_engine(Config.ENGINE_FACTORY))


def run() -> None:
    """Run the bridge server."""
    import uvicorn
    uvicorn.run(
        "engine_bridge.main:build_app_from_env",
        factory=True,
        host=Config.HOST,
        port=Config.PORT,
        reload=Config.DEBUG,
    )


if __name__ == "__main__":
    run()
