#!/usr/bin/env python3
"""
Messages API Gateway

Exposes an Anthropic Messages API (/v1/messages) in front of an upstream chat
backend that only streams plain text deltas. Tool calls the model writes
inline are turned back into proper tool_use blocks, and when the model
refuses to act but suggests a command, the gateway runs that command itself:

    "I cannot execute commands.         →  text: "Executing command..."
     ```bash                               tool_use: bash {"command": "ls -la"}
     ls -la                                text: "✅ Command succeeded: ..."
     ```"                                  stop_reason: tool_use
"""

import argparse
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from classifier import IntentParser, classify
from events import estimate_tokens, generate_message_id
from executor import CommandExecutor
from models import MessagesRequest
from paths import get_workspace_dir
from recovery import RecoveryOrchestrator, Resolution, ResponseResolver
from tool_parser import ToolCallParser
from translator import StreamTranslator, translate_body
from upstream import (
    DEFAULT_UPSTREAM_MODEL,
    UpstreamClient,
    UpstreamError,
    build_upstream_request,
    conversation_text,
    user_texts,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# =============================================================================
# Stats Tracking
# =============================================================================


@dataclass
class BridgeStats:
    """Track gateway statistics for observability"""

    total_requests: int = 0
    passthrough_requests: int = 0  # Plain text, no tool calls
    tool_call_requests: int = 0  # Model wrote parseable tool calls
    recovered_requests: int = 0  # Refusal turned into an executed command
    unrecovered_refusals: int = 0  # Refusal with nothing to run (or recovery off)
    backend_errors: int = 0  # Upstream failed

    def record_resolution(self, resolution: Resolution) -> None:
        self.total_requests += 1
        if resolution.invocations:
            self.tool_call_requests += 1
        elif resolution.recovery is not None:
            self.recovered_requests += 1
        elif resolution.refusal:
            self.unrecovered_refusals += 1
        else:
            self.passthrough_requests += 1

    def record_backend_error(self) -> None:
        self.total_requests += 1
        self.backend_errors += 1

    def to_dict(self) -> dict[str, Any]:
        total = self.total_requests or 1  # Avoid division by zero
        counts = {
            "passthrough": self.passthrough_requests,
            "tool_calls": self.tool_call_requests,
            "recovered": self.recovered_requests,
            "unrecovered_refusals": self.unrecovered_refusals,
            "backend_errors": self.backend_errors,
        }
        result: dict[str, Any] = {"total_requests": self.total_requests}
        for name, count in counts.items():
            result[name] = {"count": count, "percent": round(100 * count / total, 1)}
        return result


# Global stats instance
stats = BridgeStats()


# =============================================================================
# Configuration
# =============================================================================


class BridgeConfig(BaseSettings):
    """Gateway configuration settings.

    Configuration can be set via:
    1. CLI arguments (highest priority)
    2. Environment variables (MESSAGEBRIDGE_<SETTING_NAME>)
    3. .env file in the working directory
    4. Default values (lowest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="MESSAGEBRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Upstream settings
    upstream_url: str = Field(
        default="http://localhost:3000",
        description="Upstream chat backend URL",
    )
    upstream_chat_path: str = Field(
        default="/api/chat",
        description="Path of the upstream chat endpoint",
    )
    upstream_timeout: float = Field(
        default=120.0,
        description="Timeout for upstream requests in seconds",
    )
    upstream_headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra headers sent with every upstream request",
    )
    default_upstream_model: str = Field(
        default=DEFAULT_UPSTREAM_MODEL,
        description="Upstream model used when the requested one is not recognized",
    )

    # Server settings
    port: int = Field(
        default=3010,
        description="Port to listen on",
    )
    host: str = Field(
        default="0.0.0.0",
        description="Host to bind to",
    )

    # Recovery settings
    recovery_enabled: bool = Field(
        default=True,
        description="Run commands suggested by refusals",
    )
    executor_timeout: float = Field(
        default=30.0,
        description="Timeout for a recovered command in seconds",
    )
    executor_max_output: int = Field(
        default=10000,
        description="Max characters of command output returned to the client",
    )
    workspace_dir: str | None = Field(
        default=None,
        description="Working directory for recovered commands (default: XDG state dir)",
    )

    # Debug settings
    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )

    # CORS settings
    cors_enabled: bool = Field(
        default=False,
        description="Enable CORS",
    )
    cors_origins: list[str] | None = Field(
        default=None,
        description="Allowed CORS origins (None = allow all '*')",
    )


def load_config() -> BridgeConfig:
    """Load configuration from environment variables and .env file."""
    return BridgeConfig()


config = load_config()

# =============================================================================
# Shared services
# =============================================================================

# Stateless or request-independent; shared by every request
tool_parser = ToolCallParser()
intent_parser = IntentParser()
executor: CommandExecutor
orchestrator: RecoveryOrchestrator
resolver: ResponseResolver
upstream_client: UpstreamClient


def configure_services(cfg: BridgeConfig) -> None:
    """(Re)build the shared services from configuration."""
    global executor, orchestrator, resolver, upstream_client

    executor = CommandExecutor(
        workspace_dir=get_workspace_dir(cfg.workspace_dir),
        timeout=cfg.executor_timeout,
        max_output=cfg.executor_max_output,
    )
    orchestrator = RecoveryOrchestrator(executor, enabled=cfg.recovery_enabled)
    resolver = ResponseResolver(tool_parser, orchestrator)
    upstream_client = UpstreamClient(
        base_url=cfg.upstream_url,
        chat_path=cfg.upstream_chat_path,
        timeout=cfg.upstream_timeout,
        headers=cfg.upstream_headers,
    )


configure_services(config)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """FastAPI lifespan context manager for startup/shutdown tasks."""
    logger.info(f"Upstream chat endpoint: {upstream_client.chat_url}")
    logger.info(f"Recovered commands run in: {executor.workspace_dir}")
    yield


app = FastAPI(title="Messages API Gateway", lifespan=lifespan)


# =============================================================================
# Request Handlers
# =============================================================================


def error_response(status_code: int, error_type: str, message: str) -> JSONResponse:
    """Messages API shaped error response."""
    return JSONResponse(
        status_code=status_code,
        content={"type": "error", "error": {"type": error_type, "message": message}},
    )


def log_intent(message_id: str, request: MessagesRequest) -> None:
    """Log what the user seems to be asking for (debug only)."""
    if not logger.isEnabledFor(logging.DEBUG):
        return
    intent = intent_parser.parse_user_intent(user_texts(request))
    logger.debug(
        f"[{message_id}] User intent: action={intent.action}, "
        f"path={intent.file_path!r}, command={intent.command!r}"
    )


async def handle_streaming_request(
    translator: StreamTranslator, payload: dict[str, Any]
) -> AsyncGenerator[str, None]:
    """Stream one translated response and record its outcome."""
    async for event in translator.translate(upstream_client.stream(payload)):
        yield event

    if translator.upstream_error is not None:
        stats.record_backend_error()
    elif translator.resolution is not None:
        stats.record_resolution(translator.resolution)


async def handle_non_streaming_request(
    payload: dict[str, Any], model: str, input_tokens: int, message_id: str
) -> Response | dict[str, Any]:
    """Fetch the full upstream response and translate it in one pass."""
    try:
        body = await upstream_client.send(payload)
    except UpstreamError as e:
        logger.error(f"[{message_id}] Upstream error: {e}")
        stats.record_backend_error()
        return error_response(502, "api_error", str(e))

    response, resolution = await translate_body(
        resolver, body, model=model, input_tokens=input_tokens, message_id=message_id
    )
    stats.record_resolution(resolution)

    logger.info(
        f"[{message_id}] Request complete: {len(response['content'])} block(s), "
        f"stop_reason={response['stop_reason']}"
    )
    return response


async def parse_messages_request(request: Request) -> MessagesRequest | JSONResponse:
    try:
        body = await request.json()
    except ValueError as e:
        return error_response(400, "invalid_request_error", f"Invalid JSON body: {e}")

    try:
        return MessagesRequest.model_validate(body)
    except ValidationError as e:
        return error_response(400, "invalid_request_error", str(e))


@app.post("/v1/messages", response_model=None)
async def messages(request: Request) -> Response | dict[str, Any]:
    """Messages API endpoint, streaming or not."""
    parsed = await parse_messages_request(request)
    if isinstance(parsed, JSONResponse):
        return parsed

    message_id = generate_message_id()
    payload = build_upstream_request(parsed, config.default_upstream_model)
    input_tokens = estimate_tokens(conversation_text(parsed))

    logger.info(
        f"[{message_id}] Request: model={parsed.model}, upstream_model={payload['model']}, "
        f"streaming={parsed.stream}, messages={len(parsed.messages)}, tools={len(parsed.tools)}"
    )
    log_intent(message_id, parsed)

    if parsed.stream:
        translator = StreamTranslator(
            resolver, model=parsed.model, input_tokens=input_tokens, message_id=message_id
        )
        return StreamingResponse(
            handle_streaming_request(translator, payload),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return await handle_non_streaming_request(
        payload, model=parsed.model, input_tokens=input_tokens, message_id=message_id
    )


@app.post("/v1/messages/count_tokens", response_model=None)
async def count_tokens(request: Request) -> Response | dict[str, Any]:
    """Estimate the input token count of a request."""
    parsed = await parse_messages_request(request)
    if isinstance(parsed, JSONResponse):
        return parsed
    return {"input_tokens": estimate_tokens(conversation_text(parsed))}


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check."""
    upstream_healthy = await upstream_client.is_healthy()
    return {
        "status": "healthy" if upstream_healthy else "degraded",
        "upstream_url": config.upstream_url,
        "upstream_healthy": upstream_healthy,
        "recovery_enabled": config.recovery_enabled,
    }


@app.get("/stats")
async def get_stats() -> dict[str, Any]:
    """
    Get gateway statistics.

    Shows how many responses were:
    - passthrough: plain text, returned as-is
    - tool_calls: inline tool calls turned into tool_use blocks
    - recovered: refusals turned into an executed command
    - unrecovered_refusals: refusals with no command to run
    - backend_errors: the upstream failed
    """
    return {"gateway_stats": stats.to_dict()}


@app.post("/stats/reset")
async def reset_stats() -> dict[str, Any]:
    """Reset statistics counters."""
    global stats
    stats = BridgeStats()
    return {"status": "reset", "stats": stats.to_dict()}


@app.get("/config")
async def get_config() -> dict[str, Any]:
    """Get current gateway configuration."""
    return {
        "upstream_url": config.upstream_url,
        "upstream_chat_path": config.upstream_chat_path,
        "upstream_timeout": config.upstream_timeout,
        "upstream_headers": sorted(config.upstream_headers),
        "default_upstream_model": config.default_upstream_model,
        "recovery": {
            "enabled": config.recovery_enabled,
            "timeout": config.executor_timeout,
            "max_output": config.executor_max_output,
            "workspace_dir": str(executor.workspace_dir),
        },
        "note": "Header values are not shown, only their names",
    }


@app.get("/proxy/test-classify")
async def classify_preview(text: str = "") -> dict[str, Any]:
    """
    Show how a response text would be classified, without running anything.

    Usage: /proxy/test-classify?text=<url-encoded-text>
    """
    if not text:
        text = "I cannot execute commands directly. Run this in your terminal:\n```bash\nls -la\n```"

    parsed = tool_parser.parse(text)
    classification = classify([text])
    intent = intent_parser.parse_user_intent([text])

    return {
        "input_text": text,
        "tool_calls": [
            {"name": inv.name, "input": inv.input} for inv in parsed.invocations
        ],
        "remaining_text": parsed.remaining_text,
        "classification": {
            "is_refusal": classification.is_refusal,
            "suggested_command": classification.suggested_command,
            "guessed_path": classification.guessed_path,
            "guessed_content": classification.guessed_content,
            "guessed_action": classification.guessed_action,
        },
        "intent": {
            "action": intent.action,
            "file_path": intent.file_path,
            "content": intent.content,
            "command": intent.command,
        },
        "would_recover": not parsed.invocations
        and classification.is_refusal
        and bool(classification.suggested_command)
        and config.recovery_enabled,
    }


# =============================================================================
# Main
# =============================================================================


def _env_help(env_var: str, description: str, default: str | None = None) -> str:
    """Format help text with environment variable name."""
    if default is not None:
        return f"{description} [env: {env_var}, default: {default}]"
    return f"{description} [env: {env_var}]"


def main() -> None:
    # Load config from environment variables / .env file first
    global config
    config = load_config()

    parser = argparse.ArgumentParser(
        description="Messages API Gateway",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Configuration Priority (highest to lowest):
  1. CLI arguments
  2. Environment variables (MESSAGEBRIDGE_*)
  3. .env file in working directory
  4. Default values

Environment Variables:
  MESSAGEBRIDGE_UPSTREAM_URL            Upstream chat backend URL
  MESSAGEBRIDGE_UPSTREAM_CHAT_PATH      Upstream chat endpoint path
  MESSAGEBRIDGE_UPSTREAM_TIMEOUT        Upstream timeout in seconds
  MESSAGEBRIDGE_UPSTREAM_HEADERS        Extra upstream headers (as JSON object)
  MESSAGEBRIDGE_DEFAULT_UPSTREAM_MODEL  Fallback upstream model
  MESSAGEBRIDGE_PORT                    Port to listen on
  MESSAGEBRIDGE_HOST                    Host to bind to
  MESSAGEBRIDGE_RECOVERY_ENABLED        Run commands suggested by refusals (true/false)
  MESSAGEBRIDGE_EXECUTOR_TIMEOUT        Timeout per recovered command
  MESSAGEBRIDGE_EXECUTOR_MAX_OUTPUT     Max characters of command output
  MESSAGEBRIDGE_WORKSPACE_DIR           Working directory for recovered commands
  MESSAGEBRIDGE_DEBUG                   Enable debug logging (true/false)
  MESSAGEBRIDGE_CORS_ENABLED            Enable CORS (true/false)
  MESSAGEBRIDGE_CORS_ORIGINS            Allowed origins (as JSON list)

Examples:
  # Basic usage (reads from env vars / .env if available)
  python messagebridge.py

  # Point at a different upstream
  python messagebridge.py --upstream http://localhost:3000

  # Never run commands on behalf of the model
  python messagebridge.py --no-recovery
""",
    )

    parser.add_argument(
        "--upstream",
        default=None,
        help=_env_help("MESSAGEBRIDGE_UPSTREAM_URL", "Upstream URL", config.upstream_url),
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help=_env_help("MESSAGEBRIDGE_PORT", "Port to listen on", str(config.port)),
    )
    parser.add_argument(
        "--host",
        default=None,
        help=_env_help("MESSAGEBRIDGE_HOST", "Host to bind to", config.host),
    )
    parser.add_argument(
        "--no-recovery",
        action="store_true",
        help=_env_help(
            "MESSAGEBRIDGE_RECOVERY_ENABLED=false", "Do not run commands suggested by refusals"
        ),
    )
    parser.add_argument(
        "--executor-timeout",
        type=float,
        default=None,
        help=_env_help(
            "MESSAGEBRIDGE_EXECUTOR_TIMEOUT",
            "Timeout per recovered command in seconds",
            str(config.executor_timeout),
        ),
    )
    parser.add_argument(
        "--workspace-dir",
        default=None,
        help=_env_help("MESSAGEBRIDGE_WORKSPACE_DIR", "Working directory for recovered commands"),
    )
    parser.add_argument(
        "--cors",
        action="store_true",
        help=_env_help("MESSAGEBRIDGE_CORS_ENABLED", "Enable CORS"),
    )
    parser.add_argument(
        "--cors-origins",
        default=None,
        help="Comma-separated allowed origins (default: *)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help=_env_help("MESSAGEBRIDGE_DEBUG", "Enable debug logging"),
    )

    args = parser.parse_args()

    # CLI args override env vars / .env
    if args.upstream is not None:
        config.upstream_url = args.upstream
    if args.port is not None:
        config.port = args.port
    if args.host is not None:
        config.host = args.host
    if args.no_recovery:
        config.recovery_enabled = False
    if args.executor_timeout is not None:
        config.executor_timeout = args.executor_timeout
    if args.workspace_dir is not None:
        config.workspace_dir = args.workspace_dir
    if args.cors:
        config.cors_enabled = True
    if args.cors_origins:
        config.cors_origins = [o.strip() for o in args.cors_origins.split(",")]
    if args.debug:
        config.debug = True

    configure_services(config)

    # Apply debug logging level
    if config.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if config.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins if config.cors_origins else ["*"],
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    # Log startup configuration
    logger.info("Starting Messages API Gateway")
    logger.info(f"  Upstream: {config.upstream_url}{config.upstream_chat_path}")
    logger.info(f"  Listening: {config.host}:{config.port}")
    if config.recovery_enabled:
        logger.info(f"  Refusal recovery: enabled (timeout: {config.executor_timeout}s)")
    else:
        logger.info("  Refusal recovery: disabled")
    if config.cors_enabled:
        origins_display = ", ".join(config.cors_origins) if config.cors_origins else "*"
        logger.info(f"  CORS: enabled ({origins_display})")
    else:
        logger.info("  CORS: disabled")

    import uvicorn

    uvicorn.run(app, host=config.host, port=config.port, log_level="info")


if __name__ == "__main__":
    main()
