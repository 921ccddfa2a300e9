import os
import sys
import json
import logging
import argparse
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from genai_gateway.config import GatewayConfig
from genai_gateway.cooldown_manager import CooldownTracker
from genai_gateway.credential_pool import CredentialPool
from genai_gateway.dispatcher import RequestDispatcher
from genai_gateway.error_handler import (
    AuthInvalid,
    ConfigurationError,
    DispatchError,
    PermanentRequestError,
    RateLimited,
    TransportError,
)
from genai_gateway.failure_logger import configure_failure_logger
from genai_gateway.upstream import GenAIUpstream, RequestEnvelope
from genai_gateway.utils.paths import get_default_root, get_logs_dir

from .logging_setup import configure_logging

GET_LIVE_KEY = "getLiveKey"
SUPPORTED_OPERATIONS = ("generateContent", "countTokens", GET_LIVE_KEY)


def error_response(
    message: str,
    status_code: int,
    retry_suggested: bool = False,
    attempts: int = 0,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": message, "retrySuggested": retry_suggested, "attempts": attempts},
        headers=headers,
    )


def dispatch_error_response(error: DispatchError, config: GatewayConfig) -> JSONResponse:
    """Map a terminal dispatch failure onto the relay's HTTP contract."""
    headers = None
    if isinstance(error, ConfigurationError):
        status_code = 500
    elif isinstance(error, RateLimited):
        status_code = 429
        retry_after = error.retry_after or config.rate_limit_cooldown_seconds
        headers = {"Retry-After": str(int(retry_after))}
    elif isinstance(error, AuthInvalid):
        status_code = 500
    elif isinstance(error, PermanentRequestError):
        status_code = error.status_code if error.status_code and 400 <= error.status_code < 600 else 400
    elif isinstance(error, TransportError):
        status_code = 504 if error.timed_out else 502
    else:
        status_code = error.status_code if error.status_code and error.status_code >= 500 else 502

    return error_response(
        error.message,
        status_code,
        retry_suggested=error.retry_suggested,
        attempts=error.attempts,
        headers=headers,
    )


def build_dispatcher(config: GatewayConfig, http_client: httpx.AsyncClient) -> RequestDispatcher:
    pool = CredentialPool(
        os.environ, base_name=config.credential_env, max_index=config.max_credential_index
    )
    pool.initialize()
    upstream = GenAIUpstream(
        http_client,
        base_url=config.upstream_base_url,
        api_version=config.api_version,
        default_model=config.default_model,
        timeout=config.timeout,
    )
    return RequestDispatcher(pool, CooldownTracker(), upstream, config)


def get_dispatcher(request: Request) -> RequestDispatcher:
    """Dependency to get the dispatcher instance from the app state."""
    dispatcher = getattr(request.app.state, "dispatcher", None)
    if dispatcher is None:
        raise HTTPException(status_code=503, detail="Relay is not initialized.")
    return dispatcher


def create_app(
    config: Optional[GatewayConfig] = None,
    dispatcher: Optional[RequestDispatcher] = None,
) -> FastAPI:
    """
    Build the relay application.

    A dispatcher passed in is used as-is; otherwise one is built at startup
    from `config` and torn down with the shared HTTP client at shutdown.
    """
    config = config or (dispatcher.config if dispatcher is not None else GatewayConfig.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.dispatcher is not None:
            yield
            return

        http_client = httpx.AsyncClient(timeout=config.timeout)
        app.state.dispatcher = build_dispatcher(config, http_client)
        logging.info(
            f"Relay ready with {app.state.dispatcher.pool.size()} credential(s), "
            f"{config.selection_policy} selection"
        )
        try:
            yield
        finally:
            await http_client.aclose()
            app.state.dispatcher = None
            logging.info("Relay shut down; HTTP client closed.")

    app = FastAPI(title="GenAI Relay Gateway", lifespan=lifespan)
    app.state.config = config
    app.state.dispatcher = dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(
            str(exc.detail), exc.status_code, headers=getattr(exc, "headers", None)
        )

    @app.post("/api/proxy")
    async def proxy(request: Request, dispatcher: RequestDispatcher = Depends(get_dispatcher)):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return error_response("Invalid JSON in request body.", 400)
        if not isinstance(body, dict):
            return error_response("Request body must be a JSON object.", 400)

        try:
            envelope = RequestEnvelope.model_validate(body)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            field_name = ".".join(str(loc) for loc in first.get("loc", ()))
            return error_response(
                f"Invalid request field '{field_name}': {first.get('msg', 'invalid')}", 400
            )

        if envelope.operation not in SUPPORTED_OPERATIONS:
            return error_response(f"Unsupported operation: {envelope.operation}", 400)

        try:
            if envelope.operation == GET_LIVE_KEY:
                credential = dispatcher.lease_credential()
                return {"apiKey": credential.secret, "keyName": credential.name}

            result = await dispatcher.dispatch(envelope)
        except DispatchError as e:
            logging.error(
                f"Relay request failed ({e.error_type}) after {e.attempts} attempt(s): {e.message}"
            )
            return dispatch_error_response(e, config)

        return {**result.response, "metadata": result.metadata()}

    @app.options("/api/proxy")
    async def proxy_options():
        return Response(status_code=200)

    @app.get("/")
    def read_root():
        return {"Status": "GenAI relay is running"}

    @app.get("/health")
    def health(dispatcher: RequestDispatcher = Depends(get_dispatcher)) -> Dict[str, Any]:
        return {"status": "ok", **dispatcher.status()}

    return app


def load_env_files(root: Path) -> list:
    """Load .env first, then any other *.env files without overriding."""
    load_dotenv(root / ".env")
    found = sorted(root.glob("*.env"))
    for env_file in found:
        if env_file.name != ".env":
            load_dotenv(env_file, override=False)
    return found


def print_banner(host: str, port: int, config: GatewayConfig, env_files: list) -> None:
    from rich.console import Console

    console = Console()
    pool_size = CredentialPool(
        os.environ, base_name=config.credential_env, max_index=config.max_credential_index
    ).size()
    pool_display = (
        f"[green]✓ {pool_size} credential(s)[/green]"
        if pool_size
        else f"[red]✗ None found in {config.credential_env}[_N][/red]"
    )

    console.rule("[bold]GenAI Relay Gateway")
    console.print(f"Starting relay on {host}:{port}")
    console.print(f"Credential pool: {pool_display}")
    console.print(f"Selection policy: {config.selection_policy}")
    console.print(f"Upstream: {config.upstream_base_url}")
    if env_files:
        console.print(f"Loaded {len(env_files)} .env file(s): {', '.join(f.name for f in env_files)}")
    console.rule()


def main(argv=None):
    parser = argparse.ArgumentParser(description="GenAI Relay Gateway")
    parser.add_argument(
        "--host", type=str, default="0.0.0.0", help="Host to bind the server to."
    )
    parser.add_argument("--port", type=int, default=8000, help="Port to run the server on.")
    parser.add_argument(
        "--log-dir", type=str, default=None, help="Directory for relay and failure logs."
    )
    args = parser.parse_args(argv)

    root = get_default_root()
    env_files = load_env_files(root)

    log_dir = Path(args.log_dir) if args.log_dir else get_logs_dir(root)
    configure_logging(log_dir)
    configure_failure_logger(log_dir)

    config = GatewayConfig.from_env()
    print_banner(args.host, args.port, config, env_files)

    import uvicorn

    uvicorn.run(create_app(config), host=args.host, port=args.port)


if __name__ == "__main__":
    sys.exit(main())
