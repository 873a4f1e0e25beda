"""HTTP verification service."""

from __future__ import annotations

import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi import status as http_status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from photoattest import __version__
from photoattest.config import EngineConfig
from photoattest.determinism import format_timestamp, parse_timestamp, stable_now
from photoattest.engine import VerificationEngine
from photoattest.errors import PhotoAttestError
from photoattest.freezer import freeze
from photoattest.keys import KeyRegistry
from photoattest.payload import PayloadError, parse_attestation, parse_metadata
from photoattest.scoring import ScoringPolicy
from photoattest.server_security import (
    AuthenticationError,
    ErrorCategory,
    ErrorSeverity,
    RequestIDMiddleware,
    SecurityMiddleware,
    create_error_response,
    generate_error_id,
    validate_api_key_format,
)
from photoattest.tiles import build_tree

logger = logging.getLogger(__name__)

SECURITY_BEARER = HTTPBearer(auto_error=False)
SECURITY_BEARER_DEPENDENCY = Depends(SECURITY_BEARER)
UPLOAD_CHUNK_SIZE = 1024 * 1024


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    timestamp: str


class VerifyResponse(BaseModel):
    """Verification result."""

    checks: dict[str, bool]
    confidence: float
    verdict: str
    mode: str
    weights: dict[str, float]
    threshold: float
    tree_root: str | None = None
    tile_count: int
    details: dict[str, str]
    indicators: list[str]


class TreeResponse(BaseModel):
    """Tile hash tree summary."""

    root: str
    tile_size: int
    total_length: int
    tile_count: int
    depth: int
    format: str
    leaves: list[str] | None = None


class PolicyResponse(BaseModel):
    """Scoring policy in force."""

    weights: dict[str, float]
    threshold: float


def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = SECURITY_BEARER_DEPENDENCY,
) -> bool:
    """Check the bearer token against PHOTOATTEST_API_KEY.

    Authentication is disabled when the variable is unset.

    Raises:
        AuthenticationError: If authentication fails and is required
    """
    expected_key = os.environ.get("PHOTOATTEST_API_KEY")
    if not expected_key:
        return True

    provided_key = credentials.credentials if credentials else None
    if not provided_key:
        raise AuthenticationError("API key required. Provide via Authorization: Bearer <key> header")
    if not validate_api_key_format(provided_key):
        raise AuthenticationError("Invalid API key format")

    # Constant-time comparison
    if not secrets.compare_digest(provided_key, expected_key):
        raise AuthenticationError("Invalid API key")
    return True


async def _read_upload(upload: UploadFile, max_size: int) -> bytes:
    """Read an uploaded image with size enforcement."""
    chunks = []
    total = 0
    try:
        while True:
            chunk = await upload.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            total += len(chunk)
            if total > max_size:
                raise HTTPException(
                    status_code=http_status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail=f"Image too large. Maximum size: {max_size} bytes",
                )
            chunks.append(chunk)
    finally:
        await upload.close()
    return b"".join(chunks)


def create_app(
    config: EngineConfig | None = None,
    policy: ScoringPolicy | None = None,
    key_registry: KeyRegistry | None = None,
    debug: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Engine configuration
        policy: Scoring policy (weights and threshold)
        key_registry: Trusted device public keys
        debug: Include tracebacks in error responses

    Returns:
        Configured FastAPI application
    """
    config = config or EngineConfig()
    engine = VerificationEngine(policy=policy, key_registry=key_registry, config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Verification server starting up (%d trusted keys, threshold %.2f)",
            len(engine.key_registry),
            engine.policy.threshold,
        )
        if not os.environ.get("PHOTOATTEST_API_KEY"):
            logger.warning("PHOTOATTEST_API_KEY not set - API authentication is DISABLED")
        if not len(engine.key_registry) and not config.trust_embedded_keys:
            logger.warning("Trust store is empty; every signature check will fail")
        yield
        logger.info("Verification server shutting down")

    app = FastAPI(
        title="photoattest",
        description="Verification service for attested photos",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(SecurityMiddleware)
    app.add_middleware(RequestIDMiddleware)

    def _error(
        request: Request,
        exc: Exception,
        status_code: int,
        category: ErrorCategory,
        details: list[str] | None = None,
    ) -> JSONResponse:
        error_id = generate_error_id()
        request_id = getattr(request.state, "request_id", "unknown")
        severity = ErrorSeverity.ERROR if status_code >= 500 else ErrorSeverity.WARNING
        logger.log(
            logging.ERROR if status_code >= 500 else logging.INFO,
            "Error %s (request: %s): %s",
            error_id,
            request_id,
            exc,
        )
        content = create_error_response(
            error_id=error_id,
            request_id=request_id,
            error=exc,
            category=category,
            severity=severity,
            details=details,
            include_traceback=debug,
        )
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(PhotoAttestError)
    async def photoattest_exception_handler(request: Request, exc: PhotoAttestError):
        """Unusable image bytes or payloads are the client's problem."""
        details = exc.errors if isinstance(exc, PayloadError) else None
        return _error(request, exc, http_status.HTTP_422_UNPROCESSABLE_ENTITY, ErrorCategory.VALIDATION, details)

    @app.exception_handler(AuthenticationError)
    async def authentication_exception_handler(request: Request, exc: AuthenticationError):
        return _error(request, exc, http_status.HTTP_401_UNAUTHORIZED, ErrorCategory.AUTHENTICATION)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        if exc.status_code == http_status.HTTP_404_NOT_FOUND:
            category = ErrorCategory.NOT_FOUND
        elif exc.status_code < 500:
            category = ErrorCategory.VALIDATION
        else:
            category = ErrorCategory.INTERNAL
        return _error(request, Exception(exc.detail), exc.status_code, category)

    @app.exception_handler(RequestValidationError)
    async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
        details = [
            f"{'/'.join(str(p) for p in error.get('loc', ()))}: {error.get('msg', '')}"
            for error in exc.errors()
        ]
        return _error(
            request,
            Exception("Request validation failed"),
            http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            ErrorCategory.VALIDATION,
            details,
        )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            version=__version__,
            timestamp=format_timestamp(stable_now()),
        )

    @app.get("/api/v1/policy", response_model=PolicyResponse)
    async def get_policy(_auth: bool = Depends(verify_api_key)):
        """Weight table and verdict threshold in force."""
        return PolicyResponse(**engine.policy.to_dict())

    @app.post("/api/v1/verify", response_model=VerifyResponse)
    async def verify(
        image: UploadFile = File(...),
        attestation: str = Form(...),
        metadata: str = Form(...),
        now: str | None = Form(default=None),
        _auth: bool = Depends(verify_api_key),
    ):
        """Verify an uploaded photo against its attestation and metadata.

        A REJECTED verdict is a normal 200 response; only unusable input
        is an error.
        """
        data = await _read_upload(image, config.max_image_size)
        limits = config.security_limits
        parsed_attestation = parse_attestation(attestation, limits)
        parsed_metadata = parse_metadata(metadata, limits)

        reference_time = None
        if now is not None:
            try:
                reference_time = parse_timestamp(now)
            except ValueError as e:
                raise PayloadError("Invalid reference time", [f"now: {e}"]) from e

        result = engine.verify(data, parsed_attestation, parsed_metadata, now=reference_time)
        return VerifyResponse(**result.to_dict())

    @app.post("/api/v1/tree", response_model=TreeResponse)
    async def tree(
        image: UploadFile = File(...),
        tile_size: int | None = Form(default=None),
        leaves: bool = Form(default=False),
        _auth: bool = Depends(verify_api_key),
    ):
        """Compute the tile hash tree of an uploaded image."""
        data = await _read_upload(image, config.max_image_size)
        frozen = freeze(data, limits=config.security_limits, require_known_format=config.require_known_format)

        size = tile_size if tile_size is not None else config.tile_size
        if size < 1:
            raise PayloadError("Invalid tile size", [f"tile_size: must be >= 1, got {size}"])

        built = build_tree(frozen, size, workers=config.hash_workers)
        summary: dict[str, Any] = built.to_dict(include_leaves=leaves)
        return TreeResponse(format=frozen.format, **summary)

    return app
