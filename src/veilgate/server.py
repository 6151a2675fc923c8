"""FastAPI server for Veilgate.

Scores every page request on arrival, serves the page shell to visitors
who are not blocked outright, and exposes the verification and
proof-of-work endpoints the client detector talks to.
"""

from __future__ import annotations

import json
import logging
import secrets
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ValidationError

from veilgate.aggregate import ScoreAggregator
from veilgate.classify import RequestClassifier, client_ip
from veilgate.config import VeilgateConfig, load_config, require_redirect_target
from veilgate.errors import ConfigError, MissingFieldError
from veilgate.ledger import FingerprintLedger
from veilgate.models import (
    ChallengeResponse,
    ServerAssessment,
    VerifyHumanRequest,
    VerifyHumanResponse,
    VerifyPowRequest,
)
from veilgate.pow import ProofOfWork
from veilgate.ratelimit import RateLimiter

logger = logging.getLogger(__name__)

SCORE_COOKIE = "_ss"

SECURITY_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Robots-Tag": "noindex, nofollow",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "no-referrer",
}

INERT_PAGE = (
    "<!DOCTYPE html><html><head><title>Page</title>"
    '<meta name="robots" content="noindex"></head><body></body></html>'
)

NOT_FOUND_PAGE = (
    "<!DOCTYPE html><html><head><title>Not Found</title></head>"
    "<body><h1>404 - Not Found</h1></body></html>"
)

PAGE_TEMPLATE = """<!DOCTYPE html>
<html><head><meta charset="UTF-8">
<meta name="viewport" content="width=device-width,initial-scale=1">
<meta name="robots" content="noindex,nofollow"><title>Loading...</title></head>
<body style="margin:0;background:#fff">
<script src="/{script}.js"></script>
<script>
(async function(){{
try{{
const d=new AdvancedBotDetector({options});
const r=await d.detect();
const p=window.location.pathname;
const u={{path:p!=='/'?p:null,query:window.location.search||null}};
const res=await fetch('/api/verify-human',{{
method:'POST',
headers:{{'Content-Type':'application/json'}},
body:JSON.stringify({{
fingerprint:r.fingerprint,behaviors:r.behaviors,clientScore:r.score,
checks:r.checks,urlParams:u
}})
}});
const s=await res.json();
if(s.allowed&&s.redirectUrl){{window.location.href=s.redirectUrl;}}
else{{document.body.innerHTML='<div style="position:fixed;top:50%;left:50%;'
+'transform:translate(-50%,-50%);font-family:sans-serif;color:#333">Access Denied</div>';}}
}}catch(e){{}}
}})();
</script>
<noscript><meta http-equiv="refresh" content="0;url=about:blank"></noscript>
</body></html>"""


def _missing_data() -> JSONResponse:
    return JSONResponse({"error": "Missing required data"}, status_code=400)


def _too_large() -> JSONResponse:
    return JSONResponse({"error": "Payload too large"}, status_code=413)


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-finite number {name} in request body")


def load_detector_script(path: str | None) -> str:
    """Read the client detector script served with every page.

    Args:
        path: Script location, or None when no script is configured.

    Returns:
        The script source; empty when unconfigured.

    Raises:
        ConfigError: If a configured script cannot be read.
    """
    if path is None:
        logger.warning("No detector script configured, pages will load an empty script")
        return ""
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read detector script {path}: {exc}") from exc


class VeilgateServer:
    """Owns the detection services and the FastAPI application.

    The rate limiter and fingerprint ledger live as long as the process
    and are shared by every request handler.
    """

    def __init__(self, config: VeilgateConfig | None = None) -> None:
        """Initialize the Veilgate server.

        Args:
            config: Optional configuration. If None, loads from veilgate.yaml.

        Raises:
            ConfigError: If no redirect target is configured or the
                configured detector script cannot be read.
        """
        self.config = config or load_config()
        self.redirect_target = require_redirect_target(self.config)

        limits = self.config.limits
        self.limiter = RateLimiter(
            window_seconds=limits.window_seconds,
            max_requests=limits.max_requests,
            sweep_probability=limits.sweep_probability,
        )
        self.ledger = FingerprintLedger(
            max_age_seconds=limits.fingerprint_max_age_seconds,
            sweep_probability=limits.sweep_probability,
        )
        self.classifier = RequestClassifier(self.limiter)
        self.aggregator = ScoreAggregator(self.ledger, self.redirect_target)
        self.pow = ProofOfWork(
            difficulty=self.config.pow.difficulty,
            freshness_ms=self.config.pow.freshness_ms,
        )
        self.detector_script = load_detector_script(self.config.server.detector_script)
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create and configure the FastAPI application.

        Returns:
            A configured FastAPI instance with middleware and routes.
        """
        app = FastAPI(
            title="Page",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )

        app.middleware("http")(self._classifier_middleware)
        app.middleware("http")(self._security_headers_middleware)
        app.add_exception_handler(MissingFieldError, self._missing_field_handler)

        @app.get("/health")
        async def health_check() -> dict[str, str]:
            return {"status": "ok"}

        @app.get("/")
        async def page(request: Request) -> Response:
            return self._render_page(request)

        @app.post("/api/verify-human")
        async def verify_human(request: Request) -> Response:
            return await self._verify_human(request)

        @app.post("/api/challenge")
        async def challenge() -> dict[str, Any]:
            return ChallengeResponse.from_challenge(self.pow.issue()).model_dump()

        @app.post("/api/verify-pow")
        async def verify_pow(request: Request) -> Response:
            return await self._verify_pow(request)

        # Every page names the script differently; all names resolve here.
        @app.get("/{name}.js")
        async def detector_script(name: str) -> Response:
            return Response(self.detector_script, media_type="application/javascript")

        @app.api_route(
            "/{path:path}",
            methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        )
        async def catch_all(path: str) -> Response:
            return HTMLResponse(NOT_FOUND_PAGE, status_code=404)

        return app

    async def _security_headers_middleware(self, request: Request, call_next: object) -> Response:
        """Keep responses out of caches, previews and search indexes."""
        response: Response = await call_next(request)  # type: ignore[operator]
        for key, value in SECURITY_HEADERS.items():
            response.headers[key] = value
        if "x-powered-by" in response.headers:
            del response.headers["x-powered-by"]
        return response

    async def _classifier_middleware(self, request: Request, call_next: object) -> Response:
        """Score the request and answer hard-blocked page loads with the inert page.

        The assessment is attached to request.state for the handlers.
        Script assets and the health check are not scored. API calls are
        scored but never short-circuited; their score feeds the verdict.
        """
        path = request.url.path
        if path.endswith(".js") or path == "/health":
            return await call_next(request)  # type: ignore[operator,no-any-return]

        identity = client_ip(request.headers, request.client.host if request.client else None)
        assessment = self.classifier.classify(request.headers, identity)
        request.state.assessment = assessment

        if assessment.hard_block and not path.startswith("/api/"):
            # Same status as a real page so the block is not observable.
            return HTMLResponse(INERT_PAGE, status_code=200)

        return await call_next(request)  # type: ignore[operator,no-any-return]

    async def _missing_field_handler(self, request: Request, exc: Exception) -> Response:
        logger.debug("Rejected %s: %s", request.url.path, exc)
        return _missing_data()

    def _assessment(self, request: Request) -> ServerAssessment:
        assessment = getattr(request.state, "assessment", None)
        if assessment is None:
            identity = client_ip(request.headers, request.client.host if request.client else None)
            assessment = ServerAssessment(client_ip=identity)
        return assessment

    async def _read_body(self, request: Request, model: type[BaseModel]) -> Any:
        """Parse a JSON request body into a payload model.

        The body is read in chunks and abandoned as soon as it exceeds the
        size limit. NaN and Infinity literals are rejected as malformed.

        Returns:
            The parsed model, or an error Response for oversized or
            malformed bodies.
        """
        limit = self.config.limits.max_body_bytes
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            return _too_large()

        body = bytearray()
        async for chunk in request.stream():
            body.extend(chunk)
            if len(body) > limit:
                return _too_large()

        try:
            raw = json.loads(body, parse_constant=_reject_constant) if body else {}
        except (ValueError, UnicodeDecodeError):
            return _missing_data()
        if not isinstance(raw, dict):
            return _missing_data()
        try:
            return model.model_validate(raw)
        except ValidationError:
            return _missing_data()

    def _render_page(self, request: Request) -> Response:
        """Serve the page shell with a fresh script name for this response."""
        options = json.dumps(
            {
                "behaviorTimeout": self.config.detector.behavior_timeout,
                "threshold": 80,
            }
        )
        html = PAGE_TEMPLATE.format(script=secrets.token_hex(8), options=options)
        response = HTMLResponse(html)
        response.set_cookie(
            SCORE_COOKIE,
            str(int(self._assessment(request).score)),
            max_age=60,
            httponly=False,
        )
        return response

    async def _verify_human(self, request: Request) -> Response:
        payload = await self._read_body(request, VerifyHumanRequest)
        if isinstance(payload, Response):
            return payload
        missing = payload.missing_fields()
        if missing:
            raise MissingFieldError(missing)

        decision = self.aggregator.decide(self._assessment(request), payload)
        body = VerifyHumanResponse.from_decision(decision)
        return JSONResponse(body.model_dump(mode="json", by_alias=True))

    async def _verify_pow(self, request: Request) -> Response:
        payload = await self._read_body(request, VerifyPowRequest)
        if isinstance(payload, Response):
            return payload
        missing = payload.missing_fields()
        if missing:
            raise MissingFieldError(missing)

        result = self.pow.verify(payload.challenge, payload.nonce, payload.timestamp)
        return JSONResponse(result.model_dump(exclude_none=True))


def create_app(config_path: str | None = None) -> FastAPI:
    """Create a Veilgate FastAPI application.

    This is the main entry point for ASGI servers like uvicorn.

    Args:
        config_path: Optional path to the veilgate.yaml config file.

    Returns:
        A configured FastAPI application.

    Raises:
        ConfigError: If no redirect target is configured.
    """
    config = load_config(config_path)
    server = VeilgateServer(config)
    logger.info("Veilgate ready, redirect target configured")
    return server.app
